"""In-process typed pub/sub between the registry and its collaborators."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from .models import AlertLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueUpdated:
    conversation_id: str
    reason: str


@dataclass(frozen=True)
class ConversationUpdated:
    conversation_id: str
    assigned_agent: str | None


@dataclass(frozen=True)
class MessageAdded:
    conversation_id: str
    message_id: str
    sender: str
    timestamp: datetime


@dataclass(frozen=True)
class ConversationCompleted:
    conversation_id: str
    start_time: datetime
    end_time: datetime
    message_count: int
    assigned_agent: str | None


@dataclass(frozen=True)
class ConversationRedirected:
    conversation_id: str
    channel_routing_id: str
    recipient: str
    reason: str


@dataclass(frozen=True)
class WaitingAlertRaised:
    level: AlertLevel
    conversation_ids: tuple[str, ...]
    message: str
    oldest_wait_seconds: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict, compare=False)


EventT = TypeVar("EventT")
Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Dispatches events to handlers registered for the event's exact class.

    Handlers run in subscription order; a failing handler is logged and does
    not stop the others or the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[EventT], handler: Callable[[EventT], Awaitable[None] | None]) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type[EventT], handler: Callable[[EventT], Awaitable[None] | None]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("event handler failed for %s", type(event).__name__)
