from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from .events import EventBus, WaitingAlertRaised
from .models import AlertLevel
from .notifier import AgentNotifier
from .registry import ConversationRegistry, QueueItem

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def alert_message(level: AlertLevel, count: int) -> str:
    if level == "critical":
        return f"¡URGENTE! {count} conversación(es) lleva(n) más de 30 minutos sin ser atendida(s)."
    if level == "urgent":
        return f"¡Atención! {count} conversación(es) lleva(n) más de 15 minutos sin atención."
    return f"Hay {count} conversación(es) esperando por más de 5 minutos."


@dataclass
class WaitingAlertReport:
    warning: list[QueueItem] = field(default_factory=list)
    urgent: list[QueueItem] = field(default_factory=list)
    critical: list[QueueItem] = field(default_factory=list)


class WaitingAlertMonitor:
    """Groups unassigned conversations by wait time and alerts every agent on the worst level."""

    def __init__(
        self,
        *,
        registry: ConversationRegistry,
        notifier: AgentNotifier,
        events: EventBus,
        warning_seconds: float = 5 * 60,
        urgent_seconds: float = 15 * 60,
        critical_seconds: float = 30 * 60,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._registry = registry
        self._notifier = notifier
        self._events = events
        self._warning_seconds = warning_seconds
        self._urgent_seconds = urgent_seconds
        self._critical_seconds = critical_seconds
        self._clock = clock

    def classify(self) -> WaitingAlertReport:
        now = self._clock()
        report = WaitingAlertReport()
        for item in self._registry.get_unassigned():
            waited = (now - item.start_time).total_seconds()
            if waited >= self._critical_seconds:
                report.critical.append(item)
            elif waited >= self._urgent_seconds:
                report.urgent.append(item)
            elif waited >= self._warning_seconds:
                report.warning.append(item)
        return report

    async def check(self) -> WaitingAlertReport:
        report = self.classify()
        if report.critical:
            await self._broadcast("critical", report.critical)
        elif report.urgent:
            await self._broadcast("urgent", report.urgent)
        return report

    async def _broadcast(self, level: AlertLevel, items: list[QueueItem]) -> None:
        now = self._clock()
        message = alert_message(level, len(items))
        waits = {item.conversation_id: (now - item.start_time).total_seconds() for item in items}
        await self._notifier.broadcast_to_agents(
            "notification:alert",
            {
                "type": "waiting_alert",
                "level": level,
                "message": message,
                "conversations": [
                    {
                        "conversation_id": item.conversation_id,
                        "recipient": item.recipient,
                        "wait_seconds": waits[item.conversation_id],
                    }
                    for item in items
                ],
            },
        )
        await self._events.publish(
            WaitingAlertRaised(
                level=level,
                conversation_ids=tuple(waits),
                message=message,
                oldest_wait_seconds=max(waits.values()),
            )
        )
        logger.info("%s waiting alert sent for %s conversations", level, len(items))
