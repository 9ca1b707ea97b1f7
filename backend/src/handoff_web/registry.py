"""In-memory working set of conversations awaiting or under human handling.

The registry keeps one ``QueueItem`` per active conversation and mirrors it to
the queue store. Memory is updated first and storage second; the two may
diverge briefly and are brought back together by reconciliation (on a miss)
and by ``reload_from_storage`` (periodically). Public operations never raise:
failures are logged with the conversation id and surface as ``False``/``None``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .agents import AgentDirectory
from .channels import ChannelSender
from .conversation_store import ConversationRepository
from .events import (
    ConversationCompleted,
    ConversationRedirected,
    ConversationUpdated,
    EventBus,
    MessageAdded,
    QueueUpdated,
)
from .messages import MessageRecord, MessageRepository
from .models import ACTIVE_QUEUE_STATUSES, MAX_PRIORITY, MIN_PRIORITY, ConversationStatus, MessageSender
from .notifier import AgentNotifier
from .queue_store import DEFAULT_PRIORITY, QueueRepository, QueueRowRecord
from .timers import ResponseTimers, TimerSlot

logger = logging.getLogger(__name__)

WAITING_MESSAGE_LOG = "Se envió al usuario el mensaje de espera"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass
class QueueItem:
    conversation_id: str
    channel_routing_id: str
    recipient: str
    start_time: datetime
    priority: int = DEFAULT_PRIORITY
    tags: list[str] = field(default_factory=list)
    assigned_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    messages: list[MessageRecord] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: QueueRowRecord, messages: list[MessageRecord] | None = None) -> QueueItem:
        return cls(
            conversation_id=row.conversation_id,
            channel_routing_id=row.channel_routing_id,
            recipient=row.recipient,
            start_time=row.start_time,
            priority=row.priority,
            tags=list(row.tags),
            assigned_agent=row.assigned_agent,
            metadata=dict(row.metadata),
            messages=list(messages or []),
        )

    def to_row(self) -> QueueRowRecord:
        return QueueRowRecord(
            conversation_id=self.conversation_id,
            channel_routing_id=self.channel_routing_id,
            recipient=self.recipient,
            start_time=self.start_time,
            priority=self.priority,
            tags=tuple(self.tags),
            assigned_agent=self.assigned_agent,
            metadata=dict(self.metadata),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "channel_routing_id": self.channel_routing_id,
            "recipient": self.recipient,
            "start_time": self.start_time.isoformat(),
            "priority": self.priority,
            "tags": list(self.tags),
            "assigned_agent": self.assigned_agent,
            "metadata": dict(self.metadata),
            "message_count": len(self.messages),
        }


@dataclass(frozen=True)
class QueueStats:
    total: int
    unassigned: int
    assigned: int
    avg_wait_seconds: float
    by_priority: dict[int, int]


def _message_payload(message: MessageRecord) -> dict[str, Any]:
    return {
        "message_id": message.message_id,
        "conversation_id": message.conversation_id,
        "sender": message.sender,
        "text": message.text,
        "timestamp": message.timestamp.isoformat(),
        "agent_id": message.agent_id,
        "attachment_url": message.attachment_url,
        "metadata": message.metadata,
    }


def _priority_order(item: QueueItem) -> tuple[int, datetime]:
    return (-item.priority, item.start_time)


class ConversationRegistry:
    def __init__(
        self,
        *,
        queue_repository: QueueRepository,
        message_repository: MessageRepository,
        conversation_repository: ConversationRepository,
        directory: AgentDirectory,
        notifier: AgentNotifier,
        channel: ChannelSender,
        timers: ResponseTimers,
        events: EventBus,
        waiting_message: str,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._queue = queue_repository
        self._messages = message_repository
        self._conversations = conversation_repository
        self._directory = directory
        self._notifier = notifier
        self._channel = channel
        self._timers = timers
        self._events = events
        self._waiting_message = waiting_message
        self._clock = clock
        self._items: dict[str, QueueItem] = {}
        self._completing: set[str] = set()
        self._reload_lock = asyncio.Lock()
        self._changed_during_reload: set[str] | None = None
        self._timers.bind(self._on_timer)

    @property
    def timers(self) -> ResponseTimers:
        return self._timers

    async def _io(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(func, *args, **kwargs)

    # Queue lifecycle

    async def add_to_queue(
        self,
        conversation_id: str,
        *,
        channel_routing_id: str,
        recipient: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> QueueItem | None:
        try:
            existing = self._items.get(conversation_id)
            if existing is None:
                existing = await self._reconcile(conversation_id, rebuild_missing_row=False)
            if existing is not None:
                if metadata:
                    existing.metadata.update(metadata)
                    await self._persist(existing, operation="add_to_queue")
                logger.info("conversation %s already queued, merged metadata", conversation_id)
                return existing

            item = QueueItem(
                conversation_id=conversation_id,
                channel_routing_id=channel_routing_id,
                recipient=recipient or conversation_id,
                start_time=self._clock(),
                metadata=dict(metadata or {}),
            )
            self._items[conversation_id] = item
            self._mark_changed(conversation_id)
            await self._persist(item, operation="add_to_queue")
            await self._set_status(conversation_id, "waiting", is_escalated=True)
            self._timers.arm(conversation_id, "queue_wait", item.start_time)
            logger.info("conversation %s added to queue", conversation_id)
            await self._queue_changed(conversation_id, "queued")
            return item
        except Exception:
            logger.exception("add_to_queue failed for %s", conversation_id)
            return None

    async def assign_agent(self, conversation_id: str, agent_id: str) -> bool:
        try:
            item = await self._resolve(conversation_id)
            if item is None:
                logger.warning("assign_agent: unknown conversation %s", conversation_id)
                return False
            if item.assigned_agent == agent_id:
                return True
            if item.assigned_agent:
                logger.warning(
                    "assign_agent rejected for %s: already assigned to %s, requested %s",
                    conversation_id,
                    item.assigned_agent,
                    agent_id,
                )
                return False

            item.assigned_agent = agent_id
            try:
                await self._io(self._queue.upsert, item.to_row())
            except Exception:
                item.assigned_agent = None
                logger.exception("assign_agent could not persist %s -> %s", conversation_id, agent_id)
                return False

            await self._set_status(conversation_id, "agent")
            try:
                await self._io(self._directory.register_assignment, agent_id, conversation_id)
            except Exception:
                logger.exception("assign_agent: directory bookkeeping failed for %s", agent_id)

            self._timers.cancel(conversation_id)
            latest = item.messages[-1] if item.messages else None
            await self.add_system_message(conversation_id, f"Agente {agent_id} se ha unido a la conversación")
            if latest is not None and latest.sender == "user" and conversation_id in self._items:
                self._timers.arm(conversation_id, "agent_response", latest.timestamp)

            logger.info("conversation %s assigned to agent %s", conversation_id, agent_id)
            await self._notifier.send_to_agent(agent_id, "conversation:assigned", item.summary())
            await self._events.publish(ConversationUpdated(conversation_id=conversation_id, assigned_agent=agent_id))
            await self._queue_changed(conversation_id, "assigned")
            return True
        except Exception:
            logger.exception("assign_agent failed for %s -> %s", conversation_id, agent_id)
            return False

    async def complete_conversation(self, conversation_id: str) -> bool:
        if conversation_id in self._completing:
            return False
        self._completing.add(conversation_id)
        try:
            item = self._items.get(conversation_id)
            in_memory = item is not None
            if item is None:
                row = await self._io(self._queue.get, conversation_id)
                if row is None:
                    return False
                item = QueueItem.from_row(row)

            self._timers.cancel(conversation_id)
            self._items.pop(conversation_id, None)
            self._mark_changed(conversation_id)
            try:
                await self._io(self._queue.delete, conversation_id)
            except Exception:
                if in_memory:
                    self._items[conversation_id] = item
                logger.exception("complete_conversation could not delete queue row for %s", conversation_id)
                return False

            await self._set_status(conversation_id, "completed", is_escalated=False)
            if item.assigned_agent:
                try:
                    await self._io(self._directory.release_assignment, item.assigned_agent, conversation_id)
                except Exception:
                    logger.exception("complete_conversation: release failed for agent %s", item.assigned_agent)

            message_count = len(item.messages)
            if not in_memory:
                message_count = len(await self._history(conversation_id))
            await self._events.publish(
                ConversationCompleted(
                    conversation_id=conversation_id,
                    start_time=item.start_time,
                    end_time=self._clock(),
                    message_count=message_count,
                    assigned_agent=item.assigned_agent,
                )
            )
            if item.assigned_agent:
                await self._notifier.send_to_agent(
                    item.assigned_agent, "conversation:completed", {"conversation_id": conversation_id}
                )
            logger.info("conversation %s completed", conversation_id)
            await self._queue_changed(conversation_id, "completed")
            return True
        except Exception:
            logger.exception("complete_conversation failed for %s", conversation_id)
            return False
        finally:
            self._completing.discard(conversation_id)

    async def redirect_to_bot(self, conversation_id: str, *, reason: str = "sla_timeout") -> bool:
        try:
            self._timers.cancel(conversation_id)
            item = self._items.pop(conversation_id, None)
            self._mark_changed(conversation_id)
            if item is None:
                row = await self._io(self._queue.get, conversation_id)
                if row is None:
                    logger.info("redirect_to_bot: %s is not queued", conversation_id)
                    return False
                item = QueueItem.from_row(row)

            await self._set_status(conversation_id, "bot", is_escalated=False)
            if item.assigned_agent:
                try:
                    await self._io(self._directory.release_assignment, item.assigned_agent, conversation_id)
                except Exception:
                    logger.exception("redirect_to_bot: release failed for agent %s", item.assigned_agent)
                await self._notifier.send_to_agent(
                    item.assigned_agent,
                    "conversation:redirected",
                    {"conversation_id": conversation_id, "reason": reason},
                )
            try:
                deleted = await self._io(self._queue.delete, conversation_id)
                if not deleted:
                    logger.info("redirect_to_bot: queue row for %s was already gone", conversation_id)
            except Exception:
                logger.exception("redirect_to_bot could not delete queue row for %s", conversation_id)

            logger.warning("conversation %s redirected to bot (%s)", conversation_id, reason)
            await self._events.publish(
                ConversationRedirected(
                    conversation_id=conversation_id,
                    channel_routing_id=item.channel_routing_id,
                    recipient=item.recipient,
                    reason=reason,
                )
            )
            await self._queue_changed(conversation_id, "redirected")
            return True
        except Exception:
            logger.exception("redirect_to_bot failed for %s", conversation_id)
            return False

    # Messages

    async def add_message(
        self,
        conversation_id: str,
        *,
        sender: MessageSender,
        text: str,
        agent_id: str | None = None,
        attachment_url: str | None = None,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> MessageRecord | None:
        try:
            item = await self._resolve(conversation_id)
            if item is None:
                logger.warning("add_message: dropping %s message for unknown conversation %s", sender, conversation_id)
                return None
            if message_id:
                for existing in item.messages:
                    if existing.message_id == message_id:
                        return existing

            timestamp = self._clock()
            if item.messages and item.messages[-1].timestamp > timestamp:
                timestamp = item.messages[-1].timestamp
            record = MessageRecord(
                message_id=message_id or new_message_id(),
                conversation_id=conversation_id,
                sender=sender,
                text=text,
                timestamp=timestamp,
                agent_id=agent_id,
                attachment_url=attachment_url,
                metadata=metadata,
            )
            item.messages.append(record)
            try:
                stored = await self._io(self._messages.append, record)
            except Exception:
                self._drop_from_memory(item, record)
                logger.exception("add_message could not persist %s message for %s", sender, conversation_id)
                return None
            if stored != record:
                # The store already held this id; keep its copy as the single source.
                self._drop_from_memory(item, record)
                return stored

            if sender == "user" and item.assigned_agent:
                self._timers.arm(conversation_id, "agent_response", record.timestamp)
            elif sender == "agent" and agent_id and agent_id == item.assigned_agent:
                self._timers.cancel(conversation_id)

            try:
                await self._io(self._conversations.touch, conversation_id, at=record.timestamp)
            except Exception:
                logger.exception("add_message could not touch conversation %s", conversation_id)

            payload = {"conversation_id": conversation_id, "message": _message_payload(record)}
            if item.assigned_agent:
                delivered = await self._notifier.send_to_agent(item.assigned_agent, "conversation:updated", payload)
                if not delivered:
                    logger.debug("agent %s not connected for %s", item.assigned_agent, conversation_id)
            else:
                await self._notifier.broadcast_to_agents("queue:updated", payload)
            await self._events.publish(
                MessageAdded(
                    conversation_id=conversation_id,
                    message_id=record.message_id,
                    sender=sender,
                    timestamp=record.timestamp,
                )
            )
            return record
        except Exception:
            logger.exception("add_message failed for %s", conversation_id)
            return None

    async def add_system_message(self, conversation_id: str, text: str) -> MessageRecord | None:
        return await self.add_message(conversation_id, sender="system", text=text)

    def replay_history(self, conversation_id: str, history: list[MessageRecord]) -> int:
        """Copy already-stored messages into the working set without re-persisting them."""
        item = self._items.get(conversation_id)
        if item is None:
            return 0
        known = {message.message_id for message in item.messages}
        added = 0
        for message in history:
            if message.message_id in known:
                continue
            item.messages.append(message)
            known.add(message.message_id)
            added += 1
        item.messages.sort(key=lambda message: message.timestamp)
        return added

    # Attributes

    async def update_priority(self, conversation_id: str, priority: int) -> bool:
        if priority < MIN_PRIORITY or priority > MAX_PRIORITY:
            logger.warning("update_priority rejected for %s: %s out of range", conversation_id, priority)
            return False
        try:
            item = await self._resolve(conversation_id)
            if item is None:
                return False
            item.priority = priority
            await self._persist(item, operation="update_priority")
            if priority >= 3:
                label = "Urgente" if priority >= 4 else "Alta"
                await self.add_system_message(conversation_id, f"Prioridad actualizada a {priority} ({label})")
            logger.info("conversation %s priority set to %s", conversation_id, priority)
            await self._queue_changed(conversation_id, "priority")
            return True
        except Exception:
            logger.exception("update_priority failed for %s", conversation_id)
            return False

    async def update_tags(self, conversation_id: str, tags: list[str]) -> bool:
        try:
            item = await self._resolve(conversation_id)
            if item is None:
                return False
            normalized: list[str] = []
            for tag in tags:
                value = tag.strip()
                if value and value not in normalized:
                    normalized.append(value)
            item.tags = normalized
            await self._persist(item, operation="update_tags")
            await self._queue_changed(conversation_id, "tags")
            return True
        except Exception:
            logger.exception("update_tags failed for %s", conversation_id)
            return False

    async def update_metadata(self, conversation_id: str, patch: dict[str, Any]) -> bool:
        try:
            item = await self._resolve(conversation_id)
            if item is None:
                return False
            item.metadata.update(patch)
            await self._persist(item, operation="update_metadata")
            await self._queue_changed(conversation_id, "metadata")
            return True
        except Exception:
            logger.exception("update_metadata failed for %s", conversation_id)
            return False

    # Reads

    async def get_conversation(self, conversation_id: str) -> QueueItem | None:
        try:
            return await self._resolve(conversation_id)
        except Exception:
            logger.exception("get_conversation failed for %s", conversation_id)
            return None

    async def get_messages(self, conversation_id: str) -> list[MessageRecord]:
        try:
            return await self._io(self._messages.list_by_conversation, conversation_id)
        except Exception:
            logger.exception("get_messages: store read failed for %s, serving working set", conversation_id)
            item = self._items.get(conversation_id)
            return list(item.messages) if item is not None else []

    def peek(self, conversation_id: str) -> QueueItem | None:
        return self._items.get(conversation_id)

    def get_queue(self) -> list[QueueItem]:
        return sorted(self._items.values(), key=lambda item: item.start_time)

    def get_unassigned(self) -> list[QueueItem]:
        return sorted((item for item in self._items.values() if not item.assigned_agent), key=_priority_order)

    def get_conversations_by_agent(self, agent_id: str) -> list[QueueItem]:
        return [item for item in self.get_queue() if item.assigned_agent == agent_id]

    def get_oldest_unassigned(self) -> QueueItem | None:
        unassigned = [item for item in self._items.values() if not item.assigned_agent]
        if not unassigned:
            return None
        return min(unassigned, key=_priority_order)

    def get_queue_stats(self) -> QueueStats:
        items = list(self._items.values())
        now = self._clock()
        waits = [(now - item.start_time).total_seconds() for item in items]
        by_priority = {priority: 0 for priority in range(MIN_PRIORITY, MAX_PRIORITY + 1)}
        for item in items:
            by_priority[item.priority] = by_priority.get(item.priority, 0) + 1
        assigned = sum(1 for item in items if item.assigned_agent)
        return QueueStats(
            total=len(items),
            unassigned=len(items) - assigned,
            assigned=assigned,
            avg_wait_seconds=sum(waits) / len(waits) if waits else 0.0,
            by_priority=by_priority,
        )

    # Reconciliation

    async def reconcile(self, conversation_id: str) -> QueueItem | None:
        try:
            return await self._reconcile(conversation_id)
        except Exception:
            logger.exception("reconcile failed for %s", conversation_id)
            return None

    async def load_initial_state(self) -> int:
        return await self.reload_from_storage()

    async def reload_from_storage(self) -> int:
        """Repair divergence between the working set and storage in both directions.

        Storage is read once up front. Conversations whose working-set membership
        changes while the reload awaits are left to the operation that changed them.
        """
        async with self._reload_lock:
            self._changed_during_reload = set()
            try:
                return await self._reload_snapshot()
            finally:
                self._changed_during_reload = None

    async def _reload_snapshot(self) -> int:
        changed = self._changed_during_reload if self._changed_during_reload is not None else set()
        try:
            rows = await self._io(self._queue.list_all)
            conversations = {record.conversation_id: record for record in await self._io(self._conversations.list_all)}
        except Exception:
            logger.exception("reload_from_storage: storage unavailable")
            return len(self._items)

        seen: set[str] = set()
        for row in rows:
            seen.add(row.conversation_id)
            if row.conversation_id in changed:
                continue
            conversation = conversations.get(row.conversation_id)
            if conversation is not None and conversation.status not in ACTIVE_QUEUE_STATUSES:
                logger.warning(
                    "dropping stale queue row for %s (conversation status %s)",
                    row.conversation_id,
                    conversation.status,
                )
                self._forget(row.conversation_id)
                try:
                    await self._io(self._queue.delete, row.conversation_id)
                except Exception:
                    logger.exception("reload_from_storage could not delete stale row %s", row.conversation_id)
                continue
            if row.conversation_id in self._items:
                continue
            history = await self._history(row.conversation_id)
            if row.conversation_id in changed or row.conversation_id in self._items:
                logger.debug("reload_from_storage: %s changed while loading, skipping", row.conversation_id)
                continue
            self._install(QueueItem.from_row(row, history))

        for conversation_id, item in list(self._items.items()):
            if conversation_id in seen or conversation_id in changed:
                continue
            conversation = conversations.get(conversation_id)
            if conversation is not None and conversation.status not in ACTIVE_QUEUE_STATUSES:
                logger.warning("dropping %s from working set (conversation status %s)", conversation_id, conversation.status)
                self._forget(conversation_id)
                continue
            if self._items.get(conversation_id) is not item:
                continue
            logger.warning("queue row missing for %s, re-inserting from working set", conversation_id)
            await self._persist(item, operation="reload_from_storage")

        for conversation_id, conversation in conversations.items():
            if conversation_id in changed:
                continue
            if conversation.status in ACTIVE_QUEUE_STATUSES and conversation_id not in self._items:
                await self.reconcile(conversation_id)

        logger.info("working set reloaded: %s active conversations", len(self._items))
        return len(self._items)

    async def _resolve(self, conversation_id: str) -> QueueItem | None:
        item = self._items.get(conversation_id)
        if item is not None:
            return item
        return await self._reconcile(conversation_id)

    async def _reconcile(self, conversation_id: str, *, rebuild_missing_row: bool = True) -> QueueItem | None:
        conversation = await self._io(self._conversations.get, conversation_id)
        if conversation is None or conversation.status not in ACTIVE_QUEUE_STATUSES:
            return None
        row = await self._io(self._queue.get, conversation_id)
        if row is None:
            if not rebuild_missing_row:
                return None
            reconstructed_at = self._clock()
            row = QueueRowRecord(
                conversation_id=conversation_id,
                channel_routing_id=conversation.channel_routing_id,
                recipient=conversation_id,
                start_time=conversation.last_activity,
                metadata={"degraded": True, "reconstructed_at": reconstructed_at.isoformat()},
            )
            logger.warning(
                "queue row missing for %s conversation %s; rebuilt in degraded state from last activity %s",
                conversation.status,
                conversation_id,
                conversation.last_activity.isoformat(),
            )
            try:
                await self._io(self._queue.upsert, row)
            except Exception:
                logger.exception("could not re-insert degraded queue row for %s", conversation_id)

        history = await self._history(conversation_id)
        existing = self._items.get(conversation_id)
        if existing is not None:
            return existing
        item = self._install(QueueItem.from_row(row, history))
        logger.info("reconciled conversation %s from storage (%s messages)", conversation_id, len(history))
        return item

    def _install(self, item: QueueItem) -> QueueItem:
        self._items[item.conversation_id] = item
        self._mark_changed(item.conversation_id)
        if not item.assigned_agent:
            self._timers.arm(item.conversation_id, "queue_wait", item.start_time)
        elif item.messages and item.messages[-1].sender == "user":
            self._timers.arm(item.conversation_id, "agent_response", item.messages[-1].timestamp)
        return item

    def _forget(self, conversation_id: str) -> None:
        self._timers.cancel(conversation_id)
        self._items.pop(conversation_id, None)
        self._mark_changed(conversation_id)

    def _mark_changed(self, conversation_id: str) -> None:
        if self._changed_during_reload is not None:
            self._changed_during_reload.add(conversation_id)

    async def _history(self, conversation_id: str) -> list[MessageRecord]:
        try:
            return await self._io(self._messages.list_by_conversation, conversation_id)
        except Exception:
            logger.exception("history unavailable for %s, continuing without it", conversation_id)
            return []

    # SLA ladder

    def _unresolved(self, item: QueueItem, slot: TimerSlot) -> bool:
        if slot.mode == "queue_wait":
            return not item.assigned_agent
        if not item.assigned_agent:
            return False
        return not any(
            message.sender == "agent"
            and message.agent_id == item.assigned_agent
            and message.timestamp >= slot.anchor
            for message in item.messages
        )

    async def _on_timer(self, slot: TimerSlot) -> None:
        conversation_id = slot.conversation_id
        item = self._items.get(conversation_id)
        if item is None or not self._unresolved(item, slot):
            logger.debug("%s timer for %s resolved before firing", slot.mode, conversation_id)
            return

        if slot.stage >= 2:
            await self.redirect_to_bot(conversation_id, reason=f"{slot.mode}_timeout")
            return

        logger.info("%s SLA stage 1 reached for %s, sending waiting message", slot.mode, conversation_id)
        sent = await self._channel.send_to_user(item.channel_routing_id, item.recipient, self._waiting_message)
        if not sent:
            logger.warning("waiting message for %s was not delivered", conversation_id)
        await self.add_system_message(conversation_id, WAITING_MESSAGE_LOG)
        if not self._timers.is_current(slot) or conversation_id not in self._items:
            return
        self._timers.arm(conversation_id, slot.mode, slot.anchor, stage=2)

    # Helpers

    async def _persist(self, item: QueueItem, *, operation: str) -> bool:
        try:
            await self._io(self._queue.upsert, item.to_row())
            return True
        except Exception:
            logger.exception("%s: queue row write failed for %s, keeping working set", operation, item.conversation_id)
            return False

    async def _set_status(
        self, conversation_id: str, status: ConversationStatus, *, is_escalated: bool | None = None
    ) -> None:
        try:
            await self._io(self._conversations.set_status, conversation_id, status=status, is_escalated=is_escalated)
        except Exception:
            logger.exception("could not set conversation %s status to %s", conversation_id, status)

    @staticmethod
    def _drop_from_memory(item: QueueItem, record: MessageRecord) -> None:
        for index in range(len(item.messages) - 1, -1, -1):
            if item.messages[index] is record:
                del item.messages[index]
                return

    async def _queue_changed(self, conversation_id: str, reason: str) -> None:
        await self._notifier.broadcast_to_agents("queue:updated", {"conversation_id": conversation_id, "reason": reason})
        await self._events.publish(QueueUpdated(conversation_id=conversation_id, reason=reason))
