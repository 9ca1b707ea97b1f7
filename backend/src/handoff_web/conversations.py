"""Bot-phase routing: owns conversations until they are escalated to the queue."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

from .bot_client import BotClient, BotClientError, BotSession
from .channels import ChannelSender
from .conversation_store import ConversationRecord, ConversationRepository
from .escalation import EscalationDetector
from .events import ConversationRedirected, EventBus
from .messages import MessageRecord, MessageRepository
from .models import ACTIVE_QUEUE_STATUSES, ConversationStatus, MessageSender
from .registry import ConversationRegistry, new_message_id

logger = logging.getLogger(__name__)

InboundRoute = Literal["agent", "bot", "bot_unavailable"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ConversationService:
    def __init__(
        self,
        *,
        conversation_repository: ConversationRepository,
        message_repository: MessageRepository,
        registry: ConversationRegistry,
        detector: EscalationDetector,
        bot: BotClient,
        channel: ChannelSender,
        events: EventBus,
        escalation_confirmation_message: str,
        agent_completion_message: str,
        redirect_message: str,
        inactivity_timeout_seconds: float,
        token_refresh_minutes: int = 30,
        poll_bot_replies: bool = False,
        poll_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._conversations = conversation_repository
        self._messages = message_repository
        self._registry = registry
        self._detector = detector
        self._bot = bot
        self._channel = channel
        self._escalation_confirmation_message = escalation_confirmation_message
        self._agent_completion_message = agent_completion_message
        self._redirect_message = redirect_message
        self._inactivity_timeout = timedelta(seconds=inactivity_timeout_seconds)
        self._token_refresh = timedelta(minutes=token_refresh_minutes)
        self._poll_bot_replies = poll_bot_replies
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._pollers: dict[str, asyncio.Task[None]] = {}
        events.subscribe(ConversationRedirected, self._on_redirected)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return await asyncio.to_thread(self._conversations.get, conversation_id)

    async def handle_inbound(
        self,
        *,
        channel_routing_id: str,
        sender: str,
        text: str,
        message_id: str | None = None,
    ) -> InboundRoute:
        conversation = await self._ensure_conversation(channel_routing_id, sender)
        if conversation.is_escalated or conversation.status in ACTIVE_QUEUE_STATUSES:
            record = await self._registry.add_message(sender, sender="user", text=text, message_id=message_id)
            if record is not None:
                return "agent"
            logger.warning("conversation %s is escalated but not recoverable, returning it to the bot", sender)
            conversation = await self._set_status(sender, "bot", is_escalated=False) or conversation

        await self._record(sender, "user", text, message_id=message_id)
        try:
            session = await self._session_for(conversation)
            await self._bot.send_to_bot(session, sender, text)
        except BotClientError as exc:
            logger.warning("bot delivery failed for %s: %s (%s)", sender, exc.message, exc.error_code)
            return "bot_unavailable"
        self._ensure_polling(sender)
        return "bot"

    async def handle_bot_reply(self, sender: str, text: str) -> bool:
        """Process one bot reply; returns True when it escalated the conversation."""
        conversation = await asyncio.to_thread(self._conversations.get, sender)
        if conversation is None:
            logger.warning("bot reply for unknown conversation %s ignored", sender)
            return False

        phrase = self._detector.matched_phrase(text)
        if phrase is not None and not conversation.is_escalated:
            logger.info("escalation phrase %r detected for %s", phrase, sender)
            return await self.escalate(sender, bot_message=text, reason=phrase)

        await self._record(sender, "bot", text)
        if conversation.is_escalated:
            return False
        sent = await self._channel.send_to_user(conversation.channel_routing_id, sender, text)
        if not sent:
            logger.warning("bot reply for %s was not delivered", sender)
        return False

    async def escalate(self, sender: str, *, bot_message: str, reason: str) -> bool:
        conversation = await self._set_status(sender, "waiting", is_escalated=True)
        if conversation is None:
            logger.warning("escalate: unknown conversation %s", sender)
            return False

        sent = await self._channel.send_to_user(
            conversation.channel_routing_id, sender, self._escalation_confirmation_message
        )
        if not sent:
            logger.warning("escalation confirmation for %s was not delivered", sender)

        has_full_history = True
        try:
            history = await asyncio.to_thread(self._messages.list_by_conversation, sender)
        except Exception:
            logger.exception("escalate: history for %s unavailable, queueing without it", sender)
            history = []
            has_full_history = False

        item = await self._registry.add_to_queue(
            sender,
            channel_routing_id=conversation.channel_routing_id,
            recipient=sender,
            metadata={"escalation_reason": reason, "has_full_history": has_full_history},
        )
        if item is None:
            logger.error("escalate: %s could not be queued", sender)
            return False
        self._registry.replay_history(sender, history)

        last = item.messages[-1] if item.messages else None
        if last is None or last.sender != "bot" or last.text != bot_message:
            await self._registry.add_message(sender, sender="bot", text=bot_message)
        logger.info("conversation %s escalated with %s prior messages", sender, len(history))
        return True

    async def send_agent_message(
        self,
        conversation_id: str,
        *,
        agent_id: str,
        text: str,
        attachment_url: str | None = None,
    ) -> MessageRecord | None:
        item = await self._registry.get_conversation(conversation_id)
        if item is None or item.assigned_agent != agent_id:
            logger.warning("agent %s may not write to conversation %s", agent_id, conversation_id)
            return None
        record = await self._registry.add_message(
            conversation_id, sender="agent", text=text, agent_id=agent_id, attachment_url=attachment_url
        )
        if record is None:
            return None
        sent = await self._channel.send_to_user(item.channel_routing_id, item.recipient, text)
        if not sent:
            logger.warning("agent %s reply for %s was not delivered", agent_id, conversation_id)
        return record

    async def complete_agent_conversation(self, sender: str) -> bool:
        item = self._registry.peek(sender)
        conversation = await asyncio.to_thread(self._conversations.get, sender)
        completed = await self._registry.complete_conversation(sender)
        if not completed:
            return False

        channel_routing_id = conversation.channel_routing_id if conversation else None
        if channel_routing_id is None and item is not None:
            channel_routing_id = item.channel_routing_id
        if channel_routing_id is not None:
            sent = await self._channel.send_to_user(channel_routing_id, sender, self._agent_completion_message)
            if not sent:
                logger.warning("completion message for %s was not delivered", sender)
        return True

    async def cleanup_inactive_conversations(self) -> int:
        cutoff = self._clock() - self._inactivity_timeout
        records = await asyncio.to_thread(self._conversations.list_all)
        cleaned = 0
        for record in records:
            if record.status == "completed" or record.last_activity >= cutoff:
                continue
            if record.status in ACTIVE_QUEUE_STATUSES:
                await self._registry.complete_conversation(record.conversation_id)
            await self._set_status(record.conversation_id, "completed", is_escalated=False)
            self._stop_polling(record.conversation_id)
            cleaned += 1
            logger.info("conversation %s closed after inactivity", record.conversation_id)
        return cleaned

    async def shutdown(self) -> None:
        tasks = list(self._pollers.values())
        self._pollers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _on_redirected(self, event: ConversationRedirected) -> None:
        sent = await self._channel.send_to_user(event.channel_routing_id, event.recipient, self._redirect_message)
        if not sent:
            logger.warning("redirect notice for %s was not delivered", event.conversation_id)

    async def _ensure_conversation(self, channel_routing_id: str, sender: str) -> ConversationRecord:
        existing = await asyncio.to_thread(self._conversations.get, sender)
        now = self._clock()
        if existing is not None:
            if existing.status == "completed":
                existing = ConversationRecord(
                    conversation_id=sender,
                    channel_routing_id=channel_routing_id,
                    status="bot",
                    is_escalated=False,
                    last_activity=now,
                    created_at=existing.created_at,
                    bot_session_id=existing.bot_session_id,
                    bot_token=existing.bot_token,
                    token_fetched_at=existing.token_fetched_at,
                )
                return await asyncio.to_thread(self._conversations.upsert, existing)
            return existing

        record = ConversationRecord(
            conversation_id=sender,
            channel_routing_id=channel_routing_id,
            status="bot",
            is_escalated=False,
            last_activity=now,
            created_at=now,
        )
        try:
            session = await self._bot.create_session()
        except BotClientError as exc:
            logger.warning("could not open bot session for %s: %s", sender, exc.message)
        else:
            record = self._with_session(record, session)
        logger.info("new conversation %s", sender)
        return await asyncio.to_thread(self._conversations.upsert, record)

    async def _session_for(self, conversation: ConversationRecord) -> BotSession:
        if not conversation.bot_session_id or not conversation.bot_token:
            session = await self._bot.create_session()
            await asyncio.to_thread(self._conversations.upsert, self._with_session(conversation, session))
            return session

        session = BotSession(
            session_id=conversation.bot_session_id,
            token=conversation.bot_token,
            fetched_at=conversation.token_fetched_at or conversation.created_at,
        )
        if self._clock() - session.fetched_at < self._token_refresh:
            return session
        refreshed = await self._bot.refresh_token(session)
        current = await asyncio.to_thread(self._conversations.get, conversation.conversation_id) or conversation
        await asyncio.to_thread(self._conversations.upsert, self._with_session(current, refreshed))
        logger.info("refreshed bot token for %s", conversation.conversation_id)
        return refreshed

    @staticmethod
    def _with_session(record: ConversationRecord, session: BotSession) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=record.conversation_id,
            channel_routing_id=record.channel_routing_id,
            status=record.status,
            is_escalated=record.is_escalated,
            last_activity=record.last_activity,
            created_at=record.created_at,
            bot_session_id=session.session_id,
            bot_token=session.token,
            token_fetched_at=session.fetched_at,
        )

    async def _record(
        self, conversation_id: str, sender: MessageSender, text: str, *, message_id: str | None = None
    ) -> MessageRecord | None:
        record = MessageRecord(
            message_id=message_id or new_message_id(),
            conversation_id=conversation_id,
            sender=sender,
            text=text,
            timestamp=self._clock(),
        )
        try:
            stored = await asyncio.to_thread(self._messages.append, record)
            await asyncio.to_thread(self._conversations.touch, conversation_id, at=record.timestamp)
            return stored
        except Exception:
            logger.exception("could not record %s message for %s", sender, conversation_id)
            return None

    async def _set_status(
        self, conversation_id: str, status: ConversationStatus, *, is_escalated: bool | None = None
    ) -> ConversationRecord | None:
        return await asyncio.to_thread(
            self._conversations.set_status, conversation_id, status=status, is_escalated=is_escalated
        )

    def _ensure_polling(self, conversation_id: str) -> None:
        if not self._poll_bot_replies:
            return
        task = self._pollers.get(conversation_id)
        if task is not None and not task.done():
            return
        self._pollers[conversation_id] = asyncio.get_running_loop().create_task(self._poll_loop(conversation_id))

    def _stop_polling(self, conversation_id: str) -> None:
        task = self._pollers.pop(conversation_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll_loop(self, conversation_id: str) -> None:
        watermark: str | None = None
        while True:
            await asyncio.sleep(self._poll_interval_seconds)
            conversation = await asyncio.to_thread(self._conversations.get, conversation_id)
            if conversation is None or conversation.status == "completed" or not conversation.bot_session_id:
                logger.debug("stopping bot reply polling for %s", conversation_id)
                self._pollers.pop(conversation_id, None)
                return
            session = BotSession(
                session_id=conversation.bot_session_id,
                token=conversation.bot_token or "",
                fetched_at=conversation.token_fetched_at or conversation.created_at,
            )
            try:
                result = await self._bot.poll_replies(session, watermark)
            except BotClientError as exc:
                logger.warning("bot polling failed for %s: %s", conversation_id, exc.message)
                continue
            watermark = result.watermark
            for activity in result.activities:
                try:
                    await self.handle_bot_reply(conversation_id, activity.text)
                except Exception:
                    logger.exception("bot reply handling failed for %s", conversation_id)
