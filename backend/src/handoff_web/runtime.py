"""Composition root: builds every service once and owns the background loops."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from .agents import AgentDirectory, create_agent_repository
from .alerts import WaitingAlertMonitor
from .bot_client import BotClient, create_bot_client
from .channels import ChannelSender, create_channel_sender
from .config import Settings
from .conversation_store import ConversationRepository, create_conversation_repository
from .conversations import ConversationService
from .escalation import EscalationDetector
from .events import EventBus
from .messages import MessageRepository, create_message_repository
from .notifier import AgentNotifier, WebSocketAgentHub
from .queue_store import QueueRepository, create_queue_repository
from .registry import ConversationRegistry
from .timers import ResponseTimers
from .ws_protocol import AgentSocketHandler

logger = logging.getLogger(__name__)


@dataclass
class HandoffRuntime:
    settings: Settings
    events: EventBus
    message_repository: MessageRepository
    queue_repository: QueueRepository
    conversation_repository: ConversationRepository
    directory: AgentDirectory
    hub: WebSocketAgentHub
    notifier: AgentNotifier
    channel: ChannelSender
    bot: BotClient
    timers: ResponseTimers
    registry: ConversationRegistry
    conversations: ConversationService
    alerts: WaitingAlertMonitor
    socket_handler: AgentSocketHandler
    _loops: list[asyncio.Task[None]] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        channel: ChannelSender | None = None,
        bot: BotClient | None = None,
        notifier: AgentNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> HandoffRuntime:
        backend = settings.store_backend
        message_repository = create_message_repository(backend=backend, database_url=settings.database_url)
        queue_repository = create_queue_repository(backend=backend, database_url=settings.database_url)
        conversation_repository = create_conversation_repository(backend=backend, database_url=settings.database_url)
        directory = AgentDirectory(
            repository=create_agent_repository(backend=backend, database_url=settings.database_url)
        )

        events = EventBus()
        hub = WebSocketAgentHub()
        active_notifier = notifier or hub
        active_channel = channel or create_channel_sender(settings)
        active_bot = bot or create_bot_client(settings)
        clock_kwargs = {"clock": clock} if clock is not None else {}

        timers = ResponseTimers(
            timeout_seconds=settings.response_timeout_seconds,
            redirect_multiplier=settings.redirect_timeout_multiplier,
            **clock_kwargs,
        )
        registry = ConversationRegistry(
            queue_repository=queue_repository,
            message_repository=message_repository,
            conversation_repository=conversation_repository,
            directory=directory,
            notifier=active_notifier,
            channel=active_channel,
            timers=timers,
            events=events,
            waiting_message=settings.waiting_message,
            **clock_kwargs,
        )
        conversations = ConversationService(
            conversation_repository=conversation_repository,
            message_repository=message_repository,
            registry=registry,
            detector=EscalationDetector(settings.escalation_phrases),
            bot=active_bot,
            channel=active_channel,
            events=events,
            escalation_confirmation_message=settings.escalation_confirmation_message,
            agent_completion_message=settings.agent_completion_message,
            redirect_message=settings.redirect_message,
            inactivity_timeout_seconds=settings.inactivity_timeout_seconds,
            token_refresh_minutes=settings.bot_token_refresh_minutes,
            poll_bot_replies=settings.bot_client_type == "directline" and bot is None,
            poll_interval_seconds=settings.bot_poll_interval_seconds,
            **clock_kwargs,
        )
        alerts = WaitingAlertMonitor(
            registry=registry,
            notifier=active_notifier,
            events=events,
            warning_seconds=settings.alert_warning_seconds,
            urgent_seconds=settings.alert_urgent_seconds,
            critical_seconds=settings.alert_critical_seconds,
            **clock_kwargs,
        )
        return cls(
            settings=settings,
            events=events,
            message_repository=message_repository,
            queue_repository=queue_repository,
            conversation_repository=conversation_repository,
            directory=directory,
            hub=hub,
            notifier=active_notifier,
            channel=active_channel,
            bot=active_bot,
            timers=timers,
            registry=registry,
            conversations=conversations,
            alerts=alerts,
            socket_handler=AgentSocketHandler(registry=registry, conversations=conversations, directory=directory),
        )

    async def start(self, *, background: bool = True) -> None:
        if self.settings.seed_default_agents:
            await asyncio.to_thread(self.directory.seed_default_agents)
        restored = await self.registry.load_initial_state()
        logger.info("handoff runtime started with %s active conversations", restored)
        if not background:
            return
        self._loops = [
            self._spawn("inactivity-cleanup", self.settings.cleanup_interval_seconds, self._cleanup),
            self._spawn("storage-reload", self.settings.reload_interval_seconds, self._reload),
            self._spawn("waiting-alerts", self.settings.alert_check_interval_seconds, self._check_alerts),
        ]

    async def stop(self) -> None:
        loops = list(self._loops)
        self._loops.clear()
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        self.timers.cancel_all()
        await self.conversations.shutdown()
        logger.info("handoff runtime stopped")

    async def _cleanup(self) -> None:
        cleaned = await self.conversations.cleanup_inactive_conversations()
        if cleaned:
            logger.info("closed %s inactive conversations", cleaned)

    async def _reload(self) -> None:
        await self.registry.reload_from_storage()

    async def _check_alerts(self) -> None:
        await self.alerts.check()

    def _spawn(self, name: str, interval_seconds: float, job: Callable[[], Awaitable[None]]) -> asyncio.Task[None]:
        return asyncio.get_running_loop().create_task(self._every(name, interval_seconds, job), name=name)

    @staticmethod
    async def _every(name: str, interval_seconds: float, job: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await job()
            except Exception:
                logger.exception("background job %s failed", name)
