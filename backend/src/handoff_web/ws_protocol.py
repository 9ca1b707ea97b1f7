"""Agent WebSocket protocol: one validated payload shape per message kind."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .agents import AgentDirectory, AgentNotFoundError
from .conversations import ConversationService
from .models import AgentStatus
from .registry import ConversationRegistry

logger = logging.getLogger(__name__)

Reply = Callable[[str, dict[str, Any]], Awaitable[None]]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EmptyPayload(_Payload):
    pass


class StatusPayload(_Payload):
    status: AgentStatus


class ConversationRef(_Payload):
    conversation_id: str = Field(min_length=1, max_length=128)


class MessageSendPayload(ConversationRef):
    message: str = Field(max_length=4096)
    attachment_url: str | None = Field(default=None, max_length=2048)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("El mensaje no puede estar vacío")
        return value


class PingMessage(BaseModel):
    type: Literal["ping"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class AgentStatusMessage(BaseModel):
    type: Literal["agent:status"]
    payload: StatusPayload


class ConversationRequestMessage(BaseModel):
    type: Literal["conversation:request"]
    payload: ConversationRef


class ConversationAssignMessage(BaseModel):
    type: Literal["conversation:assign"]
    payload: ConversationRef


class MessageSendMessage(BaseModel):
    type: Literal["message:send"]
    payload: MessageSendPayload


class ConversationCompleteMessage(BaseModel):
    type: Literal["conversation:complete"]
    payload: ConversationRef


class QueueRequestMessage(BaseModel):
    type: Literal["queue:request"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


AgentSocketMessage = Annotated[
    Union[
        PingMessage,
        AgentStatusMessage,
        ConversationRequestMessage,
        ConversationAssignMessage,
        MessageSendMessage,
        ConversationCompleteMessage,
        QueueRequestMessage,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[AgentSocketMessage] = TypeAdapter(AgentSocketMessage)


def parse_agent_message(raw: Any) -> AgentSocketMessage:
    return _adapter.validate_python(raw)


class AgentSocketHandler:
    def __init__(
        self,
        *,
        registry: ConversationRegistry,
        conversations: ConversationService,
        directory: AgentDirectory,
    ) -> None:
        self._registry = registry
        self._conversations = conversations
        self._directory = directory

    def _queue_payload(self) -> list[dict[str, Any]]:
        return [item.summary() for item in self._registry.get_queue()]

    async def send_initial_state(self, agent_id: str, reply: Reply) -> None:
        await reply(
            "initial:state",
            {
                "queue": self._queue_payload(),
                "assigned_conversations": [
                    item.summary() for item in self._registry.get_conversations_by_agent(agent_id)
                ],
            },
        )

    async def handle(self, agent_id: str, raw: Any, reply: Reply) -> None:
        try:
            message = parse_agent_message(raw)
        except ValidationError as exc:
            logger.info("rejected socket message from agent %s: %s", agent_id, exc.error_count())
            details = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
            await reply("error", {"message": "Formato de mensaje inválido", "details": details})
            return

        if isinstance(message, PingMessage):
            await reply("pong", {})
        elif isinstance(message, AgentStatusMessage):
            await self._update_status(agent_id, message.payload.status, reply)
        elif isinstance(message, ConversationRequestMessage):
            await self._send_details(agent_id, message.payload.conversation_id, reply)
        elif isinstance(message, ConversationAssignMessage):
            await self._assign(agent_id, message.payload.conversation_id, reply)
        elif isinstance(message, MessageSendMessage):
            await self._send_message(agent_id, message.payload, reply)
        elif isinstance(message, ConversationCompleteMessage):
            await self._complete(agent_id, message.payload.conversation_id, reply)
        elif isinstance(message, QueueRequestMessage):
            await reply("queue:updated", {"queue": self._queue_payload()})

    async def _update_status(self, agent_id: str, status: AgentStatus, reply: Reply) -> None:
        try:
            await asyncio.to_thread(self._directory.set_status, agent_id, status)
        except AgentNotFoundError:
            await reply("error", {"message": "Agente no encontrado"})
            return
        await reply("agent:status:updated", {"status": status})

    async def _send_details(self, agent_id: str, conversation_id: str, reply: Reply) -> None:
        item = await self._registry.get_conversation(conversation_id)
        if item is None:
            await reply("error", {"message": f"Conversación no encontrada: {conversation_id}"})
            return
        if item.assigned_agent and item.assigned_agent != agent_id:
            await reply("error", {"message": f"Conversación asignada a otro agente: {item.assigned_agent}"})
            return
        messages = await self._registry.get_messages(conversation_id)
        details = item.summary()
        details["messages"] = [
            {
                "message_id": message.message_id,
                "sender": message.sender,
                "text": message.text,
                "timestamp": message.timestamp.isoformat(),
                "agent_id": message.agent_id,
                "attachment_url": message.attachment_url,
            }
            for message in messages
        ]
        await reply("conversation:details", {"conversation": details})

    async def _assign(self, agent_id: str, conversation_id: str, reply: Reply) -> None:
        if not await self._registry.assign_agent(conversation_id, agent_id):
            await reply("error", {"message": f"No se pudo asignar la conversación {conversation_id}"})

    async def _send_message(self, agent_id: str, payload: MessageSendPayload, reply: Reply) -> None:
        record = await self._conversations.send_agent_message(
            payload.conversation_id,
            agent_id=agent_id,
            text=payload.message,
            attachment_url=payload.attachment_url,
        )
        if record is None:
            await reply("error", {"message": "No estás asignado a esta conversación"})
            return
        await reply("message:sent", {"conversation_id": payload.conversation_id, "message_id": record.message_id})

    async def _complete(self, agent_id: str, conversation_id: str, reply: Reply) -> None:
        item = await self._registry.get_conversation(conversation_id)
        if item is None or item.assigned_agent != agent_id:
            await reply("error", {"message": "No estás asignado a esta conversación"})
            return
        if not await self._conversations.complete_agent_conversation(conversation_id):
            await reply("error", {"message": f"No se pudo completar la conversación {conversation_id}"})
            return
        await reply("conversation:completed", {"conversation_id": conversation_id})
