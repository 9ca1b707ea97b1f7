from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import PlainTextResponse

from .agents import AgentNotFoundError, AgentRecord
from .messages import MessageRecord
from .models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    AgentListResponse,
    AgentMessageRequest,
    AgentResponse,
    AgentStatusUpdateRequest,
    AssignAgentRequest,
    ConversationOperationResponse,
    MessageItem,
    MessageListResponse,
    MetadataPatchRequest,
    PriorityUpdateRequest,
    QueueItemDetailResponse,
    QueueItemResponse,
    QueueListResponse,
    QueueStatsResponse,
    TagsUpdateRequest,
    WebhookAckResponse,
)
from .registry import QueueItem
from .runtime import HandoffRuntime
from .webhook_security import verify_whatsapp_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["handoff"])
socket_router = APIRouter(tags=["handoff-ws"])

_MEDIA_PLACEHOLDERS = {
    "image": "He recibido tu imagen, pero actualmente solo puedo procesar mensajes de texto.",
    "audio": "He recibido tu mensaje de voz, pero actualmente solo puedo procesar mensajes de texto.",
    "document": "He recibido tu documento, pero actualmente solo puedo procesar mensajes de texto.",
}
_UNSUPPORTED_PLACEHOLDER = "Lo siento, este tipo de mensaje no es compatible actualmente."


def _runtime(request: Request) -> HandoffRuntime:
    return request.app.state.runtime  # type: ignore[no-any-return]


def _message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        message_id=record.message_id,
        conversation_id=record.conversation_id,
        sender=record.sender,
        text=record.text,
        timestamp=record.timestamp,
        agent_id=record.agent_id,
        attachment_url=record.attachment_url,
        metadata=record.metadata,
    )


def _queue_item(item: QueueItem) -> QueueItemResponse:
    return QueueItemResponse(
        conversation_id=item.conversation_id,
        channel_routing_id=item.channel_routing_id,
        recipient=item.recipient,
        start_time=item.start_time,
        priority=item.priority,
        tags=list(item.tags),
        assigned_agent=item.assigned_agent,
        metadata=dict(item.metadata),
        message_count=len(item.messages),
    )


def _agent_item(agent: AgentRecord) -> AgentResponse:
    return AgentResponse(
        agent_id=agent.agent_id,
        name=agent.name,
        email=agent.email,
        status=agent.status,
        role=agent.role,
        active_conversations=list(agent.active_conversations),
        max_concurrent_chats=agent.max_concurrent_chats,
        last_activity=agent.last_activity,
    )


def _inbound_text(message: dict[str, Any]) -> str | None:
    message_type = message.get("type")
    if message_type == "text":
        body = (message.get("text") or {}).get("body")
        return str(body) if body else None
    return _MEDIA_PLACEHOLDERS.get(str(message_type), _UNSUPPORTED_PLACEHOLDER)


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    request: Request,
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> str:
    settings = _runtime(request).settings
    if mode == "subscribe" and token == settings.whatsapp_verify_token:
        logger.info("webhook verified")
        return challenge or ""
    raise HTTPException(status_code=403, detail="webhook verification failed")


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(request: Request) -> WebhookAckResponse:
    runtime = _runtime(request)
    body = await request.body()
    verification = verify_whatsapp_signature(settings=runtime.settings, body=body, headers=request.headers)
    if not verification.verified:
        if runtime.settings.webhook_signature_mode == "enforce":
            logger.warning("webhook rejected: %s", verification.reason)
            return WebhookAckResponse(accepted=False)
        logger.warning("webhook signature not verified (%s), processing anyway", verification.reason)

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("webhook body is not valid JSON")
        return WebhookAckResponse(accepted=False)
    if not isinstance(payload, dict):
        return WebhookAckResponse(accepted=False)

    processed = 0
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            channel_routing_id = str((value.get("metadata") or {}).get("phone_number_id") or "")
            for message in value.get("messages") or []:
                sender = message.get("from")
                text = _inbound_text(message)
                if not sender or not channel_routing_id or text is None:
                    continue
                try:
                    await runtime.conversations.handle_inbound(
                        channel_routing_id=channel_routing_id,
                        sender=str(sender),
                        text=text,
                        message_id=message.get("id"),
                    )
                    processed += 1
                except Exception:
                    logger.exception("inbound message from %s could not be processed", sender)
    return WebhookAckResponse(accepted=True, processed_messages=processed)


@router.get("/queue", response_model=QueueListResponse)
async def list_queue(request: Request, unassigned: bool = False, agent_id: str | None = None) -> QueueListResponse:
    registry = _runtime(request).registry
    if agent_id:
        items = registry.get_conversations_by_agent(agent_id)
    elif unassigned:
        items = registry.get_unassigned()
    else:
        items = registry.get_queue()
    return QueueListResponse(items=[_queue_item(item) for item in items])


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(request: Request) -> QueueStatsResponse:
    stats = _runtime(request).registry.get_queue_stats()
    return QueueStatsResponse(
        total=stats.total,
        unassigned=stats.unassigned,
        assigned=stats.assigned,
        avg_wait_seconds=stats.avg_wait_seconds,
        by_priority=stats.by_priority,
    )


@router.get("/queue/next", response_model=QueueItemResponse)
async def next_in_queue(request: Request) -> QueueItemResponse:
    item = _runtime(request).registry.get_oldest_unassigned()
    if item is None:
        raise HTTPException(status_code=404, detail="no unassigned conversations")
    return _queue_item(item)


@router.get("/conversations/{conversation_id}", response_model=QueueItemDetailResponse)
async def get_conversation(conversation_id: str, request: Request) -> QueueItemDetailResponse:
    registry = _runtime(request).registry
    item = await registry.get_conversation(conversation_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    summary = _queue_item(item)
    return QueueItemDetailResponse(
        **summary.model_dump(),
        messages=[_message_item(message) for message in item.messages],
    )


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def get_messages(conversation_id: str, request: Request) -> MessageListResponse:
    messages = await _runtime(request).registry.get_messages(conversation_id)
    return MessageListResponse(conversation_id=conversation_id, items=[_message_item(item) for item in messages])


@router.post("/conversations/{conversation_id}/assign", response_model=ConversationOperationResponse)
async def assign_conversation(
    conversation_id: str, payload: AssignAgentRequest, request: Request
) -> ConversationOperationResponse:
    runtime = _runtime(request)
    if await runtime.registry.get_conversation(conversation_id) is None:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    if runtime.directory.get_agent(payload.agent_id) is None:
        raise HTTPException(status_code=404, detail=f"agent not found: {payload.agent_id}")
    if not await runtime.registry.assign_agent(conversation_id, payload.agent_id):
        raise HTTPException(status_code=409, detail=f"conversation {conversation_id} is assigned to another agent")
    return ConversationOperationResponse(conversation_id=conversation_id, ok=True)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageItem,
    status_code=status.HTTP_201_CREATED,
)
async def send_agent_message(conversation_id: str, payload: AgentMessageRequest, request: Request) -> MessageItem:
    runtime = _runtime(request)
    item = await runtime.registry.get_conversation(conversation_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    if item.assigned_agent != payload.agent_id:
        raise HTTPException(status_code=409, detail=f"agent {payload.agent_id} is not assigned to {conversation_id}")
    record = await runtime.conversations.send_agent_message(
        conversation_id,
        agent_id=payload.agent_id,
        text=payload.text,
        attachment_url=payload.attachment_url,
    )
    if record is None:
        raise HTTPException(status_code=409, detail=f"message for {conversation_id} was not accepted")
    return _message_item(record)


@router.post("/conversations/{conversation_id}/complete", response_model=ConversationOperationResponse)
async def complete_conversation(conversation_id: str, request: Request) -> ConversationOperationResponse:
    if not await _runtime(request).conversations.complete_agent_conversation(conversation_id):
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    return ConversationOperationResponse(conversation_id=conversation_id, ok=True)


@router.put("/conversations/{conversation_id}/priority", response_model=ConversationOperationResponse)
async def update_priority(
    conversation_id: str, payload: PriorityUpdateRequest, request: Request
) -> ConversationOperationResponse:
    registry = _runtime(request).registry
    if not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY:
        raise HTTPException(
            status_code=422, detail=f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}"
        )
    if not await registry.update_priority(conversation_id, payload.priority):
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    return ConversationOperationResponse(conversation_id=conversation_id, ok=True)


@router.put("/conversations/{conversation_id}/tags", response_model=ConversationOperationResponse)
async def update_tags(
    conversation_id: str, payload: TagsUpdateRequest, request: Request
) -> ConversationOperationResponse:
    if not await _runtime(request).registry.update_tags(conversation_id, payload.tags):
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    return ConversationOperationResponse(conversation_id=conversation_id, ok=True)


@router.patch("/conversations/{conversation_id}/metadata", response_model=ConversationOperationResponse)
async def update_metadata(
    conversation_id: str, payload: MetadataPatchRequest, request: Request
) -> ConversationOperationResponse:
    if not await _runtime(request).registry.update_metadata(conversation_id, payload.metadata):
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}")
    return ConversationOperationResponse(conversation_id=conversation_id, ok=True)


@router.get("/agents", response_model=AgentListResponse)
def list_agents(request: Request) -> AgentListResponse:
    return AgentListResponse(items=[_agent_item(agent) for agent in _runtime(request).directory.list_agents()])


@router.get("/agents/{agent_id}", response_model=AgentResponse)
def get_agent(agent_id: str, request: Request) -> AgentResponse:
    agent = _runtime(request).directory.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"agent not found: {agent_id}")
    return _agent_item(agent)


@router.put("/agents/{agent_id}/status", response_model=AgentResponse)
def update_agent_status(agent_id: str, payload: AgentStatusUpdateRequest, request: Request) -> AgentResponse:
    try:
        agent = _runtime(request).directory.set_status(agent_id, payload.status)
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"agent not found: {agent_id}") from exc
    return _agent_item(agent)


@socket_router.websocket("/ws/agents/{agent_id}")
async def agent_socket(websocket: WebSocket, agent_id: str) -> None:
    runtime: HandoffRuntime = websocket.app.state.runtime
    if runtime.directory.get_agent(agent_id) is None:
        await websocket.close(code=4404)
        return

    async def reply(event_type: str, payload: dict[str, Any]) -> None:
        await websocket.send_json({"type": event_type, "payload": payload})

    await runtime.hub.connect(agent_id, websocket)
    try:
        await runtime.socket_handler.send_initial_state(agent_id, reply)
        while True:
            try:
                raw = await websocket.receive_json()
            except ValueError:
                await reply("error", {"message": "Formato de mensaje inválido"})
                continue
            await runtime.socket_handler.handle(agent_id, raw, reply)
    except WebSocketDisconnect:
        logger.info("agent %s socket closed", agent_id)
    finally:
        runtime.hub.disconnect(agent_id, websocket)
