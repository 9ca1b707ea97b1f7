from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

MessageSender = Literal["user", "bot", "agent", "system"]
ConversationStatus = Literal["bot", "waiting", "agent", "completed"]
AgentStatus = Literal["offline", "online", "busy", "away"]
AgentRole = Literal["agent", "supervisor", "admin"]
TimerMode = Literal["queue_wait", "agent_response"]
AlertLevel = Literal["warning", "urgent", "critical"]

ACTIVE_QUEUE_STATUSES: frozenset[str] = frozenset({"waiting", "agent"})
MIN_PRIORITY = 1
MAX_PRIORITY = 5


class MessageItem(BaseModel):
    message_id: str
    conversation_id: str
    sender: MessageSender
    text: str
    timestamp: datetime
    agent_id: str | None = None
    attachment_url: str | None = None
    metadata: dict[str, Any] | None = None


class QueueItemResponse(BaseModel):
    conversation_id: str
    channel_routing_id: str
    recipient: str
    start_time: datetime
    priority: int
    tags: list[str]
    assigned_agent: str | None
    metadata: dict[str, Any] = Field(default_factory=dict)
    message_count: int


class QueueItemDetailResponse(QueueItemResponse):
    messages: list[MessageItem] = Field(default_factory=list)


class QueueListResponse(BaseModel):
    items: list[QueueItemResponse]


class QueueStatsResponse(BaseModel):
    total: int
    unassigned: int
    assigned: int
    avg_wait_seconds: float
    by_priority: dict[int, int]


class MessageListResponse(BaseModel):
    conversation_id: str
    items: list[MessageItem]


class AssignAgentRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=128)


class AgentMessageRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=128)
    text: str = Field(min_length=1, max_length=4096)
    attachment_url: str | None = Field(default=None, max_length=2048)


class PriorityUpdateRequest(BaseModel):
    priority: int


class TagsUpdateRequest(BaseModel):
    tags: list[str] = Field(default_factory=list, max_length=64)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw_tag in value:
            tag = str(raw_tag).strip()
            if tag and tag not in normalized:
                normalized.append(tag)
        return normalized


class MetadataPatchRequest(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConversationOperationResponse(BaseModel):
    conversation_id: str
    ok: bool


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    email: str
    status: AgentStatus
    role: AgentRole
    active_conversations: list[str]
    max_concurrent_chats: int
    last_activity: datetime


class AgentListResponse(BaseModel):
    items: list[AgentResponse]


class AgentStatusUpdateRequest(BaseModel):
    status: AgentStatus


class WebhookAckResponse(BaseModel):
    accepted: bool
    processed_messages: int = 0
