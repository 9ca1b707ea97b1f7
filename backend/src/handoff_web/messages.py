"""Durable, append-only message history keyed by conversation id."""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import MessageSender


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    sender: MessageSender
    text: str
    timestamp: datetime
    agent_id: str | None = None
    attachment_url: str | None = None
    metadata: dict[str, Any] | None = field(default=None, compare=False)


class MessageRepository(Protocol):
    def reset(self) -> None: ...

    def append(self, message: MessageRecord) -> MessageRecord: ...

    def list_by_conversation(self, conversation_id: str) -> list[MessageRecord]: ...


def _ordered(messages: list[tuple[int, MessageRecord]]) -> list[MessageRecord]:
    return [message for _, message in sorted(messages, key=lambda value: (value[1].timestamp, value[0]))]


class InMemoryMessageRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._sequence = count(1)
        self._by_conversation: dict[str, list[tuple[int, MessageRecord]]] = defaultdict(list)
        self._by_id: dict[str, MessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._sequence = count(1)
            self._by_conversation.clear()
            self._by_id.clear()

    def append(self, message: MessageRecord) -> MessageRecord:
        with self._lock:
            existing = self._by_id.get(message.message_id)
            if existing is not None:
                return existing
            self._by_conversation[message.conversation_id].append((next(self._sequence), message))
            self._by_id[message.message_id] = message
            return message

    def list_by_conversation(self, conversation_id: str) -> list[MessageRecord]:
        with self._lock:
            return _ordered(list(self._by_conversation.get(conversation_id, [])))


class MessagesBase(DeclarativeBase):
    pass


class _MessageRow(MessagesBase):
    __tablename__ = "handoff_messages"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    conversation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    agent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attachment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)


class SqlAlchemyMessageRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for a database-backed message store")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MessagesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MessageRow).delete()

    def append(self, message: MessageRecord) -> MessageRecord:
        with self._session() as session:
            with session.begin():
                existing = session.scalar(select(_MessageRow).where(_MessageRow.message_id == message.message_id))
                if existing is not None:
                    return self._record(existing)
                session.add(
                    _MessageRow(
                        message_id=message.message_id,
                        conversation_id=message.conversation_id,
                        sender=message.sender,
                        text=message.text,
                        timestamp=message.timestamp,
                        agent_id=message.agent_id,
                        attachment_url=message.attachment_url,
                        metadata_json=(
                            json.dumps(message.metadata, sort_keys=True, default=str)
                            if message.metadata is not None
                            else None
                        ),
                    )
                )
        return message

    def list_by_conversation(self, conversation_id: str) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.timestamp.asc(), _MessageRow.sequence.asc())
            ).all()
            return [self._record(row) for row in rows]

    @staticmethod
    def _record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            sender=row.sender,  # type: ignore[arg-type]
            text=row.text,
            timestamp=_coerce_utc(row.timestamp),
            agent_id=row.agent_id,
            attachment_url=row.attachment_url,
            metadata=json.loads(row.metadata_json) if row.metadata_json else None,
        )


def create_message_repository(*, backend: str, database_url: str) -> MessageRepository:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlite", "sqlalchemy"}:
        return SqlAlchemyMessageRepository(database_url)
    if normalized == "inmemory":
        return InMemoryMessageRepository()
    raise RuntimeError(f"unsupported HANDOFF_STORE_BACKEND: {backend}")
