"""Durable conversation records keyed by the end user's channel identity."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ConversationStatus


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    channel_routing_id: str
    status: ConversationStatus
    is_escalated: bool
    last_activity: datetime
    created_at: datetime
    bot_session_id: str | None = None
    bot_token: str | None = None
    token_fetched_at: datetime | None = None


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, conversation_id: str) -> ConversationRecord | None: ...

    def upsert(self, record: ConversationRecord) -> ConversationRecord: ...

    def set_status(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus,
        is_escalated: bool | None = None,
    ) -> ConversationRecord | None: ...

    def touch(self, conversation_id: str, *, at: datetime | None = None) -> bool: ...

    def list_all(self) -> list[ConversationRecord]: ...


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, ConversationRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def get(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            return self._records.get(conversation_id)

    def upsert(self, record: ConversationRecord) -> ConversationRecord:
        with self._lock:
            self._records[record.conversation_id] = record
        return record

    def set_status(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus,
        is_escalated: bool | None = None,
    ) -> ConversationRecord | None:
        with self._lock:
            current = self._records.get(conversation_id)
            if current is None:
                return None
            updated = replace(
                current,
                status=status,
                is_escalated=current.is_escalated if is_escalated is None else is_escalated,
                last_activity=_now_utc(),
            )
            self._records[conversation_id] = updated
            return updated

    def touch(self, conversation_id: str, *, at: datetime | None = None) -> bool:
        with self._lock:
            current = self._records.get(conversation_id)
            if current is None:
                return False
            self._records[conversation_id] = replace(current, last_activity=at or _now_utc())
            return True

    def list_all(self) -> list[ConversationRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda value: value.created_at)


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "handoff_conversations"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    channel_routing_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="bot", index=True)
    is_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    bot_session_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bot_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for a database-backed conversation store")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ConversationRow).delete()

    def get(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._record(row) if row is not None else None

    def upsert(self, record: ConversationRecord) -> ConversationRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, record.conversation_id)
                if row is None:
                    row = _ConversationRow(conversation_id=record.conversation_id, created_at=record.created_at)
                    session.add(row)
                row.channel_routing_id = record.channel_routing_id
                row.status = record.status
                row.is_escalated = record.is_escalated
                row.last_activity = record.last_activity
                row.bot_session_id = record.bot_session_id
                row.bot_token = record.bot_token
                row.token_fetched_at = record.token_fetched_at
                session.flush()
                return self._record(row)

    def set_status(
        self,
        conversation_id: str,
        *,
        status: ConversationStatus,
        is_escalated: bool | None = None,
    ) -> ConversationRecord | None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    return None
                row.status = status
                if is_escalated is not None:
                    row.is_escalated = is_escalated
                row.last_activity = _now_utc()
                session.flush()
                return self._record(row)

    def touch(self, conversation_id: str, *, at: datetime | None = None) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    return False
                row.last_activity = at or _now_utc()
                return True

    def list_all(self) -> list[ConversationRecord]:
        with self._session() as session:
            rows = session.scalars(select(_ConversationRow).order_by(_ConversationRow.created_at.asc())).all()
            return [self._record(row) for row in rows]

    @staticmethod
    def _record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            channel_routing_id=row.channel_routing_id,
            status=row.status,  # type: ignore[arg-type]
            is_escalated=row.is_escalated,
            last_activity=_coerce_utc(row.last_activity),  # type: ignore[arg-type]
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            bot_session_id=row.bot_session_id,
            bot_token=row.bot_token,
            token_fetched_at=_coerce_utc(row.token_fetched_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlite", "sqlalchemy"}:
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported HANDOFF_STORE_BACKEND: {backend}")
