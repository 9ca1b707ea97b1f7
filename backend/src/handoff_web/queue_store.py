"""Durable record of conversations awaiting or under human handling."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

DEFAULT_PRIORITY = 1


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class QueueRowRecord:
    conversation_id: str
    channel_routing_id: str
    recipient: str
    start_time: datetime
    priority: int = DEFAULT_PRIORITY
    tags: tuple[str, ...] = ()
    assigned_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


def _oldest_first(rows: list[QueueRowRecord]) -> QueueRowRecord | None:
    unassigned = [row for row in rows if not row.assigned_agent]
    if not unassigned:
        return None
    return min(unassigned, key=lambda row: (-row.priority, row.start_time))


class QueueRepository(Protocol):
    def reset(self) -> None: ...

    def upsert(self, row: QueueRowRecord) -> QueueRowRecord: ...

    def get(self, conversation_id: str) -> QueueRowRecord | None: ...

    def list_all(self) -> list[QueueRowRecord]: ...

    def delete(self, conversation_id: str) -> bool: ...

    def find_unassigned_oldest(self) -> QueueRowRecord | None: ...


class InMemoryQueueRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._rows: dict[str, QueueRowRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()

    def upsert(self, row: QueueRowRecord) -> QueueRowRecord:
        stored = replace(row, tags=tuple(row.tags), metadata=dict(row.metadata))
        with self._lock:
            self._rows[row.conversation_id] = stored
        return stored

    def get(self, conversation_id: str) -> QueueRowRecord | None:
        with self._lock:
            return self._rows.get(conversation_id)

    def list_all(self) -> list[QueueRowRecord]:
        with self._lock:
            return sorted(self._rows.values(), key=lambda row: row.start_time)

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._rows.pop(conversation_id, None) is not None

    def find_unassigned_oldest(self) -> QueueRowRecord | None:
        with self._lock:
            return _oldest_first(list(self._rows.values()))


class QueueBase(DeclarativeBase):
    pass


class _QueueRow(QueueBase):
    __tablename__ = "handoff_queue"

    conversation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    channel_routing_id: Mapped[str] = mapped_column(String(128), nullable=False)
    recipient: Mapped[str] = mapped_column(String(128), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    tags_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    assigned_agent: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


class SqlAlchemyQueueRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for a database-backed queue store")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            QueueBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_QueueRow).delete()

    def upsert(self, row: QueueRowRecord) -> QueueRowRecord:
        with self._session() as session:
            with session.begin():
                existing = session.get(_QueueRow, row.conversation_id)
                if existing is None:
                    existing = _QueueRow(conversation_id=row.conversation_id)
                    session.add(existing)
                existing.channel_routing_id = row.channel_routing_id
                existing.recipient = row.recipient
                existing.start_time = row.start_time
                existing.priority = row.priority
                existing.tags_json = json.dumps(list(row.tags))
                existing.assigned_agent = row.assigned_agent
                existing.metadata_json = json.dumps(row.metadata, sort_keys=True, default=str)
                session.flush()
                return self._record(existing)

    def get(self, conversation_id: str) -> QueueRowRecord | None:
        with self._session() as session:
            row = session.get(_QueueRow, conversation_id)
            return self._record(row) if row is not None else None

    def list_all(self) -> list[QueueRowRecord]:
        with self._session() as session:
            rows = session.scalars(select(_QueueRow).order_by(_QueueRow.start_time.asc())).all()
            return [self._record(row) for row in rows]

    def delete(self, conversation_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_QueueRow, conversation_id)
                if row is None:
                    return False
                session.delete(row)
                return True

    def find_unassigned_oldest(self) -> QueueRowRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_QueueRow)
                .where(_QueueRow.assigned_agent.is_(None))
                .order_by(_QueueRow.priority.desc(), _QueueRow.start_time.asc())
                .limit(1)
            )
            return self._record(row) if row is not None else None

    @staticmethod
    def _record(row: _QueueRow) -> QueueRowRecord:
        return QueueRowRecord(
            conversation_id=row.conversation_id,
            channel_routing_id=row.channel_routing_id,
            recipient=row.recipient,
            start_time=_coerce_utc(row.start_time),
            priority=row.priority,
            tags=tuple(json.loads(row.tags_json or "[]")),
            assigned_agent=row.assigned_agent,
            metadata=json.loads(row.metadata_json or "{}"),
        )


def create_queue_repository(*, backend: str, database_url: str) -> QueueRepository:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlite", "sqlalchemy"}:
        return SqlAlchemyQueueRepository(database_url)
    if normalized == "inmemory":
        return InMemoryQueueRepository()
    raise RuntimeError(f"unsupported HANDOFF_STORE_BACKEND: {backend}")
