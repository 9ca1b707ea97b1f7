"""Agent directory: canonical agent records and their conversation load."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import AgentRole, AgentStatus

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AgentNotFoundError(KeyError):
    """Raised when an operation references an agent id that does not exist."""


@dataclass(frozen=True)
class AgentRecord:
    agent_id: str
    name: str
    email: str
    status: AgentStatus
    role: AgentRole
    max_concurrent_chats: int
    last_activity: datetime
    active_conversations: tuple[str, ...] = ()

    @property
    def at_capacity(self) -> bool:
        return len(self.active_conversations) >= self.max_concurrent_chats


class AgentRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, agent_id: str) -> AgentRecord | None: ...

    def upsert(self, agent: AgentRecord) -> AgentRecord: ...

    def list_all(self) -> list[AgentRecord]: ...

    def delete(self, agent_id: str) -> bool: ...


class InMemoryAgentRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._agents: dict[str, AgentRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._agents.clear()

    def get(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._agents.get(agent_id)

    def upsert(self, agent: AgentRecord) -> AgentRecord:
        with self._lock:
            self._agents[agent.agent_id] = agent
        return agent

    def list_all(self) -> list[AgentRecord]:
        with self._lock:
            return sorted(self._agents.values(), key=lambda value: value.agent_id)

    def delete(self, agent_id: str) -> bool:
        with self._lock:
            return self._agents.pop(agent_id, None) is not None


class AgentsBase(DeclarativeBase):
    pass


class _AgentRow(AgentsBase):
    __tablename__ = "handoff_agents"

    agent_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    max_concurrent_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    active_conversations_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyAgentRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for a database-backed agent directory")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AgentsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AgentRow).delete()

    def get(self, agent_id: str) -> AgentRecord | None:
        with self._session() as session:
            row = session.get(_AgentRow, agent_id)
            return self._record(row) if row is not None else None

    def upsert(self, agent: AgentRecord) -> AgentRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_AgentRow, agent.agent_id)
                if row is None:
                    row = _AgentRow(agent_id=agent.agent_id)
                    session.add(row)
                row.name = agent.name
                row.email = agent.email
                row.status = agent.status
                row.role = agent.role
                row.max_concurrent_chats = agent.max_concurrent_chats
                row.active_conversations_json = json.dumps(list(agent.active_conversations))
                row.last_activity = agent.last_activity
                session.flush()
                return self._record(row)

    def list_all(self) -> list[AgentRecord]:
        with self._session() as session:
            rows = session.scalars(select(_AgentRow).order_by(_AgentRow.agent_id.asc())).all()
            return [self._record(row) for row in rows]

    def delete(self, agent_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_AgentRow, agent_id)
                if row is None:
                    return False
                session.delete(row)
                return True

    @staticmethod
    def _record(row: _AgentRow) -> AgentRecord:
        return AgentRecord(
            agent_id=row.agent_id,
            name=row.name,
            email=row.email,
            status=row.status,  # type: ignore[arg-type]
            role=row.role,  # type: ignore[arg-type]
            max_concurrent_chats=row.max_concurrent_chats,
            last_activity=_coerce_utc(row.last_activity),
            active_conversations=tuple(json.loads(row.active_conversations_json or "[]")),
        )


def create_agent_repository(*, backend: str, database_url: str) -> AgentRepository:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlite", "sqlalchemy"}:
        return SqlAlchemyAgentRepository(database_url)
    if normalized == "inmemory":
        return InMemoryAgentRepository()
    raise RuntimeError(f"unsupported HANDOFF_STORE_BACKEND: {backend}")


_DEFAULT_AGENTS: tuple[tuple[str, str, str, AgentRole, int], ...] = (
    ("agent_1", "Agente 1", "agent1@example.com", "agent", 3),
    ("agent_2", "Agente 2", "agent2@example.com", "agent", 3),
    ("agent_3", "Agente 3", "agent3@example.com", "agent", 3),
    ("supervisor_1", "Supervisor", "supervisor@example.com", "supervisor", 5),
    ("admin_1", "Administrador", "admin@example.com", "admin", 10),
)


class AgentDirectory:
    """Owns agent status and the capacity bookkeeping the registry relies on.

    The registry only enforces one agent per conversation; whether an agent may
    take more work is decided here, from ``max_concurrent_chats``.
    """

    def __init__(self, *, repository: AgentRepository) -> None:
        self._repository = repository
        self._lock = Lock()

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        return self._repository.get(agent_id)

    def set_agent(self, agent: AgentRecord) -> AgentRecord:
        return self._repository.upsert(agent)

    def list_agents(self) -> list[AgentRecord]:
        return self._repository.list_all()

    def delete_agent(self, agent_id: str) -> bool:
        return self._repository.delete(agent_id)

    def set_status(self, agent_id: str, status: AgentStatus) -> AgentRecord:
        with self._lock:
            agent = self._repository.get(agent_id)
            if agent is None:
                raise AgentNotFoundError(agent_id)
            return self._repository.upsert(replace(agent, status=status, last_activity=_now_utc()))

    def can_accept(self, agent_id: str) -> bool:
        agent = self._repository.get(agent_id)
        if agent is None:
            return False
        return agent.status in {"online", "busy"} and not agent.at_capacity

    def register_assignment(self, agent_id: str, conversation_id: str) -> AgentRecord | None:
        with self._lock:
            agent = self._repository.get(agent_id)
            if agent is None:
                logger.warning("assignment bookkeeping skipped, unknown agent %s (conversation %s)", agent_id, conversation_id)
                return None
            active = agent.active_conversations
            if conversation_id not in active:
                active = (*active, conversation_id)
            status = agent.status
            if len(active) >= agent.max_concurrent_chats:
                status = "busy"
            return self._repository.upsert(
                replace(agent, active_conversations=active, status=status, last_activity=_now_utc())
            )

    def release_assignment(self, agent_id: str, conversation_id: str) -> AgentRecord | None:
        with self._lock:
            agent = self._repository.get(agent_id)
            if agent is None:
                return None
            active = tuple(value for value in agent.active_conversations if value != conversation_id)
            status = agent.status
            if status == "busy" and len(active) < agent.max_concurrent_chats:
                status = "online"
            return self._repository.upsert(
                replace(agent, active_conversations=active, status=status, last_activity=_now_utc())
            )

    def seed_default_agents(self) -> int:
        if self._repository.list_all():
            return 0
        now = _now_utc()
        for agent_id, name, email, role, max_chats in _DEFAULT_AGENTS:
            self._repository.upsert(
                AgentRecord(
                    agent_id=agent_id,
                    name=name,
                    email=email,
                    status="online",
                    role=role,
                    max_concurrent_chats=max_chats,
                    last_activity=now,
                )
            )
        logger.info("seeded %s default agents", len(_DEFAULT_AGENTS))
        return len(_DEFAULT_AGENTS)
