"""Push notifications from the core to connected agents."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def _envelope(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": event_type,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class AgentNotifier(Protocol):
    async def send_to_agent(self, agent_id: str, event_type: str, payload: dict[str, Any]) -> bool: ...

    async def broadcast_to_agents(self, event_type: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class SentNotification:
    agent_id: str | None
    event_type: str
    payload: dict[str, Any]


class RecordingAgentNotifier:
    """Keeps every notification in memory; agents listed in ``offline`` are unreachable."""

    def __init__(self, *, offline: set[str] | None = None) -> None:
        self.sent: list[SentNotification] = []
        self.offline: set[str] = set(offline or ())

    async def send_to_agent(self, agent_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        if agent_id in self.offline:
            return False
        self.sent.append(SentNotification(agent_id=agent_id, event_type=event_type, payload=dict(payload)))
        return True

    async def broadcast_to_agents(self, event_type: str, payload: dict[str, Any]) -> None:
        self.sent.append(SentNotification(agent_id=None, event_type=event_type, payload=dict(payload)))

    def of_type(self, event_type: str) -> list[SentNotification]:
        return [item for item in self.sent if item.event_type == event_type]


class WebSocketAgentHub:
    """Tracks open agent sockets and fans notifications out to them."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, agent_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[agent_id].add(websocket)
        logger.info("agent %s connected (%s open sockets)", agent_id, len(self._connections[agent_id]))

    def disconnect(self, agent_id: str, websocket: WebSocket) -> None:
        sockets = self._connections.get(agent_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            self._connections.pop(agent_id, None)
        logger.info("agent %s disconnected", agent_id)

    def is_connected(self, agent_id: str) -> bool:
        return bool(self._connections.get(agent_id))

    def connected_agents(self) -> list[str]:
        return sorted(agent_id for agent_id, sockets in self._connections.items() if sockets)

    async def send_to_agent(self, agent_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        sockets = list(self._connections.get(agent_id, ()))
        if not sockets:
            return False
        message = _envelope(event_type, payload)
        delivered = False
        for websocket in sockets:
            if await self._send(agent_id, websocket, message):
                delivered = True
        return delivered

    async def broadcast_to_agents(self, event_type: str, payload: dict[str, Any]) -> None:
        message = _envelope(event_type, payload)
        for agent_id, sockets in list(self._connections.items()):
            for websocket in list(sockets):
                await self._send(agent_id, websocket, message)

    async def _send(self, agent_id: str, websocket: WebSocket, message: dict[str, Any]) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception:
            logger.warning("dropping agent socket for %s after send failure", agent_id, exc_info=True)
            self.disconnect(agent_id, websocket)
            return False
