"""Client side of the automated bot platform (DirectLine)."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Any, Protocol

from .config import Settings

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BotSession:
    session_id: str
    token: str
    fetched_at: datetime


@dataclass(frozen=True)
class BotActivity:
    activity_id: str
    text: str
    role: str = "bot"


@dataclass(frozen=True)
class BotPollResult:
    activities: tuple[BotActivity, ...]
    watermark: str | None


class BotClientError(Exception):
    """Raised when the bot platform rejects or cannot serve a request."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class BotClient(Protocol):
    async def create_session(self) -> BotSession: ...

    async def refresh_token(self, session: BotSession) -> BotSession: ...

    async def send_to_bot(self, session: BotSession, sender_id: str, text: str) -> None: ...

    async def poll_replies(self, session: BotSession, watermark: str | None) -> BotPollResult: ...


class StubBotClient:
    """In-process bot used for local runs and tests.

    Sent activities are recorded per session; replies are queued with
    ``queue_reply`` and drained by ``poll_replies``.
    """

    def __init__(self) -> None:
        self._sessions = count(1)
        self._activities = count(1)
        self.sent: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self._pending: dict[str, list[BotActivity]] = defaultdict(list)
        self.refreshed: list[str] = []
        self.fail_sends = False

    async def create_session(self) -> BotSession:
        number = next(self._sessions)
        return BotSession(session_id=f"stub-session-{number}", token=f"stub-token-{number}", fetched_at=_now_utc())

    async def refresh_token(self, session: BotSession) -> BotSession:
        self.refreshed.append(session.session_id)
        return replace(session, token=f"{session.token}-r", fetched_at=_now_utc())

    async def send_to_bot(self, session: BotSession, sender_id: str, text: str) -> None:
        if self.fail_sends:
            raise BotClientError("stub_send_failed", "stub bot client forced failure")
        self.sent[session.session_id].append((sender_id, text))

    def queue_reply(self, session_id: str, text: str) -> None:
        self._pending[session_id].append(BotActivity(activity_id=f"stub-activity-{next(self._activities)}", text=text))

    async def poll_replies(self, session: BotSession, watermark: str | None) -> BotPollResult:
        pending = self._pending.pop(session.session_id, [])
        return BotPollResult(activities=tuple(pending), watermark=watermark)


class DirectLineBotClient:
    """DirectLine v3 over plain HTTPS; blocking calls run in a worker thread."""

    def __init__(self, *, base_url: str, token_endpoint: str, timeout_seconds: float = 30.0) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_endpoint = token_endpoint.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_endpoint:
            raise ValueError("token_endpoint must not be empty")
        self._base_url = stripped_url
        self._token_endpoint = stripped_endpoint
        self._timeout_seconds = timeout_seconds

    async def create_session(self) -> BotSession:
        token_data = await asyncio.to_thread(self._request, "GET", self._token_endpoint)
        token = str(token_data.get("token") or "")
        if not token:
            raise BotClientError("token_missing", "token endpoint returned no token")
        conversation = await asyncio.to_thread(self._request, "POST", f"{self._base_url}/conversations", token=token)
        session_id = str(conversation.get("conversationId") or "")
        if not session_id:
            raise BotClientError("conversation_missing", "DirectLine returned no conversationId")
        logger.info("created DirectLine conversation %s", session_id)
        return BotSession(session_id=session_id, token=str(conversation.get("token") or token), fetched_at=_now_utc())

    async def refresh_token(self, session: BotSession) -> BotSession:
        data = await asyncio.to_thread(
            self._request, "POST", f"{self._base_url}/tokens/refresh", token=session.token
        )
        token = str(data.get("token") or "")
        if not token:
            raise BotClientError("token_missing", "token refresh returned no token")
        return replace(session, token=token, fetched_at=_now_utc())

    async def send_to_bot(self, session: BotSession, sender_id: str, text: str) -> None:
        activity = {"type": "message", "from": {"id": sender_id}, "text": text}
        await asyncio.to_thread(
            self._request,
            "POST",
            f"{self._base_url}/conversations/{session.session_id}/activities",
            token=session.token,
            body=activity,
        )

    async def poll_replies(self, session: BotSession, watermark: str | None) -> BotPollResult:
        url = f"{self._base_url}/conversations/{session.session_id}/activities"
        if watermark:
            url = f"{url}?{urllib.parse.urlencode({'watermark': watermark})}"
        data = await asyncio.to_thread(self._request, "GET", url, token=session.token)
        activities: list[BotActivity] = []
        for raw in data.get("activities") or []:
            sender = raw.get("from") or {}
            if raw.get("type") != "message" or sender.get("role") != "bot":
                continue
            text = raw.get("text")
            if not text:
                continue
            activities.append(BotActivity(activity_id=str(raw.get("id") or ""), text=str(text)))
        next_watermark = data.get("watermark")
        return BotPollResult(
            activities=tuple(activities),
            watermark=str(next_watermark) if next_watermark is not None else watermark,
        )

    def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        data = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as exc:
            raise BotClientError(error_code=f"http_{exc.code}", message=f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise BotClientError(error_code="connection_error", message=f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise BotClientError(error_code="timeout", message=f"Request timed out: {exc}") from exc


def create_bot_client(settings: Settings) -> BotClient:
    if settings.bot_client_type == "directline":
        return DirectLineBotClient(base_url=settings.directline_url, token_endpoint=settings.bot_token_endpoint)
    return StubBotClient()
