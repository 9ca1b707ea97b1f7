"""Outbound delivery of text to end users on their messaging channel."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .config import Settings

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


class ChannelSender(Protocol):
    async def send_to_user(self, channel_routing_id: str, recipient: str, text: str) -> bool: ...


@dataclass(frozen=True)
class OutboundMessage:
    channel_routing_id: str
    recipient: str
    text: str
    sent_at: datetime


class StubChannelSender:
    """Records outbound messages; recipients containing ``fail`` are rejected."""

    def __init__(self) -> None:
        self.sent: list[OutboundMessage] = []

    async def send_to_user(self, channel_routing_id: str, recipient: str, text: str) -> bool:
        if "fail" in recipient.lower():
            logger.warning("stub channel refused delivery to %s", mask_recipient(recipient))
            return False
        self.sent.append(
            OutboundMessage(
                channel_routing_id=channel_routing_id,
                recipient=recipient,
                text=text,
                sent_at=datetime.now(timezone.utc),
            )
        )
        return True

    def texts_for(self, recipient: str) -> list[str]:
        return [item.text for item in self.sent if item.recipient == recipient]


class ChannelSendError(Exception):
    """Internal error raised when a single delivery attempt fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def format_phone_number(value: str) -> str:
    digits = _NON_DIGITS.sub("", value)
    # Mexican mobile numbers arrive as 521XXXXXXXXXX but must be addressed as 52XXXXXXXXXX.
    if digits.startswith("521"):
        digits = "52" + digits[3:]
    return digits


def mask_recipient(recipient: str) -> str:
    normalized = recipient.strip()
    if not normalized:
        return "***"
    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


class WhatsAppCloudSender:
    """Sends text messages through the WhatsApp Cloud API with retry and backoff."""

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v17.0",
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        timeout_seconds: float = 30.0,
    ) -> None:
        stripped_token = token.strip()
        if not stripped_token:
            raise ValueError("token must not be empty")
        self._token = stripped_token
        self._base_url = base_url.strip().rstrip("/")
        self._api_version = api_version.strip().strip("/")
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay_seconds = max(0.0, retry_delay_seconds)
        self._timeout_seconds = timeout_seconds

    async def send_to_user(self, channel_routing_id: str, recipient: str, text: str) -> bool:
        url = f"{self._base_url}/{self._api_version}/{channel_routing_id}/messages"
        body = {
            "messaging_product": "whatsapp",
            "to": format_phone_number(recipient),
            "type": "text",
            "text": {"body": text, "preview_url": False},
        }
        for attempt in range(1, self._retry_attempts + 1):
            try:
                await asyncio.to_thread(self._post, url, body)
                return True
            except ChannelSendError as exc:
                logger.warning(
                    "whatsapp send attempt %s/%s to %s failed: %s (%s)",
                    attempt,
                    self._retry_attempts,
                    mask_recipient(recipient),
                    exc.message,
                    exc.error_code,
                )
            if attempt < self._retry_attempts:
                await asyncio.sleep(self._retry_delay_seconds * (2 ** (attempt - 1)))
        logger.error("whatsapp delivery to %s abandoned after %s attempts", mask_recipient(recipient), self._retry_attempts)
        return False

    def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as exc:
            raise ChannelSendError(error_code=f"http_{exc.code}", message=f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise ChannelSendError(error_code="connection_error", message=f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ChannelSendError(error_code="timeout", message=f"Request timed out: {exc}") from exc


def create_channel_sender(settings: Settings) -> ChannelSender:
    if settings.channel_sender_type == "whatsapp":
        return WhatsAppCloudSender(
            token=settings.whatsapp_token,
            base_url=settings.whatsapp_graph_api_base_url,
            api_version=settings.whatsapp_graph_api_version,
            retry_attempts=settings.whatsapp_retry_attempts,
            retry_delay_seconds=settings.whatsapp_retry_delay_seconds,
            timeout_seconds=settings.whatsapp_timeout_seconds,
        )
    return StubChannelSender()
