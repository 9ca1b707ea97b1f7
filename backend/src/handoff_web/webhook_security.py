from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

SIGNATURE_HEADER = "X-Hub-Signature-256"


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _header(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized.startswith("sha256="):
        return None
    digest = normalized.removeprefix("sha256=").strip().lower()
    return digest or None


def sign_body(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    if settings.webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.whatsapp_app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="app_secret_missing")

    provided = _header(headers, SIGNATURE_HEADER)
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    normalized = _normalize_signature(provided)
    if normalized is None:
        return WebhookSignatureVerification(verified=False, reason="signature_invalid")

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(normalized, expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
