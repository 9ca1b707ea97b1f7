from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_ESCALATION_PHRASES: tuple[str, ...] = (
    "la remisión a un agente por chat",
    "te comunicaré con un agente",
    "hablar con un agente",
    "hablar con una persona",
    "hablar con alguien",
    "devolver llamada",
    "llamar al servicio",
)


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Agent Handoff Desk"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    # SLA ladder.
    response_timeout_seconds: float = 300.0
    redirect_timeout_multiplier: float = 2.0
    waiting_message: str = (
        "Gracias por tu paciencia. Un agente te atenderá en breve, por favor espera un momento."
    )
    escalation_confirmation_message: str = "Tu conversación ha sido transferida a un agente. Pronto te atenderán."
    agent_completion_message: str = "La conversación con el agente ha finalizado. ¿En qué más puedo ayudarte?"
    redirect_message: str = (
        "En este momento no hay agentes disponibles. Te devolvemos al asistente virtual."
    )
    escalation_phrases: tuple[str, ...] = DEFAULT_ESCALATION_PHRASES
    # Housekeeping loops.
    inactivity_timeout_seconds: float = 24 * 60 * 60
    cleanup_interval_seconds: float = 15 * 60
    reload_interval_seconds: float = 5 * 60
    alert_check_interval_seconds: float = 60
    alert_warning_seconds: float = 5 * 60
    alert_urgent_seconds: float = 15 * 60
    alert_critical_seconds: float = 30 * 60
    seed_default_agents: bool = True
    # Persistence.
    store_backend: str = "inmemory"
    database_url: str = ""
    # Outbound channel (WhatsApp Cloud API).
    channel_sender_type: str = "stub"
    whatsapp_token: str = ""
    whatsapp_verify_token: str = "developer-seed"
    whatsapp_app_secret: str = ""
    whatsapp_graph_api_base_url: str = "https://graph.facebook.com"
    whatsapp_graph_api_version: str = "v17.0"
    whatsapp_retry_attempts: int = 3
    whatsapp_retry_delay_seconds: float = 1.0
    whatsapp_timeout_seconds: float = 30.0
    webhook_signature_mode: str = "log_only"
    # Bot platform (DirectLine).
    bot_client_type: str = "stub"
    directline_url: str = "https://directline.botframework.com/v3/directline"
    bot_token_endpoint: str = ""
    bot_token_refresh_minutes: int = 30
    bot_poll_interval_seconds: float = 1.0
    runtime_secret_guard_mode: str = "warn"

    @property
    def redirect_timeout_seconds(self) -> float:
        return self.response_timeout_seconds * self.redirect_timeout_multiplier

    def uses_database(self) -> bool:
        return self.store_backend.strip().lower() in {"postgres", "sqlite", "sqlalchemy"}


def get_settings() -> Settings:
    phrases = _as_csv_tuple(os.getenv("ESCALATION_PHRASES"))
    return Settings(
        app_name=os.getenv("HANDOFF_APP_NAME", "Agent Handoff Desk"),
        api_prefix=os.getenv("HANDOFF_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS")) or ("http://localhost:3000",),
        response_timeout_seconds=_as_float(os.getenv("RESPONSE_TIMEOUT_SECONDS"), 300.0),
        redirect_timeout_multiplier=_as_float(os.getenv("REDIRECT_TIMEOUT_MULTIPLIER"), 2.0),
        waiting_message=os.getenv("WAITING_MESSAGE", Settings.waiting_message),
        escalation_confirmation_message=os.getenv(
            "ESCALATION_CONFIRMATION_MESSAGE", Settings.escalation_confirmation_message
        ),
        agent_completion_message=os.getenv("AGENT_COMPLETION_MESSAGE", Settings.agent_completion_message),
        redirect_message=os.getenv("REDIRECT_MESSAGE", Settings.redirect_message),
        escalation_phrases=phrases or DEFAULT_ESCALATION_PHRASES,
        inactivity_timeout_seconds=_as_float(os.getenv("INACTIVITY_TIMEOUT_SECONDS"), 24 * 60 * 60),
        cleanup_interval_seconds=_as_float(os.getenv("CLEANUP_INTERVAL_SECONDS"), 15 * 60),
        reload_interval_seconds=_as_float(os.getenv("RELOAD_INTERVAL_SECONDS"), 5 * 60),
        alert_check_interval_seconds=_as_float(os.getenv("ALERT_CHECK_INTERVAL_SECONDS"), 60),
        alert_warning_seconds=_as_float(os.getenv("ALERT_WARNING_SECONDS"), 5 * 60),
        alert_urgent_seconds=_as_float(os.getenv("ALERT_URGENT_SECONDS"), 15 * 60),
        alert_critical_seconds=_as_float(os.getenv("ALERT_CRITICAL_SECONDS"), 30 * 60),
        seed_default_agents=_as_bool(os.getenv("SEED_DEFAULT_AGENTS"), True),
        store_backend=os.getenv("HANDOFF_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        channel_sender_type=_normalize_mode(
            os.getenv("CHANNEL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "whatsapp"},
        ),
        whatsapp_token=os.getenv("WHATSAPP_TOKEN", ""),
        whatsapp_verify_token=os.getenv("VERIFY_TOKEN", "developer-seed"),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_graph_api_base_url=os.getenv("GRAPH_API_BASE_URL", "https://graph.facebook.com"),
        whatsapp_graph_api_version=os.getenv("GRAPH_API_VERSION", "v17.0"),
        whatsapp_retry_attempts=_as_int(os.getenv("WHATSAPP_MESSAGE_RETRY_ATTEMPTS"), 3),
        whatsapp_retry_delay_seconds=_as_float(os.getenv("WHATSAPP_MESSAGE_RETRY_DELAY_SECONDS"), 1.0),
        whatsapp_timeout_seconds=_as_float(os.getenv("WHATSAPP_MESSAGE_TIMEOUT_SECONDS"), 30.0),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        bot_client_type=_normalize_mode(
            os.getenv("BOT_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "directline"},
        ),
        directline_url=os.getenv("DIRECTLINE_URL", "https://directline.botframework.com/v3/directline"),
        bot_token_endpoint=os.getenv("BOT_TOKEN_ENDPOINT", ""),
        bot_token_refresh_minutes=_as_int(os.getenv("DIRECTLINE_TOKEN_REFRESH_MINUTES"), 30),
        bot_poll_interval_seconds=_as_float(os.getenv("DIRECTLINE_POLL_INTERVAL_SECONDS"), 1.0),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.channel_sender_type == "whatsapp" and not settings.whatsapp_token.strip():
        issues.append("WHATSAPP_TOKEN is required when CHANNEL_SENDER_TYPE=whatsapp")
    if _is_placeholder(settings.whatsapp_verify_token, defaults={"developer-seed"}):
        issues.append("VERIFY_TOKEN is empty or uses a development placeholder")
    if settings.webhook_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.bot_client_type == "directline" and not settings.bot_token_endpoint.strip():
        issues.append("BOT_TOKEN_ENDPOINT is required when BOT_CLIENT_TYPE=directline")
    if settings.uses_database() and not settings.database_url.strip():
        issues.append(
            f"DATABASE_URL is required when HANDOFF_STORE_BACKEND={settings.store_backend.strip().lower()}"
        )
    if settings.response_timeout_seconds <= 0:
        issues.append("RESPONSE_TIMEOUT_SECONDS must be greater than zero")
    if settings.redirect_timeout_multiplier <= 0:
        issues.append("REDIRECT_TIMEOUT_MULTIPLIER must be greater than zero")
    return tuple(issues)
