from __future__ import annotations

import os

from handoff_web.config import DEFAULT_ESCALATION_PHRASES, Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_local_stubs() -> None:
    names = (
        "CHANNEL_SENDER_TYPE",
        "BOT_CLIENT_TYPE",
        "HANDOFF_STORE_BACKEND",
        "RESPONSE_TIMEOUT_SECONDS",
        "REDIRECT_TIMEOUT_MULTIPLIER",
        "ESCALATION_PHRASES",
        "WEBHOOK_SIGNATURE_MODE",
    )
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.channel_sender_type == "stub"
        assert settings.bot_client_type == "stub"
        assert settings.store_backend == "inmemory"
        assert settings.response_timeout_seconds == 300.0
        assert settings.redirect_timeout_seconds == 600.0
        assert settings.escalation_phrases == DEFAULT_ESCALATION_PHRASES
        assert settings.webhook_signature_mode == "log_only"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_parses_overrides() -> None:
    previous = {
        "RESPONSE_TIMEOUT_SECONDS": _set_env("RESPONSE_TIMEOUT_SECONDS", "120"),
        "REDIRECT_TIMEOUT_MULTIPLIER": _set_env("REDIRECT_TIMEOUT_MULTIPLIER", "3"),
        "ESCALATION_PHRASES": _set_env("ESCALATION_PHRASES", " hablar con soporte ,, quiero un humano "),
        "CORS_ALLOWED_ORIGINS": _set_env("CORS_ALLOWED_ORIGINS", "https://desk.example.com, https://ops.example.com"),
        "SEED_DEFAULT_AGENTS": _set_env("SEED_DEFAULT_AGENTS", "false"),
        "WEBHOOK_SIGNATURE_MODE": _set_env("WEBHOOK_SIGNATURE_MODE", " ENFORCE "),
        "BOT_CLIENT_TYPE": _set_env("BOT_CLIENT_TYPE", "carrier-pigeon"),
        "WHATSAPP_MESSAGE_RETRY_ATTEMPTS": _set_env("WHATSAPP_MESSAGE_RETRY_ATTEMPTS", "not-a-number"),
        "LOG_LEVEL": _set_env("LOG_LEVEL", "debug"),
    }
    try:
        settings = get_settings()
        assert settings.response_timeout_seconds == 120.0
        assert settings.redirect_timeout_seconds == 360.0
        assert settings.escalation_phrases == ("hablar con soporte", "quiero un humano")
        assert settings.cors_allowed_origins == ("https://desk.example.com", "https://ops.example.com")
        assert settings.seed_default_agents is False
        assert settings.webhook_signature_mode == "enforce"
        assert settings.bot_client_type == "stub"
        assert settings.whatsapp_retry_attempts == 3
        assert settings.log_level == "DEBUG"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_runtime_secret_issues_flags_missing_integration_secrets() -> None:
    issues = runtime_secret_issues(
        Settings(
            channel_sender_type="whatsapp",
            webhook_signature_mode="enforce",
            bot_client_type="directline",
            store_backend="postgres",
            response_timeout_seconds=0,
            redirect_timeout_multiplier=-1,
        )
    )

    assert issues == (
        "WHATSAPP_TOKEN is required when CHANNEL_SENDER_TYPE=whatsapp",
        "VERIFY_TOKEN is empty or uses a development placeholder",
        "WHATSAPP_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce",
        "BOT_TOKEN_ENDPOINT is required when BOT_CLIENT_TYPE=directline",
        "DATABASE_URL is required when HANDOFF_STORE_BACKEND=postgres",
        "RESPONSE_TIMEOUT_SECONDS must be greater than zero",
        "REDIRECT_TIMEOUT_MULTIPLIER must be greater than zero",
    )


def test_runtime_secret_issues_accepts_a_configured_deployment() -> None:
    settings = Settings(
        channel_sender_type="whatsapp",
        whatsapp_token="EAAG-prod-token-001",
        whatsapp_verify_token="prod-verify-token-001",
        whatsapp_app_secret="prod-app-secret-001",
        webhook_signature_mode="enforce",
        bot_client_type="directline",
        bot_token_endpoint="https://bot.example.com/api/token",
        store_backend="postgres",
        database_url="postgresql+psycopg://handoff:secret@db/handoff",
    )

    assert runtime_secret_issues(settings) == ()


def test_verify_token_placeholders_are_flagged() -> None:
    for token in ("", "   ", "developer-seed", "CHANGE-ME", "placeholder"):
        issues = runtime_secret_issues(Settings(whatsapp_verify_token=token))
        assert issues == ("VERIFY_TOKEN is empty or uses a development placeholder",)
