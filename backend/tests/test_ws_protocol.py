from __future__ import annotations

import asyncio
from typing import Any

import pytest
from pydantic import ValidationError

from handoff_web.bot_client import StubBotClient
from handoff_web.channels import StubChannelSender
from handoff_web.config import Settings
from handoff_web.notifier import RecordingAgentNotifier
from handoff_web.runtime import HandoffRuntime
from handoff_web.ws_protocol import (
    AgentStatusMessage,
    MessageSendMessage,
    PingMessage,
    QueueRequestMessage,
    parse_agent_message,
)

JUAN = "5215550001"


class _Replies:
    def __init__(self) -> None:
        self.items: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        self.items.append((event_type, payload))

    def last(self) -> tuple[str, dict[str, Any]]:
        return self.items[-1]


def _runtime() -> tuple[HandoffRuntime, StubChannelSender, RecordingAgentNotifier]:
    channel = StubChannelSender()
    notifier = RecordingAgentNotifier()
    runtime = HandoffRuntime.build(
        Settings(runtime_secret_guard_mode="off"), channel=channel, bot=StubBotClient(), notifier=notifier
    )
    return runtime, channel, notifier


async def _escalate(runtime: HandoffRuntime) -> None:
    await runtime.start(background=False)
    await runtime.conversations.handle_inbound(channel_routing_id="phone-number-1", sender=JUAN, text="Hola")
    await runtime.conversations.handle_bot_reply(JUAN, "Te comunicaré con un agente")


def test_parse_agent_message_picks_the_tagged_shape() -> None:
    assert isinstance(parse_agent_message({"type": "ping"}), PingMessage)
    assert isinstance(parse_agent_message({"type": "queue:request", "payload": {}}), QueueRequestMessage)

    status = parse_agent_message({"type": "agent:status", "payload": {"status": "away"}})
    assert isinstance(status, AgentStatusMessage)
    assert status.payload.status == "away"

    send = parse_agent_message(
        {"type": "message:send", "payload": {"conversation_id": JUAN, "message": "Hola", "extra": True}}
    )
    assert isinstance(send, MessageSendMessage)
    assert send.payload.attachment_url is None


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "unknown"},
        {"payload": {}},
        {"type": "agent:status", "payload": {"status": "sleeping"}},
        {"type": "message:send", "payload": {"conversation_id": JUAN, "message": "   "}},
        {"type": "conversation:assign", "payload": {"conversation_id": ""}},
        "not-an-object",
    ],
)
def test_parse_agent_message_rejects_malformed_payloads(raw: Any) -> None:
    with pytest.raises(ValidationError):
        parse_agent_message(raw)


def test_handler_reports_validation_errors_without_touching_the_core() -> None:
    runtime, _, notifier = _runtime()
    replies = _Replies()

    asyncio.run(runtime.socket_handler.handle("agent_1", {"type": "message:send", "payload": {}}, replies))

    event_type, payload = replies.last()
    assert event_type == "error"
    assert payload["message"] == "Formato de mensaje inválido"
    assert payload["details"]
    assert all(isinstance(detail["msg"], str) for detail in payload["details"])
    assert notifier.sent == []


def test_handler_runs_the_agent_workflow() -> None:
    runtime, channel, notifier = _runtime()
    replies = _Replies()
    handler = runtime.socket_handler

    async def scenario() -> None:
        await _escalate(runtime)

        await handler.send_initial_state("agent_1", replies)
        event_type, payload = replies.last()
        assert event_type == "initial:state"
        assert [item["conversation_id"] for item in payload["queue"]] == [JUAN]
        assert payload["assigned_conversations"] == []

        await handler.handle("agent_1", {"type": "ping"}, replies)
        assert replies.last() == ("pong", {})

        await handler.handle("agent_1", {"type": "conversation:assign", "payload": {"conversation_id": JUAN}}, replies)
        assert replies.last()[0] == "pong"

        await handler.handle("agent_2", {"type": "conversation:assign", "payload": {"conversation_id": JUAN}}, replies)
        assert replies.last()[0] == "error"

        await handler.handle("agent_2", {"type": "conversation:request", "payload": {"conversation_id": JUAN}}, replies)
        assert replies.last() == ("error", {"message": "Conversación asignada a otro agente: agent_1"})

        await handler.handle("agent_1", {"type": "conversation:request", "payload": {"conversation_id": JUAN}}, replies)
        event_type, payload = replies.last()
        assert event_type == "conversation:details"
        assert payload["conversation"]["assigned_agent"] == "agent_1"
        assert [message["sender"] for message in payload["conversation"]["messages"]] == ["user", "bot", "system"]

        await handler.handle(
            "agent_1",
            {"type": "message:send", "payload": {"conversation_id": JUAN, "message": "Hola, soy tu agente"}},
            replies,
        )
        event_type, payload = replies.last()
        assert event_type == "message:sent"
        assert payload["conversation_id"] == JUAN

        await handler.handle(
            "agent_2",
            {"type": "message:send", "payload": {"conversation_id": JUAN, "message": "intruso"}},
            replies,
        )
        assert replies.last() == ("error", {"message": "No estás asignado a esta conversación"})

        await handler.handle("agent_2", {"type": "conversation:complete", "payload": {"conversation_id": JUAN}}, replies)
        assert replies.last()[0] == "error"

        await handler.handle("agent_1", {"type": "conversation:complete", "payload": {"conversation_id": JUAN}}, replies)
        assert replies.last() == ("conversation:completed", {"conversation_id": JUAN})

        await handler.handle("agent_1", {"type": "queue:request"}, replies)
        assert replies.last() == ("queue:updated", {"queue": []})
        await runtime.stop()

    asyncio.run(scenario())

    assert "Hola, soy tu agente" in channel.texts_for(JUAN)
    assert "intruso" not in channel.texts_for(JUAN)
    assert [item.agent_id for item in notifier.of_type("conversation:assigned")] == ["agent_1"]


def test_handler_updates_agent_status() -> None:
    runtime, _, _ = _runtime()
    replies = _Replies()

    async def scenario() -> None:
        await runtime.start(background=False)
        await runtime.socket_handler.handle("agent_2", {"type": "agent:status", "payload": {"status": "away"}}, replies)
        assert replies.last() == ("agent:status:updated", {"status": "away"})
        await runtime.socket_handler.handle("ghost", {"type": "agent:status", "payload": {"status": "away"}}, replies)
        assert replies.last() == ("error", {"message": "Agente no encontrado"})
        await runtime.stop()

    asyncio.run(scenario())

    assert runtime.directory.get_agent("agent_2").status == "away"  # type: ignore[union-attr]
