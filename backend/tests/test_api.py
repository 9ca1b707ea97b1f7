from __future__ import annotations

import json
from functools import partial
from typing import Any

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from handoff_web.config import Settings
from handoff_web.main import create_app
from handoff_web.runtime import HandoffRuntime
from handoff_web.webhook_security import SIGNATURE_HEADER, sign_body

JUAN = "5215550001"
VERIFY_TOKEN = "verify-token-001"


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "whatsapp_verify_token": VERIFY_TOKEN,
        "webhook_signature_mode": "off",
        "runtime_secret_guard_mode": "enforce",
    }
    values.update(overrides)
    return Settings(**values)


def _client(**overrides: Any) -> TestClient:
    return TestClient(create_app(settings=_settings(**overrides)))


def _runtime(client: TestClient) -> HandoffRuntime:
    return client.app.state.runtime  # type: ignore[attr-defined]


def _webhook_payload(
    sender: str = JUAN,
    text: str | None = "Hola",
    *,
    message_type: str = "text",
    message_id: str = "wamid.0001",
) -> dict[str, Any]:
    message: dict[str, Any] = {"from": sender, "id": message_id, "timestamp": "1760864400", "type": message_type}
    if message_type == "text":
        message["text"] = {"body": text}
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "phone-number-1"},
                            "messages": [message],
                        },
                    }
                ],
            }
        ],
    }


def _escalate(client: TestClient, sender: str = JUAN) -> None:
    runtime = _runtime(client)
    response = client.post("/api/v1/webhook", json=_webhook_payload(sender, "Quiero hablar con alguien"))
    assert response.json()["processed_messages"] == 1
    escalated = client.portal.call(  # type: ignore[union-attr]
        partial(runtime.conversations.handle_bot_reply, sender, "Te comunicaré con un agente")
    )
    assert escalated is True


def test_webhook_verification_challenge() -> None:
    with _client() as client:
        ok = client.get(
            "/api/v1/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"},
        )
        assert ok.status_code == 200
        assert ok.text == "1158201444"

        denied = client.get(
            "/api/v1/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1158201444"},
        )
        assert denied.status_code == 403


def test_webhook_routes_text_and_media_to_the_bot() -> None:
    with _client() as client:
        runtime = _runtime(client)

        text = client.post("/api/v1/webhook", json=_webhook_payload(text="Hola"))
        assert text.status_code == 200
        assert text.json() == {"accepted": True, "processed_messages": 1}

        image = client.post(
            "/api/v1/webhook", json=_webhook_payload(message_type="image", message_id="wamid.0002")
        )
        assert image.json()["processed_messages"] == 1
        sticker = client.post(
            "/api/v1/webhook", json=_webhook_payload(message_type="sticker", message_id="wamid.0003")
        )
        assert sticker.json()["processed_messages"] == 1

        status_only = client.post(
            "/api/v1/webhook",
            json={"entry": [{"changes": [{"value": {"metadata": {"phone_number_id": "phone-number-1"}, "statuses": []}}]}]},
        )
        assert status_only.json() == {"accepted": True, "processed_messages": 0}

        broken = client.post("/api/v1/webhook", content=b"{not json", headers={"Content-Type": "application/json"})
        assert broken.status_code == 200
        assert broken.json()["accepted"] is False

    conversation = runtime.conversation_repository.get(JUAN)
    assert conversation is not None
    assert conversation.status == "bot"
    assert conversation.channel_routing_id == "phone-number-1"
    texts = [message.text for message in runtime.message_repository.list_by_conversation(JUAN)]
    assert texts == [
        "Hola",
        "He recibido tu imagen, pero actualmente solo puedo procesar mensajes de texto.",
        "Lo siento, este tipo de mensaje no es compatible actualmente.",
    ]


def test_webhook_signature_enforcement() -> None:
    with _client(webhook_signature_mode="enforce", whatsapp_app_secret="app-secret-001") as client:
        runtime = _runtime(client)
        body = json.dumps(_webhook_payload(text="Hola")).encode("utf-8")

        rejected = client.post(
            "/api/v1/webhook",
            content=body,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: "sha256=deadbeef"},
        )
        assert rejected.status_code == 200
        assert rejected.json() == {"accepted": False, "processed_messages": 0}
        assert runtime.conversation_repository.get(JUAN) is None

        accepted = client.post(
            "/api/v1/webhook",
            content=body,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign_body("app-secret-001", body)},
        )
        assert accepted.json() == {"accepted": True, "processed_messages": 1}
        assert runtime.conversation_repository.get(JUAN) is not None


def test_agent_rest_lifecycle() -> None:
    with _client() as client:
        runtime = _runtime(client)
        _escalate(client)

        queue = client.get("/api/v1/queue")
        assert queue.status_code == 200
        items = queue.json()["items"]
        assert [item["conversation_id"] for item in items] == [JUAN]
        assert items[0]["assigned_agent"] is None
        assert items[0]["message_count"] == 2
        assert items[0]["metadata"]["escalation_reason"] == "te comunicaré con un agente"

        next_item = client.get("/api/v1/queue/next")
        assert next_item.status_code == 200
        assert next_item.json()["conversation_id"] == JUAN

        stats = client.get("/api/v1/queue/stats").json()
        assert stats["total"] == 1
        assert stats["unassigned"] == 1
        assert stats["by_priority"]["1"] == 1

        missing = client.post("/api/v1/conversations/unknown/assign", json={"agent_id": "agent_1"})
        assert missing.status_code == 404
        ghost = client.post(f"/api/v1/conversations/{JUAN}/assign", json={"agent_id": "ghost"})
        assert ghost.status_code == 404
        assert ghost.json()["detail"] == "agent not found: ghost"
        assert runtime.registry.peek(JUAN).assigned_agent is None  # type: ignore[union-attr]

        assigned = client.post(f"/api/v1/conversations/{JUAN}/assign", json={"agent_id": "agent_1"})
        assert assigned.status_code == 200
        assert assigned.json() == {"conversation_id": JUAN, "ok": True}
        again = client.post(f"/api/v1/conversations/{JUAN}/assign", json={"agent_id": "agent_1"})
        assert again.status_code == 200
        conflict = client.post(f"/api/v1/conversations/{JUAN}/assign", json={"agent_id": "agent_2"})
        assert conflict.status_code == 409

        assert client.get("/api/v1/queue/next").status_code == 404
        mine = client.get("/api/v1/queue", params={"agent_id": "agent_1"}).json()["items"]
        assert [item["conversation_id"] for item in mine] == [JUAN]
        assert client.get("/api/v1/queue", params={"unassigned": "true"}).json()["items"] == []

        sent = client.post(
            f"/api/v1/conversations/{JUAN}/messages",
            json={"agent_id": "agent_1", "text": "Hola Juan, ¿en qué te ayudo?"},
        )
        assert sent.status_code == 201
        assert sent.json()["sender"] == "agent"
        assert sent.json()["agent_id"] == "agent_1"
        intruder = client.post(
            f"/api/v1/conversations/{JUAN}/messages", json={"agent_id": "agent_2", "text": "hola"}
        )
        assert intruder.status_code == 409
        empty = client.post(f"/api/v1/conversations/{JUAN}/messages", json={"agent_id": "agent_1", "text": ""})
        assert empty.status_code == 422

        assert client.put(f"/api/v1/conversations/{JUAN}/priority", json={"priority": 9}).status_code == 422
        assert client.put(f"/api/v1/conversations/{JUAN}/priority", json={"priority": 4}).status_code == 200
        assert client.put("/api/v1/conversations/unknown/priority", json={"priority": 2}).status_code == 404
        tags = client.put(f"/api/v1/conversations/{JUAN}/tags", json={"tags": ["vip", " vip ", "factura"]})
        assert tags.status_code == 200
        patched = client.patch(f"/api/v1/conversations/{JUAN}/metadata", json={"metadata": {"crm_id": "C-77"}})
        assert patched.status_code == 200

        detail = client.get(f"/api/v1/conversations/{JUAN}")
        assert detail.status_code == 200
        detail_data = detail.json()
        assert detail_data["priority"] == 4
        assert detail_data["tags"] == ["vip", "factura"]
        assert detail_data["metadata"]["crm_id"] == "C-77"
        assert detail_data["metadata"]["escalation_reason"] == "te comunicaré con un agente"
        assert [message["sender"] for message in detail_data["messages"]] == ["user", "bot", "system", "agent", "system"]
        assert client.get("/api/v1/conversations/unknown").status_code == 404

        completed = client.post(f"/api/v1/conversations/{JUAN}/complete")
        assert completed.status_code == 200
        assert client.post(f"/api/v1/conversations/{JUAN}/complete").status_code == 404
        assert client.get("/api/v1/queue").json()["items"] == []

        history = client.get(f"/api/v1/conversations/{JUAN}/messages")
        assert history.status_code == 200
        assert [item["text"] for item in history.json()["items"]][-2:] == [
            "Hola Juan, ¿en qué te ayudo?",
            "Prioridad actualizada a 4 (Urgente)",
        ]

    channel_texts = runtime.channel.texts_for(JUAN)  # type: ignore[attr-defined]
    assert "Hola Juan, ¿en qué te ayudo?" in channel_texts
    assert channel_texts[-1] == runtime.settings.agent_completion_message


def test_agent_endpoints() -> None:
    with _client() as client:
        agents = client.get("/api/v1/agents")
        assert agents.status_code == 200
        assert len(agents.json()["items"]) == 5

        agent = client.get("/api/v1/agents/agent_1")
        assert agent.status_code == 200
        assert agent.json()["status"] == "online"
        assert client.get("/api/v1/agents/ghost").status_code == 404

        away = client.put("/api/v1/agents/agent_1/status", json={"status": "away"})
        assert away.status_code == 200
        assert away.json()["status"] == "away"
        assert client.put("/api/v1/agents/ghost/status", json={"status": "away"}).status_code == 404
        assert client.put("/api/v1/agents/agent_1/status", json={"status": "sleeping"}).status_code == 422


def test_agent_websocket_session() -> None:
    with _client() as client:
        _escalate(client)

        with client.websocket_connect("/ws/agents/agent_1") as websocket:
            initial = websocket.receive_json()
            assert initial["type"] == "initial:state"
            assert [item["conversation_id"] for item in initial["payload"]["queue"]] == [JUAN]

            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong", "payload": {}}

            websocket.send_json({"type": "bogus"})
            error = websocket.receive_json()
            assert error["type"] == "error"
            assert error["payload"]["message"] == "Formato de mensaje inválido"

            websocket.send_json({"type": "conversation:assign", "payload": {"conversation_id": JUAN}})
            received = [websocket.receive_json()["type"] for _ in range(3)]
            assert "conversation:assigned" in received
            assert "queue:updated" in received

            websocket.send_json({"type": "queue:request"})
            queue = websocket.receive_json()
            assert queue["type"] == "queue:updated"
            assert queue["payload"]["queue"][0]["assigned_agent"] == "agent_1"

        assert _runtime(client).hub.connected_agents() == []


def test_agent_websocket_rejects_unknown_agent() -> None:
    with _client() as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/agents/ghost"):
                pass
        assert exc_info.value.code == 4404
