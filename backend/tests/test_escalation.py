from __future__ import annotations

from handoff_web.config import DEFAULT_ESCALATION_PHRASES
from handoff_web.escalation import EscalationDetector


def test_detector_matches_default_phrases_case_insensitively() -> None:
    detector = EscalationDetector()

    assert detector.is_escalation("Claro, TE COMUNICARÉ CON UN AGENTE en un momento.")
    assert detector.matched_phrase("Si prefieres, puedes Hablar con una persona.") == "hablar con una persona"
    assert detector.phrases == DEFAULT_ESCALATION_PHRASES


def test_detector_ignores_unrelated_or_empty_text() -> None:
    detector = EscalationDetector()

    assert detector.is_escalation("¿En qué más puedo ayudarte?") is False
    assert detector.is_escalation("") is False
    assert detector.is_escalation(None) is False
    assert detector.matched_phrase("agente") is None


def test_detector_normalizes_configured_phrases() -> None:
    detector = EscalationDetector(("  Transferir a Soporte ", "", "   "))

    assert detector.phrases == ("transferir a soporte",)
    assert detector.matched_phrase("Voy a transferir a soporte tu caso") == "transferir a soporte"
    assert detector.is_escalation("hablar con un agente") is False
