from __future__ import annotations

from dataclasses import dataclass, field

from .config import DEFAULT_ESCALATION_PHRASES


def _normalize(text: str) -> str:
    return text.strip().lower()


@dataclass(frozen=True)
class EscalationDetector:
    """Flags bot replies announcing a hand-off to a human agent."""

    phrases: tuple[str, ...] = field(default=DEFAULT_ESCALATION_PHRASES)

    def __post_init__(self) -> None:
        normalized = tuple(phrase for phrase in (_normalize(value) for value in self.phrases) if phrase)
        object.__setattr__(self, "phrases", normalized)

    def matched_phrase(self, text: str | None) -> str | None:
        if not text:
            return None
        normalized = text.lower()
        for phrase in self.phrases:
            if phrase in normalized:
                return phrase
        return None

    def is_escalation(self, text: str | None) -> bool:
        return self.matched_phrase(text) is not None
