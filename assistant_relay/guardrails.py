"""Keyword topic guardrails.

Matching is case-insensitive substring search with no tokenization and no word
boundaries, so a listed word also matches inside longer words ("aidoc" contains
"ai"). Clients depend on this exact behavior; swap in a different classifier
behind ``Guardrail`` rather than changing ``classify``.
"""
from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple


class GuardrailMode(str, enum.Enum):
    ALLOW_ONLY = "ALLOW_ONLY"
    DENY_ONLY = "DENY_ONLY"
    ALLOW_AND_DENY = "ALLOW_AND_DENY"

    @classmethod
    def parse(cls, value: "str | GuardrailMode") -> "GuardrailMode":
        if isinstance(value, GuardrailMode):
            return value
        key = (value or "").strip().upper().replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValueError(f"GUARDRAIL_MODE must be one of {allowed}, got {value!r}") from None


class Decision(str, enum.Enum):
    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"


def _normalize(words: Iterable[str]) -> Tuple[str, ...]:
    return tuple(w.lower() for w in (words or ()) if w)


def first_match(text: str, words: Iterable[str]) -> Optional[str]:
    t = (text or "").lower()
    for w in _normalize(words):
        if w in t:
            return w
    return None


def classify(
    text: str,
    allow_list: Sequence[str],
    deny_list: Sequence[str],
    mode: "str | GuardrailMode" = GuardrailMode.ALLOW_AND_DENY,
) -> Decision:
    m = GuardrailMode.parse(mode)
    if m in (GuardrailMode.DENY_ONLY, GuardrailMode.ALLOW_AND_DENY):
        if first_match(text, deny_list) is not None:
            return Decision.BLOCKED
    if m in (GuardrailMode.ALLOW_ONLY, GuardrailMode.ALLOW_AND_DENY):
        if first_match(text, allow_list) is None:
            return Decision.BLOCKED
    return Decision.ALLOWED


@dataclass(frozen=True)
class GuardrailResult:
    decision: Decision
    matched: Optional[str] = None
    reason: str = ""

    @property
    def blocked(self) -> bool:
        return self.decision is Decision.BLOCKED


class Guardrail(abc.ABC):
    """Interface the orchestrator talks to."""

    @abc.abstractmethod
    def check_input(self, text: str) -> GuardrailResult:
        ...

    @abc.abstractmethod
    def check_output(self, text: str) -> GuardrailResult:
        ...


class KeywordGuardrail(Guardrail):
    def __init__(
        self,
        allow_words: Sequence[str],
        deny_words: Sequence[str],
        mode: "str | GuardrailMode" = GuardrailMode.ALLOW_AND_DENY,
    ):
        self.allow_words = _normalize(allow_words)
        self.deny_words = _normalize(deny_words)
        self.mode = GuardrailMode.parse(mode)

    def check_input(self, text: str) -> GuardrailResult:
        decision = classify(text, self.allow_words, self.deny_words, self.mode)
        if decision is Decision.ALLOWED:
            return GuardrailResult(decision)
        denied = first_match(text, self.deny_words)
        if denied is not None and self.mode is not GuardrailMode.ALLOW_ONLY:
            return GuardrailResult(decision, matched=denied, reason="deny_match")
        return GuardrailResult(decision, reason="no_allow_match")

    def check_output(self, text: str) -> GuardrailResult:
        # Replies rarely repeat the trigger words, so the allow list never applies here
        decision = classify(text, (), self.deny_words, GuardrailMode.DENY_ONLY)
        if decision is Decision.ALLOWED:
            return GuardrailResult(decision)
        return GuardrailResult(decision, matched=first_match(text, self.deny_words), reason="deny_match")

    @classmethod
    def from_settings(cls, settings) -> "KeywordGuardrail":
        return cls(settings.allow_words, settings.deny_words, settings.guardrail_mode)
