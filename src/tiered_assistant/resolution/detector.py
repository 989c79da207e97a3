"""Pattern-based detection of referring expressions in a user message."""

from __future__ import annotations

import re

from tiered_assistant.resolution.state import names_entity
from tiered_assistant.types import DetectedReference

# Bare pronouns only count as references when nothing earlier in the same
# message could be their antecedent ("What is A1C and why does it matter?").
_PRONOUN = re.compile(r"\b(?:it|its|they|them|their)\b", re.I)

# Each category lists (pattern, confidence). The first matching pattern wins
# for that category; categories are independent of each other.
_CATEGORY_PATTERNS: dict[str, list[tuple[re.Pattern[str], float]]] = {
    "ellipsis": [
        (re.compile(r"^(?:and|so|what about|how about)\s+(?:for\s+)?(?:the\s+)?\w+\??$", re.I), 0.9),
        (re.compile(r"^(?:how much|how many|is that enough|enough)\??$", re.I), 0.9),
    ],
    "definite": [
        (re.compile(r"\b(?:that|this|those|these)\s+(?:dose|meal|food|medication|medicine|insulin|drug|reading|number|value|one|ones)\b", re.I), 0.85),
        (_PRONOUN, 0.7),
    ],
    "comparative": [
        (re.compile(r"\b(?:the\s+)?same(?:\s+(?:amount|dose|meal|thing|number|as\s+before))?\b", re.I), 0.85),
        (re.compile(r"\b(?:more|less|fewer|higher|lower)\s+than\s+(?:that|before|last time)\b", re.I), 0.8),
        (
            re.compile(
                r"\b(?:instead|the difference(?!\s+between)|compared to that|the other one|"
                r"something similar|similar to (?:that|this|it))\b",
                re.I,
            ),
            0.75,
        ),
    ],
    "temporal": [
        (re.compile(r"\b(?:that|the same)\s+(?:day|morning|night|evening|time)\b", re.I), 0.85),
        (re.compile(r"\b(?:earlier|last time|before that|since then|back then)\b", re.I), 0.8),
        (re.compile(r"\b(?:still|again)\b", re.I), 0.7),
    ],
    "discourse_marker": [
        (re.compile(r"^(?:ok|okay|alright|got it|but|so then|right)\b[,.!]?", re.I), 0.75),
    ],
    "ai_output": [
        (re.compile(r"\byou\s+(?:said|mentioned|suggested|recommended|told me)\b", re.I), 0.9),
        (re.compile(r"\bthe\s+(?:first|second|third|last)\s+(?:one|option|idea|suggestion|recipe|item)\b", re.I), 0.9),
    ],
    "evaluation": [
        (re.compile(r"\bis\s+(?:that|this|it)\s+(?:good|bad|safe|ok|okay|normal|healthy|too\s+\w+)\b", re.I), 0.85),
    ],
    "causality": [
        (re.compile(r"^(?:why|how come)\??$", re.I), 0.9),
        (re.compile(r"\b(?:why is that|the reason for that|what causes that)\b", re.I), 0.85),
    ],
    "modal": [
        (re.compile(r"^(?:should i|do i need to|do i have to|can i|is it necessary)\??$", re.I), 0.85),
    ],
    "process": [
        (re.compile(r"^how\??$", re.I), 0.8),
        (re.compile(r"\b(?:the next step|after that|and then what)\b", re.I), 0.75),
    ],
    "memory_recall": [
        (re.compile(r"\b(?:do you remember|remember when|we talked about|as we discussed|you remember)\b", re.I), 0.9),
    ],
}


def detect_references(message: str) -> list[DetectedReference]:
    """Return one detected reference per matching category, in taxonomy order."""
    text = message.strip()
    if not text:
        return []

    detected: list[DetectedReference] = []
    for category, patterns in _CATEGORY_PATTERNS.items():
        for pattern, confidence in patterns:
            match = pattern.search(text)
            if match is None:
                continue
            if pattern is _PRONOUN and names_entity(text[: match.start()]):
                continue
            detected.append(
                DetectedReference(
                    category=category,
                    pattern=match.group(0).strip(" ,.!?").lower(),
                    confidence=confidence,
                )
            )
            break
    return detected
