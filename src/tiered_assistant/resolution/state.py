"""Candidate antecedents extracted from recent conversation turns."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from tiered_assistant.types import ConversationTurn

_QUANTITY = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(g|grams?|units?|u)\b(?:\s+(?:of\s+)?"
    r"(carbs?|carbohydrates?|protein|fat|fiber|sugar|insulin|novorapid|lantus|humalog|fiasp|tresiba))?",
    re.I,
)
_GLUCOSE = re.compile(r"\b(\d{2,3}(?:\.\d+)?)\s*(mg/dl|mmol/l)\b", re.I)
_A1C = re.compile(r"\b(?:a1c|hba1c)\s*(?:of|is|was|at)?\s*(\d{1,2}(?:\.\d+)?)\s*%", re.I)
_MEDICATION = re.compile(
    r"\b(novorapid|lantus|humalog|fiasp|tresiba|levemir|toujeo|basaglar|apidra|"
    r"metformin|ozempic|semaglutide|mounjaro|tirzepatide|trulicity|victoza|"
    r"jardiance|empagliflozin|farxiga|dapagliflozin|glp-1|sglt2|insulin)\b",
    re.I,
)
_FOOD = re.compile(
    r"\b(oatmeal|oats|rice|pasta|bread|toast|banana|apple|berries|yogurt|eggs?|"
    r"tiramisu|pizza|potato(?:es)?|quinoa|lentils|chickpeas|almond flour|avocado|"
    r"coffee|juice|chocolate|salad|cheese|nuts|honey|dates)\b",
    re.I,
)
_TOPIC = re.compile(
    r"\b(?:a1c|hba1c|cgm|glucose|blood sugar|ketones?|carbs?|carbohydrates?|fiber|"
    r"diabetes|hypoglycemia|hyperglycemia|exercise|diet)\b",
    re.I,
)
_ACRONYM = re.compile(r"\b[A-Z][A-Z0-9]+\b")
_MEAL = re.compile(r"\b(breakfast|lunch|dinner|supper|snack)\b", re.I)
_LIST_ITEM = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$", re.M)
_SENTENCE = re.compile(r"(?<=[.!?])\s+")


@dataclass(slots=True, frozen=True)
class Mention:
    """An entity mention with its recency rank (0 is the most recent)."""

    kind: str
    text: str
    turn_index: int
    recency: int


@dataclass(slots=True)
class ConversationState:
    mentions: list[Mention] = field(default_factory=list)

    @classmethod
    def from_turns(cls, turns: Sequence[ConversationTurn]) -> "ConversationState":
        """Extract mentions in chronological order, then rank newest first.

        Within a turn the question precedes the answer, and within a text later
        mentions are more recent than earlier ones.
        """
        chronological: list[tuple[str, str, int]] = []
        for turn_index, turn in enumerate(turns, start=1):
            chronological.extend(
                (kind, text, turn_index) for kind, text in _extract(turn.question, speaker="user")
            )
            chronological.extend(
                (kind, text, turn_index) for kind, text in _extract(turn.answer, speaker="assistant")
            )

        total = len(chronological)
        mentions = [
            Mention(kind=kind, text=text, turn_index=turn_index, recency=total - 1 - position)
            for position, (kind, text, turn_index) in enumerate(chronological)
        ]
        mentions.sort(key=lambda mention: mention.recency)
        return cls(mentions=mentions)

    def most_recent(self, kinds: Sequence[str]) -> Mention | None:
        """Return the newest mention of the first kind in `kinds` that has any."""
        for kind in kinds:
            for mention in self.mentions:
                if mention.kind == kind:
                    return mention
        return None

    def nth_list_item(self, ordinal: int) -> Mention | None:
        """Resolve "the first/second/last one" against the newest presented list."""
        items = [mention for mention in self.mentions if mention.kind == "list_item"]
        if not items:
            return None
        newest_turn = items[0].turn_index
        listed = sorted(
            (mention for mention in items if mention.turn_index == newest_turn),
            key=lambda mention: -mention.recency,
        )
        if ordinal == -1:
            return listed[-1]
        if 0 <= ordinal < len(listed):
            return listed[ordinal]
        return None


def _extract(text: str, *, speaker: str) -> list[tuple[str, str]]:
    if not text.strip():
        return []

    spans: list[tuple[int, str, str]] = []
    for match in _QUANTITY.finditer(text):
        spans.append((match.start(), "quantity", _format_quantity(match)))
    for match in _GLUCOSE.finditer(text):
        value = float(match.group(1))
        unit = match.group(2)
        if unit.lower() == "mg/dl" and not 40 <= value <= 600:
            continue
        spans.append((match.start(), "measurement", f"{match.group(1)} {unit}"))
    for match in _A1C.finditer(text):
        spans.append((match.start(), "measurement", f"A1C {match.group(1)}%"))
    for match in _MEDICATION.finditer(text):
        spans.append((match.start(), "medication", match.group(1)))
    for match in _FOOD.finditer(text):
        spans.append((match.start(), "food", match.group(1)))
    for match in _MEAL.finditer(text):
        spans.append((match.start(), "meal", match.group(1).lower()))

    if speaker == "assistant":
        for match in _LIST_ITEM.finditer(text):
            spans.append((match.start(), "list_item", match.group(1)))
        sentences = [part.strip() for part in _SENTENCE.split(text.strip()) if part.strip()]
        if sentences:
            spans.append((len(text), "statement", sentences[-1]))
    else:
        spans.append((len(text), "question", text.strip()))

    spans.sort(key=lambda span: span[0])
    return [(kind, value) for _, kind, value in spans]


def _format_quantity(match: re.Match[str]) -> str:
    value, unit, label = match.group(1), match.group(2), match.group(3)
    unit_lower = unit.lower()
    if unit_lower in {"g", "gram", "grams"}:
        rendered = f"{value}g"
    else:
        rendered = f"{value} {'units' if value != '1' else 'unit'}"
    if label:
        rendered = f"{rendered} {label.lower()}"
    return rendered


def names_entity(text: str) -> bool:
    """True when `text` itself names something a later pronoun can point at."""
    patterns = (_QUANTITY, _GLUCOSE, _A1C, _MEDICATION, _FOOD, _TOPIC, _ACRONYM)
    return any(pattern.search(text) for pattern in patterns)
