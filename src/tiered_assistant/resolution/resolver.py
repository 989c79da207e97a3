"""Bind detected references to antecedents from recent turns."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from tiered_assistant.resolution.detector import detect_references
from tiered_assistant.resolution.state import ConversationState, Mention
from tiered_assistant.types import (
    ConversationTurn,
    DetectedReference,
    Resolution,
    ResolvedReference,
)

logger = logging.getLogger(__name__)

GUIDANCE_HEADER = "REFERENCE RESOLUTION GUIDANCE:"
GUIDANCE_FOOTER = "Use this guidance to correctly interpret the user's message."

# Candidate kinds tried in order for each category; newest mention wins within a kind.
_KIND_PREFERENCES: dict[str, tuple[str, ...]] = {
    "ellipsis": ("question",),
    "definite": ("medication", "food", "quantity", "measurement"),
    "comparative": ("quantity", "measurement", "food", "medication"),
    "temporal": ("measurement", "meal", "statement"),
    "discourse_marker": ("question",),
    "ai_output": ("statement",),
    "evaluation": ("measurement", "quantity", "food", "medication"),
    "causality": ("statement",),
    "modal": ("question",),
    "process": ("statement",),
    "memory_recall": ("question", "statement"),
}

_ORDINALS = {"first": 0, "second": 1, "third": 2, "last": -1}
_ORDINAL_PATTERN = re.compile(r"\b(first|second|third|last)\b", re.I)


class ReferenceResolver:
    """Explains what referring expressions point at, without rewriting the question."""

    def resolve(self, question: str, recent_turns: Sequence[ConversationTurn]) -> Resolution:
        references = detect_references(question)
        if not references:
            return Resolution(resolved_question=question, guidance_text="")

        try:
            state = ConversationState.from_turns(recent_turns)
        except Exception:
            logger.warning("Conversation state extraction failed; leaving references unresolved", exc_info=True)
            state = ConversationState()

        resolved = tuple(self._bind(reference, state) for reference in references)
        return Resolution(
            resolved_question=_annotate(question, resolved),
            guidance_text=build_guidance(resolved),
            references=resolved,
        )

    def _bind(self, reference: DetectedReference, state: ConversationState) -> ResolvedReference:
        mention: Mention | None = None
        if reference.category == "ai_output":
            ordinal = _ORDINAL_PATTERN.search(reference.pattern)
            if ordinal is not None:
                mention = state.nth_list_item(_ORDINALS[ordinal.group(1).lower()])
        if mention is None:
            mention = state.most_recent(_KIND_PREFERENCES.get(reference.category, ()))

        if mention is None:
            return ResolvedReference(
                category=reference.category,
                pattern=reference.pattern,
                antecedent=None,
            )
        return ResolvedReference(
            category=reference.category,
            pattern=reference.pattern,
            antecedent=mention.text,
            turn_index=mention.turn_index,
        )


def build_guidance(references: Sequence[ResolvedReference]) -> str:
    if not references:
        return ""
    lines = [_guidance_line(reference) for reference in references]
    return "\n".join([GUIDANCE_HEADER, *lines, "", GUIDANCE_FOOTER])


def _guidance_line(reference: ResolvedReference) -> str:
    if reference.antecedent is None:
        return (
            f'- The user\'s "{reference.pattern}" ({reference.category}) could not be resolved '
            "from recent turns; treat it as unresolved and ask for clarification if it matters."
        )
    return (
        f'- The user\'s "{reference.pattern}" ({reference.category}) refers to '
        f'"{reference.antecedent}" from turn {reference.turn_index}.'
    )


def _annotate(question: str, references: Sequence[ResolvedReference]) -> str:
    bindings = [
        f"{reference.pattern} = {reference.antecedent}"
        for reference in references
        if reference.antecedent is not None
    ]
    if not bindings:
        return question
    return f"{question.rstrip()} ({'; '.join(bindings)})"
