"""Deterministic tier classification used when no classifier model is configured."""

from __future__ import annotations

import re

from tiered_assistant.types import RoutingDecision

DEEP_RESEARCH_TRIGGERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bdeep\s+research\b", re.I),
    re.compile(r"\bdeep[\s-]+dive\b", re.I),
    re.compile(r"\bin[\s-]+depth\s+research\b", re.I),
    re.compile(r"\bcomprehensive(?:ly)?\s+research\b", re.I),
    re.compile(r"\bcomprehensive\s+review\b", re.I),
    re.compile(r"\bthorough(?:ly)?\s+research\b", re.I),
    re.compile(r"\bresearch\s+(?:this\s+)?thoroughly\b", re.I),
    re.compile(r"\blatest\s+(?:clinical\s+)?research\b", re.I),
    re.compile(r"\bsystematic\s+review\b", re.I),
    re.compile(r"\bmeta[\s-]+analys[ie]s\b", re.I),
)

EXTERNAL_FACT_CUES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bresearch\b", re.I),
    re.compile(r"\b(?:latest|newest|recent(?:ly)?|current|up[\s-]+to[\s-]+date)\b", re.I),
    re.compile(r"\bguidelines?\b", re.I),
    re.compile(r"\b(?:look\s+(?:it\s+)?up|search\s+(?:the\s+)?(?:web|internet|online)|google)\b", re.I),
    re.compile(r"\b(?:verify|fact[\s-]+check|double[\s-]+check)\b", re.I),
    re.compile(r"\bnews\b", re.I),
    re.compile(r"\b20[23]\d\b"),
    re.compile(r"\bclinical\s+trials?\b", re.I),
    re.compile(r"\bfda\b", re.I),
    re.compile(r"\bnew\s+(?:study|studies|drug|treatment|approval)\b", re.I),
)

HEURISTIC_CONFIDENCE = {1: 0.6, 2: 0.7, 3: 0.9}


def has_deep_research_trigger(text: str) -> bool:
    return any(pattern.search(text) for pattern in DEEP_RESEARCH_TRIGGERS)


def has_external_fact_cue(text: str) -> bool:
    return any(pattern.search(text) for pattern in EXTERNAL_FACT_CUES)


def classify_by_keywords(question: str) -> RoutingDecision:
    """Classify with keyword cues only; ties fall to the cheaper tier."""
    if has_deep_research_trigger(question):
        tier, reason = 3, "explicit deep research request"
    elif has_external_fact_cue(question):
        tier, reason = 2, "question needs current or external facts"
    else:
        tier, reason = 1, "answerable from general model knowledge"
    return RoutingDecision(
        tier=tier,
        reasoning=f"Keyword heuristic: {reason}.",
        confidence=HEURISTIC_CONFIDENCE[tier],
        method="heuristic",
    )


def apply_guardrails(decision: RoutingDecision, question: str) -> RoutingDecision:
    """Downgrade a classification that lacks the keyword evidence for its tier.

    Tier 3 needs an explicit deep research trigger; tier 2 needs a current or
    external fact cue. Guardrails never escalate.
    """
    tier = decision.tier
    notes: list[str] = []
    if tier == 3 and not has_deep_research_trigger(question):
        tier = 2
        notes.append("downgraded 3->2: no explicit deep research request")
    if tier == 2 and not has_external_fact_cue(question) and not has_deep_research_trigger(question):
        tier = 1
        notes.append("downgraded 2->1: no current or external fact cue")
    if tier == decision.tier:
        return decision
    return RoutingDecision(
        tier=tier,
        reasoning=f"{decision.reasoning} [guardrail: {'; '.join(notes)}]",
        confidence=decision.confidence,
        method=decision.method,
    )
