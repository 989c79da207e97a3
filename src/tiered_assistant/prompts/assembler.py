"""System prompt fragments and the per-tier prompt assembler."""

from __future__ import annotations

from collections.abc import Sequence

from tiered_assistant.errors import UnknownTierError
from tiered_assistant.types import DiabetesProfile, SearchHit

IDENTITY = """
<identity>
You are a knowledgeable, warm companion for a person living with diabetes.
You help with diabetes and nutrition questions, explain how treatments and foods
affect blood glucose, suggest diabetes-friendly meals, and offer calm support
during highs and lows.
</identity>
""".strip()

COMMUNICATION_STYLE = """
<communication_style>
- Skip greetings and start with the answer in the first sentence.
- Be warm and direct, like a close friend who knows the subject well.
- Write in flowing paragraphs; use **bold** sparingly for the key point.
- Put concrete values inline, for example `180 mg/dL` or `45 g carbs`.
- Keep answers short unless the user asks for detail.
- Do not close with generic "consult your doctor" disclaimers.
</communication_style>
""".strip()

CRITICAL_RULES = """
<critical_rules>
- Never calculate an insulin dose for the user; you are not their clinician.
- Never recommend skipping meals or changing medication doses.
- If you do not know something, say so plainly.
</critical_rules>
""".strip()

DIRECT_RESPONSE_APPROACH = """
<response_approach>
1. Answer directly from your own knowledge.
2. If you are unsure about a medical point, say that you are unsure.
3. Tailor the answer to the user's profile when one is provided.
</response_approach>
""".strip()

WEB_SEARCH_GUIDANCE = """
<web_search_additional_rules>
- Ground the answer in the numbered search results provided with the question.
- Explain medical terms in plain language.
- CRITICAL: never append a "Sources" or "References" section to the answer.
- Sources are shown to the user separately; do not list them again.
</web_search_additional_rules>
""".strip()

DEEP_RESEARCH_GUIDANCE = """
<deep_research_additional_rules>
- Synthesize across peer-reviewed literature, clinical-trial registries and medical web sources.
- Weigh the strength of evidence and say when it is limited or conflicting.
- Explain medical terms in plain language.
- CRITICAL: never append a "Sources" or "References" section to the answer.
- Sources are shown to the user separately; do not list them again.
</deep_research_additional_rules>
""".strip()

_TIER_GUIDANCE = {
    1: DIRECT_RESPONSE_APPROACH,
    2: WEB_SEARCH_GUIDANCE,
    3: DEEP_RESEARCH_GUIDANCE,
}


def build_system_prompt(tier: int) -> str:
    """Compose the full system prompt for a tier.

    Order is fixed: identity, communication style, critical rules, then the
    tier guidance block.
    """
    guidance = _TIER_GUIDANCE.get(tier)
    if guidance is None:
        raise UnknownTierError(f"No prompt guidance for tier {tier!r}")
    return "\n\n".join((IDENTITY, COMMUNICATION_STYLE, CRITICAL_RULES, guidance))


def render_profile(profile: DiabetesProfile | None) -> str:
    if profile is None:
        return ""
    lines: list[str] = []
    if profile.diabetes_type:
        lines.append(f"- Diabetes type: {profile.diabetes_type}")
    if profile.medications:
        lines.append(f"- Medications: {', '.join(profile.medications)}")
    if not lines:
        return ""
    return "User profile:\n" + "\n".join(lines)


def render_sources(hits: Sequence[SearchHit]) -> str:
    lines = [
        f"[{idx}] {hit.title} ({hit.source_class}): {_single_line(hit.snippet)}"
        for idx, hit in enumerate(hits, start=1)
    ]
    if not lines:
        return ""
    return "Search results:\n" + "\n".join(lines)


def build_user_prompt(
    question: str,
    *,
    profile: DiabetesProfile | None = None,
    guidance: str = "",
    hits: Sequence[SearchHit] = (),
) -> str:
    """Render the human message: grounding, profile, resolver guidance, question."""
    sections = [
        render_sources(hits),
        render_profile(profile),
        guidance.strip(),
        f"Question: {question.strip()}",
    ]
    return "\n\n".join(section for section in sections if section)


def _single_line(text: str) -> str:
    return " ".join(text.split())
