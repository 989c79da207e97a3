"""LangChain-based tier router with a deterministic safety net."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from langchain_core.prompts import ChatPromptTemplate

from tiered_assistant.agent.capabilities import message_text
from tiered_assistant.agent.heuristics import apply_guardrails, classify_by_keywords
from tiered_assistant.config import RouterConfig
from tiered_assistant.prompts.assembler import render_profile
from tiered_assistant.types import DiabetesProfile, RoutingDecision

logger = logging.getLogger(__name__)

# Literal JSON braces are doubled for ChatPromptTemplate.
_FEW_SHOT_EXAMPLES = """
TIER 1 (MODEL) - the default, for most questions:
Question: "What is A1C?"
{{"tier": 1, "reasoning": "Basic definition the model can answer directly.", "confidence": 0.95}}
Question: "How does insulin work?"
{{"tier": 1, "reasoning": "Timeless knowledge, no sources needed.", "confidence": 0.93}}
Question: "Give me a diabetes-friendly tiramisu recipe"
{{"tier": 1, "reasoning": "Recipe request the model knows well.", "confidence": 0.9}}
Question: "Why is my blood sugar always high in the morning?"
{{"tier": 1, "reasoning": "General education; no request for current sources.", "confidence": 0.8}}

TIER 2 (SEARCH) - the question needs current or external facts:
Question: "What are the latest ADA guidelines on CGM use?"
{{"tier": 2, "reasoning": "Asks for current guidelines that change over time.", "confidence": 0.85}}
Question: "Search the web for metformin side effects"
{{"tier": 2, "reasoning": "User explicitly asked for a web search.", "confidence": 0.9}}
Question: "Was a new GLP-1 drug approved by the FDA this year?"
{{"tier": 2, "reasoning": "Recent regulatory news requires fresh sources.", "confidence": 0.85}}

TIER 3 (RESEARCH) - only for an explicit deep research request:
Question: "Do a deep research on beta cell regeneration"
{{"tier": 3, "reasoning": "User explicitly requested deep research.", "confidence": 0.95}}
Question: "What does the latest research say about SGLT2 inhibitors in type 1?"
{{"tier": 3, "reasoning": "Explicit request for the latest research across studies.", "confidence": 0.85}}
Question: "Comprehensive research on insulin resistance and intermittent fasting"
{{"tier": 3, "reasoning": "Comprehensive multi-source research was requested.", "confidence": 0.92}}
""".strip()

_ROUTER_SYSTEM_PROMPT = f"""
You route questions for a diabetes assistant to one of three processing tiers.

Tiers, from cheapest to most expensive:
1 (MODEL): definitions, how things work, food and recipes, lifestyle tips, general education.
2 (SEARCH): the answer depends on current or external facts: recent guidelines, news, approvals, verification.
3 (RESEARCH): multi-source deep research. Choose it ONLY when the user explicitly asks for it.

Key principle: default to tier 1. When unsure between two tiers, choose the cheaper one.

{_FEW_SHOT_EXAMPLES}

Respond with ONLY valid JSON in this format:
{{{{"tier": 1 | 2 | 3, "reasoning": "<one sentence>", "confidence": <0.0-1.0>}}}}
""".strip()

_CODE_FENCE = re.compile(r"```(?:json)?", re.I)
_JSON_OBJECT = re.compile(r"\{.*\}", re.S)


class TierRouter:
    """Classifies a question into a processing tier.

    With a chat model configured, a single low-temperature classification call
    decides the tier, followed by keyword guardrails that may only downgrade.
    Without one, a keyword heuristic classifies instead. Any classification
    failure falls back to tier 1 with zero confidence.
    """

    def __init__(
        self,
        *,
        llm: Any | None = None,
        config: RouterConfig | None = None,
        model_name: str | None = None,
    ) -> None:
        self.llm = llm
        self.config = config or RouterConfig()
        self.model_name = model_name or ("keyword-heuristic" if llm is None else "classifier")
        self._chain = None
        if llm is not None:
            prompt = ChatPromptTemplate.from_messages(
                [
                    ("system", _ROUTER_SYSTEM_PROMPT),
                    ("human", "{input}"),
                ]
            )
            self._chain = prompt | llm

    @property
    def mode(self) -> str:
        return "heuristic" if self._chain is None else "llm"

    async def route(
        self,
        question: str,
        profile: DiabetesProfile | None = None,
        *,
        previous_question: str | None = None,
    ) -> RoutingDecision:
        if self._chain is None:
            decision = classify_by_keywords(question)
            logger.info("Routed to tier %d by keyword heuristic", decision.tier)
            return decision

        user_prompt = _render_router_input(question, profile, previous_question)
        try:
            raw = await asyncio.wait_for(
                self._chain.ainvoke({"input": user_prompt}),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return _fallback(f"classification call timed out after {self.config.timeout_seconds:g}s")
        except Exception as exc:
            return _fallback(f"classification call failed ({type(exc).__name__}: {exc})")

        try:
            decision = parse_classification(message_text(raw))
        except ValueError as exc:
            return _fallback(f"unparseable classification output ({exc})")

        if self.config.enforce_keyword_guardrails:
            decision = apply_guardrails(decision, question)
        logger.info(
            "Routed to tier %d (confidence %.2f): %s",
            decision.tier,
            decision.confidence,
            decision.reasoning,
        )
        return decision


def parse_classification(text: str) -> RoutingDecision:
    """Parse the classifier's JSON reply; raises ValueError when unusable."""
    cleaned = _CODE_FENCE.sub("", text).strip()
    match = _JSON_OBJECT.search(cleaned)
    if match is None:
        raise ValueError("no JSON object in reply")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("reply is not a JSON object")

    tier, ambiguous = _coerce_tier(data.get("tier"))
    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = min(1.0, max(0.0, confidence))

    reasoning = str(data.get("reasoning") or "").strip() or "No reasoning given."
    if ambiguous:
        reasoning = f"{reasoning} [ambiguous tier output; chose the cheaper tier]"
    return RoutingDecision(tier=tier, reasoning=reasoning, confidence=confidence, method="llm")


def _coerce_tier(value: Any) -> tuple[int, bool]:
    candidates: set[int] = set()
    if isinstance(value, bool):
        raise ValueError(f"invalid tier {value!r}")
    if isinstance(value, (int, float)):
        if float(value).is_integer():
            candidates.add(int(value))
    elif isinstance(value, str):
        candidates.update(int(digit) for digit in re.findall(r"\d+", value))
    elif isinstance(value, list):
        for item in value:
            if isinstance(item, (int, float)) and not isinstance(item, bool) and float(item).is_integer():
                candidates.add(int(item))
            elif isinstance(item, str):
                candidates.update(int(digit) for digit in re.findall(r"\d+", item))

    valid = {tier for tier in candidates if tier in (1, 2, 3)}
    if not valid or valid != candidates:
        raise ValueError(f"invalid tier {value!r}")
    return min(valid), len(valid) > 1


def _render_router_input(
    question: str,
    profile: DiabetesProfile | None,
    previous_question: str | None,
) -> str:
    parts = [f'Question: "{question}"']
    profile_text = render_profile(profile)
    if profile_text:
        parts.append(profile_text)
    if previous_question:
        parts.append(f'Previous question: "{previous_question}"')
    parts.append("Classify this question and respond with JSON.")
    return "\n\n".join(parts)


def _fallback(cause: str) -> RoutingDecision:
    logger.warning("Router fallback to tier 1: %s", cause)
    return RoutingDecision(
        tier=1,
        reasoning=f"Router fallback: {cause}.",
        confidence=0.0,
        method="fallback",
    )
