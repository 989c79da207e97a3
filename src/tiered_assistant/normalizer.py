"""Merges any tier result into the public response envelope."""

from __future__ import annotations

from tiered_assistant.errors import UnknownTierError
from tiered_assistant.types import (
    DeepResearchResult,
    DirectResult,
    RateLimitInfo,
    ResponseEnvelope,
    ResponseMetadata,
    RoutingDecision,
    SearchAugmentedResult,
    Source,
    TierResult,
    TimingInfo,
)

PROCESSING_TIERS = {1: "MODEL", 2: "SEARCH", 3: "RESEARCH"}
COST_TIERS = {1: "low", 2: "medium", 3: "high"}

KNOWLEDGE_BASE_SOURCE = Source(
    title="General diabetes knowledge base",
    url=None,
    type="knowledge_base",
)


def normalize(
    decision: RoutingDecision,
    result: TierResult,
    timing: TimingInfo,
    rate_limit: RateLimitInfo | None = None,
) -> ResponseEnvelope:
    """Map a tagged tier result onto the flat envelope.

    The tier comes from the result variant and must agree with the routing
    decision. Rate limit info is attached only for tier 3.
    """
    match result:
        case DirectResult():
            tier = 1
            sources = [] if result.degraded else [KNOWLEDGE_BASE_SOURCE]
            research_summary = None
        case SearchAugmentedResult():
            tier = 2
            sources = list(result.sources)
            research_summary = None
        case DeepResearchResult():
            tier = 3
            sources = list(result.sources)
            research_summary = result.research_summary
        case _:
            raise UnknownTierError(f"Unrecognized tier result: {type(result).__name__}")

    if decision.tier != tier:
        raise UnknownTierError(
            f"Routing decision tier {decision.tier} does not match {type(result).__name__}"
        )

    if tier != 3:
        rate_limit = None

    metadata = ResponseMetadata(
        processing_time=f"{timing.elapsed_ms / 1000.0:.2f}s",
        model_used=timing.model_used,
        cost_tier=COST_TIERS[tier],
        tools_used=list(result.tools_used),
        degraded=result.degraded or bool(rate_limit is not None and rate_limit.degraded),
        routing={
            "reasoning": decision.reasoning,
            "confidence": decision.confidence,
            "method": decision.method,
        },
    )
    return ResponseEnvelope(
        answer=result.answer,
        tier=tier,
        processing_tier=PROCESSING_TIERS[tier],
        sources=sources,
        metadata=metadata,
        research_summary=research_summary,
        rate_limit_info=rate_limit,
    )
