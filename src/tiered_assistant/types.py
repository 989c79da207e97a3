"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from tiered_assistant.errors import ProgrammerError


@dataclass(slots=True, frozen=True)
class DiabetesProfile:
    """Fixed-shape medical profile supplied by the caller."""

    diabetes_type: str | None = None
    medications: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Question:
    """One incoming question. Lives for a single request."""

    text: str
    user_id: str
    profile: DiabetesProfile | None = None
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    """Tier selected by the router, with advisory reasoning and confidence."""

    tier: int
    reasoning: str
    confidence: float
    method: str = "llm"

    def __post_init__(self) -> None:
        if self.tier not in (1, 2, 3):
            raise ProgrammerError(f"Routing tier out of range: {self.tier}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ProgrammerError(f"Routing confidence out of range: {self.confidence}")


@dataclass(slots=True, frozen=True)
class SearchHit:
    """A single ranked result returned by the retrieval capability."""

    title: str
    url: str
    snippet: str
    source_class: str = "web"
    published: str | None = None


@dataclass(slots=True, frozen=True)
class Source:
    """Public source entry attached to a response."""

    title: str
    url: str | None
    type: str
    snippet: str = ""

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "Source":
        return cls(title=hit.title, url=hit.url, type=hit.source_class, snippet=hit.snippet)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "type": self.type}
        if self.url:
            payload["url"] = self.url
        if self.snippet:
            payload["snippet"] = self.snippet
        return payload


@dataclass(slots=True)
class ResearchSummary:
    """Per-source-class counts gathered by the deep research tier."""

    total_studies: int = 0
    pubmed_articles: int = 0
    clinical_trials: int = 0
    arxiv_papers: int = 0
    exa_medical_sources: int = 0
    evidence_quality: str = "insufficient"

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalStudies": self.total_studies,
            "pubmedArticles": self.pubmed_articles,
            "clinicalTrials": self.clinical_trials,
            "arxivPapers": self.arxiv_papers,
            "exaMedicalSources": self.exa_medical_sources,
            "evidenceQuality": self.evidence_quality,
        }


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed search tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float


@dataclass(slots=True)
class DirectResult:
    answer: str
    tools_used: list[str] = field(default_factory=list)
    degraded: bool = False


@dataclass(slots=True)
class SearchAugmentedResult:
    answer: str
    sources: list[Source] = field(default_factory=list)
    tools_used: list[str] = field(default_factory=list)
    degraded: bool = False


@dataclass(slots=True)
class DeepResearchResult:
    answer: str
    sources: list[Source] = field(default_factory=list)
    research_summary: ResearchSummary = field(default_factory=ResearchSummary)
    tools_used: list[str] = field(default_factory=list)
    degraded: bool = False


TierResult = Union[DirectResult, SearchAugmentedResult, DeepResearchResult]


@dataclass(slots=True, frozen=True)
class AdmissionDecision:
    """Outcome of a rate limiter check-and-increment."""

    allowed: bool
    remaining: int | None
    reset_at: datetime
    degraded: bool = False


@dataclass(slots=True, frozen=True)
class RateLimitInfo:
    remaining: int | None
    reset_at: datetime
    degraded: bool = False

    @classmethod
    def from_admission(cls, admission: AdmissionDecision) -> "RateLimitInfo":
        return cls(
            remaining=admission.remaining,
            reset_at=admission.reset_at,
            degraded=admission.degraded,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat(),
        }
        if self.degraded:
            payload["degraded"] = True
        return payload


@dataclass(slots=True, frozen=True)
class UsageSnapshot:
    count: int
    limit: int
    remaining: int
    reset_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class TimingInfo:
    elapsed_ms: float
    model_used: str


@dataclass(slots=True)
class ResponseMetadata:
    processing_time: str
    model_used: str
    cost_tier: str
    tools_used: list[str] = field(default_factory=list)
    degraded: bool = False
    routing: dict[str, Any] = field(default_factory=dict)
    trace_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processingTime": self.processing_time,
            "modelUsed": self.model_used,
            "costTier": self.cost_tier,
            "degraded": self.degraded,
            "routing": dict(self.routing),
        }
        if self.tools_used:
            payload["toolsUsed"] = list(self.tools_used)
        if self.trace_id is not None:
            payload["traceId"] = self.trace_id
        return payload


@dataclass(slots=True)
class ResponseEnvelope:
    """The single public response shape shared by every tier."""

    answer: str
    tier: int
    processing_tier: str
    sources: list[Source]
    metadata: ResponseMetadata
    research_summary: ResearchSummary | None = None
    rate_limit_info: RateLimitInfo | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "answer": self.answer,
            "tier": self.tier,
            "processingTier": self.processing_tier,
            "sources": [source.to_payload() for source in self.sources],
            "metadata": self.metadata.to_payload(),
        }
        if self.research_summary is not None:
            payload["researchSummary"] = self.research_summary.to_payload()
        if self.rate_limit_info is not None:
            payload["rateLimitInfo"] = self.rate_limit_info.to_payload()
        return payload


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    question: str
    answer: str


@dataclass(slots=True, frozen=True)
class DetectedReference:
    """A referring expression found in a question."""

    category: str
    pattern: str
    confidence: float


@dataclass(slots=True, frozen=True)
class ResolvedReference:
    category: str
    pattern: str
    antecedent: str | None
    turn_index: int | None = None

    @property
    def resolved(self) -> bool:
        return self.antecedent is not None


@dataclass(slots=True, frozen=True)
class Resolution:
    resolved_question: str
    guidance_text: str
    references: tuple[ResolvedReference, ...] = ()
