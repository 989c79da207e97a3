"""Tier 3: deep multi-source research."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from time import perf_counter

from tiered_assistant.errors import CapabilityError
from tiered_assistant.executors.base import (
    ExecutionRequest,
    StreamSink,
    TierExecutor,
    dedupe_hits,
    tool_names,
)
from tiered_assistant.prompts.assembler import build_user_prompt
from tiered_assistant.types import (
    DeepResearchResult,
    ResearchSummary,
    SearchHit,
    Source,
    ToolTrace,
)

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")
_YEAR = re.compile(r"\b(?:19|20)\d{2}\b")
_STOP_WORDS = frozenset(
    {"the", "and", "but", "are", "was", "were", "for", "with", "what", "how", "does", "about", "can", "should"}
)
# Peer-reviewed classes first, preprints next, general web last.
_CREDIBILITY_BOOST = {"pubmed": 15, "clinical_trials": 15, "arxiv": 8, "medical_web": 5}


class DeepResearchExecutor(TierExecutor):
    """Searches every configured source class concurrently and synthesizes one answer.

    Must only run after the rate limiter admitted the request. Failed source
    classes are skipped; when all of them fail the result is degraded. Hits are
    ranked by relevance before the `max_research_sources` cap applies.
    """

    tier = 3

    async def execute(
        self, request: ExecutionRequest, sink: StreamSink | None = None
    ) -> DeepResearchResult:
        traces: list[ToolTrace] = []
        planned: list[tuple[str, str]] = []
        for source_class in self.config.research_source_classes:
            spec = self.registry.for_source_class(source_class)
            if spec is None:
                logger.warning("No search tool registered for source class %s", source_class)
                continue
            planned.append((source_class, spec.name))

        results = await asyncio.gather(
            *(
                self._search_class(source_class, tool_name, request.question, traces, sink)
                for source_class, tool_name in planned
            ),
            return_exceptions=True,
        )

        per_class: dict[str, list[SearchHit]] = {}
        for (source_class, _), result in zip(planned, results, strict=True):
            if isinstance(result, CapabilityError):
                logger.warning("Research source %s failed: %s", source_class, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                per_class[source_class] = result
        degraded = not per_class

        ranked = rank_hits(
            dedupe_hits(hit for class_hits in per_class.values() for hit in class_hits),
            request.question,
        )
        hits = ranked[: self.config.max_research_sources]
        sources = [Source.from_hit(hit) for hit in hits]
        summary = summarize_research(per_class)
        if sink is not None and sources:
            await sink.on_sources(sources)

        user_prompt = build_user_prompt(
            request.question,
            profile=request.profile,
            guidance=request.guidance,
            hits=hits,
        )
        try:
            answer = await self._generate(request.system_prompt, user_prompt, sink)
        except CapabilityError as exc:
            answer = await self._degraded_answer(exc, sink)
            degraded = True
        return DeepResearchResult(
            answer=answer,
            sources=sources,
            research_summary=summary,
            tools_used=tool_names(traces),
            degraded=degraded,
        )

    async def _search_class(
        self,
        source_class: str,
        tool_name: str,
        query: str,
        traces: list[ToolTrace],
        sink: StreamSink | None,
    ) -> list[SearchHit]:
        requested = self.config.results_per_class
        if sink is not None:
            await sink.on_progress({"type": "api_started", "api": source_class, "count": requested})
        started = perf_counter()
        try:
            hits = await self._search(tool_name, query, requested, traces)
        except CapabilityError:
            if sink is not None:
                await sink.on_progress(_completed(source_class, 0, started, success=False))
            raise
        if sink is not None:
            await sink.on_progress(_completed(source_class, len(hits), started, success=True))
        return hits


def _completed(source_class: str, count: int, started: float, *, success: bool) -> dict[str, object]:
    return {
        "type": "api_completed",
        "api": source_class,
        "count": count,
        "durationMs": round((perf_counter() - started) * 1000.0, 1),
        "success": success,
    }


def rank_hits(hits: Iterable[SearchHit], query: str, *, current_year: int | None = None) -> list[SearchHit]:
    """Order hits best first by relevance to `query`; equal scores keep arrival order.

    Score out of 100: keyword coverage of title and snippet (up to 70),
    source-class credibility (up to 15) and publication recency (up to 15).
    """
    keywords = query_keywords(query)
    year = current_year or datetime.now(timezone.utc).year
    return sorted(hits, key=lambda hit: -relevance_score(hit, keywords, current_year=year))


def query_keywords(query: str) -> list[str]:
    return [word for word in _WORD.findall(query.lower()) if len(word) > 2 and word not in _STOP_WORDS]


def relevance_score(hit: SearchHit, keywords: list[str], *, current_year: int) -> int:
    content = f"{hit.title} {hit.snippet}".lower()
    if keywords:
        matched = sum(1 for keyword in keywords if keyword in content)
        keyword_score = round(matched / len(keywords) * 70)
    else:
        keyword_score = 35
    score = keyword_score + _CREDIBILITY_BOOST.get(hit.source_class, 0) + _recency_boost(hit.published, current_year)
    return min(100, score)


def _recency_boost(published: str | None, current_year: int) -> int:
    match = _YEAR.search(published or "")
    if match is None:
        return 0
    age = current_year - int(match.group(0))
    if age <= 1:
        return 15
    if age <= 3:
        return 10
    if age <= 5:
        return 5
    return 0


def summarize_research(per_class: Mapping[str, list[SearchHit]]) -> ResearchSummary:
    counts = {source_class: len(hits) for source_class, hits in per_class.items()}
    total = sum(counts.values())
    return ResearchSummary(
        total_studies=total,
        pubmed_articles=counts.get("pubmed", 0),
        clinical_trials=counts.get("clinical_trials", 0),
        arxiv_papers=counts.get("arxiv", 0),
        exa_medical_sources=counts.get("medical_web", 0),
        evidence_quality=grade_evidence(total),
    )


def grade_evidence(total_sources: int) -> str:
    if total_sources >= 10:
        return "high"
    if total_sources >= 7:
        return "moderate"
    if total_sources >= 4:
        return "limited"
    return "insufficient"
