"""Tier 2: web-search-augmented answer."""

from __future__ import annotations

import asyncio
import logging

from tiered_assistant.errors import CapabilityError
from tiered_assistant.executors.base import (
    ExecutionRequest,
    StreamSink,
    TierExecutor,
    dedupe_hits,
    tool_names,
)
from tiered_assistant.executors.research import rank_hits
from tiered_assistant.prompts.assembler import build_user_prompt
from tiered_assistant.types import SearchAugmentedResult, SearchHit, Source, ToolTrace

logger = logging.getLogger(__name__)


class SearchAugmentedExecutor(TierExecutor):
    """Grounds a generation call on web search results.

    Queries are the question itself plus, with a profile, the question refined
    by diabetes type. If every query fails the answer is still generated,
    without grounding, and flagged degraded.
    """

    tier = 2

    async def execute(
        self, request: ExecutionRequest, sink: StreamSink | None = None
    ) -> SearchAugmentedResult:
        traces: list[ToolTrace] = []
        queries = self._queries(request)
        results = await asyncio.gather(
            *(
                self._search("web_search", query, self.config.results_per_query, traces)
                for query in queries
            ),
            return_exceptions=True,
        )

        collected: list[SearchHit] = []
        failures = 0
        for query, result in zip(queries, results, strict=True):
            if isinstance(result, CapabilityError):
                failures += 1
                logger.warning("Search query %r failed: %s", query, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                collected.extend(result)
        degraded = failures == len(queries)

        hits = rank_hits(dedupe_hits(collected), request.question)[: self.config.max_sources]
        sources = [Source.from_hit(hit) for hit in hits]
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
        return SearchAugmentedResult(
            answer=answer,
            sources=sources,
            tools_used=tool_names(traces),
            degraded=degraded,
        )

    def _queries(self, request: ExecutionRequest) -> list[str]:
        base = request.question.strip()
        queries = [base]
        profile = request.profile
        if profile is not None and profile.diabetes_type:
            queries.append(f"{base} {profile.diabetes_type} diabetes")
        return queries[: self.config.max_search_queries]
