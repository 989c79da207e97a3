"""Tier 1: direct model answer."""

from __future__ import annotations

import logging

from tiered_assistant.errors import CapabilityError
from tiered_assistant.executors.base import (
    ExecutionRequest,
    StreamSink,
    TierExecutor,
    tool_names,
)
from tiered_assistant.prompts.assembler import build_user_prompt
from tiered_assistant.types import DirectResult, SearchHit, ToolTrace

logger = logging.getLogger(__name__)


class DirectExecutor(TierExecutor):
    """Answers from model knowledge with a single generation call.

    When the router was unsure (confidence strictly between 0 and
    `borderline_confidence`) a lightweight web search grounds the prompt
    first; a failure there is ignored.
    """

    tier = 1

    async def execute(self, request: ExecutionRequest, sink: StreamSink | None = None) -> DirectResult:
        traces: list[ToolTrace] = []
        hits: list[SearchHit] = []
        if self._is_borderline(request) and self.registry.has("web_search"):
            try:
                hits = await self._search(
                    "web_search",
                    request.question,
                    self.config.borderline_search_results,
                    traces,
                )
            except CapabilityError as exc:
                logger.info("Borderline grounding search skipped: %s", exc)

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
            return DirectResult(answer=answer, tools_used=tool_names(traces), degraded=True)
        return DirectResult(answer=answer, tools_used=tool_names(traces))

    def _is_borderline(self, request: ExecutionRequest) -> bool:
        return 0.0 < request.decision.confidence < self.config.borderline_confidence
