"""Request pipeline: resolve, route, gate, execute, normalize."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace

from tiered_assistant.agent.router import TierRouter
from tiered_assistant.config import ServiceConfig
from tiered_assistant.errors import (
    InputValidationError,
    LimiterBackendError,
    ProgrammerError,
    RateLimitExceededError,
)
from tiered_assistant.executors.base import ExecutionRequest, StreamSink, TierExecutor
from tiered_assistant.limits.rate_limiter import GATED_TIER, RateLimiter
from tiered_assistant.normalizer import PROCESSING_TIERS, normalize
from tiered_assistant.obs.tracing import Timer, TraceStore, estimate_token_count
from tiered_assistant.prompts.assembler import build_system_prompt
from tiered_assistant.resolution.resolver import ReferenceResolver
from tiered_assistant.resolution.session import SessionStore
from tiered_assistant.streaming.transport import ChannelSink, SSEChannel
from tiered_assistant.types import (
    ConversationTurn,
    Question,
    RateLimitInfo,
    ResponseEnvelope,
    RoutingDecision,
    TierResult,
    TimingInfo,
)

logger = logging.getLogger(__name__)


class AssistantService:
    """Runs one question through the tiered pipeline.

    `ask` returns the finished envelope; `stream` pushes `routing`, `progress`,
    `sources`, `token`, `done` (or `error`) events to an `SSEChannel` and always closes it.
    Only the streaming path uses session context for reference resolution.
    """

    def __init__(
        self,
        *,
        router: TierRouter,
        rate_limiter: RateLimiter,
        executors: Mapping[int, TierExecutor],
        sessions: SessionStore | None = None,
        resolver: ReferenceResolver | None = None,
        trace_store: TraceStore | None = None,
        config: ServiceConfig | None = None,
    ) -> None:
        if set(executors) != {1, 2, 3}:
            raise ProgrammerError(f"Executors required for tiers 1-3, got {sorted(executors)}")
        self.router = router
        self.rate_limiter = rate_limiter
        self.executors = dict(executors)
        self.sessions = sessions or SessionStore()
        self.resolver = resolver or ReferenceResolver()
        self.trace_store = trace_store or TraceStore()
        self.config = config or ServiceConfig()

    def validate(self, question: Question) -> Question:
        text = (question.text or "").strip()
        if not text:
            raise InputValidationError("Question is required and must be a non-empty string")
        if len(text) > self.config.max_question_chars:
            raise InputValidationError(
                f"Question must be at most {self.config.max_question_chars} characters"
            )
        user_id = (question.user_id or "").strip()
        if not user_id:
            raise InputValidationError("User ID is required")
        session_id = (question.session_id or "").strip() or None
        return replace(question, text=text, user_id=user_id, session_id=session_id)

    async def ask(self, question: Question) -> ResponseEnvelope:
        question = self.validate(question)
        with Timer() as timer:
            decision = await self.router.route(question.text, question.profile)
            rate_limit = await self._admit(question, decision)
            result = await self._execute(question, decision)
        return self._finish(question, decision, result, rate_limit, timer.elapsed_ms, streamed=False)

    async def stream(self, question: Question, channel: SSEChannel) -> None:
        session_id: str | None = None
        try:
            question = self.validate(question)
            session_id = question.session_id or self.sessions.new_session_id()
            with Timer() as timer:
                turns = self.sessions.get_turns(session_id, question.user_id)
                resolution = self.resolver.resolve(question.text, turns)
                previous_question = turns[-1].question if turns else None
                decision = await self.router.route(
                    resolution.resolved_question,
                    question.profile,
                    previous_question=previous_question,
                )
                await channel.send(
                    "routing",
                    {
                        "tier": decision.tier,
                        "processingTier": PROCESSING_TIERS[decision.tier],
                        "reasoning": decision.reasoning,
                        "confidence": decision.confidence,
                        "sessionId": session_id,
                    },
                )
                rate_limit = await self._admit(question, decision)
                result = await self._execute(
                    question,
                    decision,
                    sink=ChannelSink(channel),
                    guidance=resolution.guidance_text,
                )
            envelope = self._finish(question, decision, result, rate_limit, timer.elapsed_ms, streamed=True)
            self.sessions.append(
                session_id,
                question.user_id,
                ConversationTurn(question=question.text, answer=envelope.answer),
            )
            payload = envelope.to_payload()
            payload["sessionId"] = session_id
            await channel.send("done", payload)
        except InputValidationError as exc:
            await channel.send("error", {"code": "invalid_input", "message": str(exc)})
        except RateLimitExceededError as exc:
            await channel.send(
                "error",
                {
                    "code": "rate_limit_exceeded",
                    "message": str(exc),
                    "remaining": exc.remaining,
                    "limit": exc.limit,
                    "resetAt": exc.reset_at.isoformat(),
                    "sessionId": session_id,
                },
            )
        except LimiterBackendError as exc:
            logger.error("Rate limiter unavailable (fail-closed): %s", exc)
            await channel.send(
                "error",
                {"code": "rate_limiter_unavailable", "message": "Usage limits cannot be checked right now."},
            )
        except Exception:
            logger.exception("Streaming request failed")
            await channel.send(
                "error",
                {"code": "internal_error", "message": "The request could not be completed."},
            )
        finally:
            await channel.close()

    async def aclose(self) -> None:
        """Release clients held by the executors' tool registries."""
        registries = {id(executor.registry): executor.registry for executor in self.executors.values()}
        for registry in registries.values():
            await registry.aclose()

    async def _admit(self, question: Question, decision: RoutingDecision) -> RateLimitInfo | None:
        if decision.tier != GATED_TIER:
            return None
        admission = await self.rate_limiter.check_and_increment(question.user_id, decision.tier)
        if not admission.allowed:
            raise RateLimitExceededError(limit=self.rate_limiter.daily_limit, reset_at=admission.reset_at)
        return RateLimitInfo.from_admission(admission)

    async def _execute(
        self,
        question: Question,
        decision: RoutingDecision,
        *,
        sink: StreamSink | None = None,
        guidance: str = "",
    ) -> TierResult:
        executor = self.executors[decision.tier]
        request = ExecutionRequest(
            question=question.text,
            system_prompt=build_system_prompt(decision.tier),
            decision=decision,
            profile=question.profile,
            guidance=guidance,
        )
        return await executor.execute(request, sink)

    def _finish(
        self,
        question: Question,
        decision: RoutingDecision,
        result: TierResult,
        rate_limit: RateLimitInfo | None,
        elapsed_ms: float,
        *,
        streamed: bool,
    ) -> ResponseEnvelope:
        executor = self.executors[decision.tier]
        envelope = normalize(
            decision,
            result,
            TimingInfo(elapsed_ms=elapsed_ms, model_used=executor.model_name),
            rate_limit,
        )
        record = self.trace_store.create_record(
            user_id=question.user_id,
            question=question.text,
            tier=envelope.tier,
            routing_method=decision.method,
            routing_confidence=decision.confidence,
            answer=envelope.answer,
            source_count=len(envelope.sources),
            tools_used=envelope.metadata.tools_used,
            input_tokens=estimate_token_count(question.text),
            output_tokens=estimate_token_count(envelope.answer),
            latency_ms=elapsed_ms,
            degraded=envelope.metadata.degraded,
            streamed=streamed,
        )
        envelope.metadata.trace_id = record.trace_id
        if envelope.metadata.degraded:
            logger.warning("Tier %d response degraded (trace %s)", envelope.tier, record.trace_id)
        return envelope
