"""FastAPI entrypoint for ask/stream/usage/health/trace endpoints."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from tiered_assistant import __version__
from tiered_assistant.agent.capabilities import (
    ChatModelGenerator,
    DeterministicGenerator,
    Generator,
    HttpSearchRetriever,
)
from tiered_assistant.agent.registry import ToolRegistry
from tiered_assistant.agent.router import TierRouter
from tiered_assistant.agent.service import AssistantService
from tiered_assistant.agent.tools import register_search_tools
from tiered_assistant.config import ExecutorConfig, RouterConfig, Settings, StreamConfig
from tiered_assistant.errors import (
    InputValidationError,
    LimiterBackendError,
    ProgrammerError,
    RateLimitExceededError,
)
from tiered_assistant.executors.direct import DirectExecutor
from tiered_assistant.executors.research import DeepResearchExecutor
from tiered_assistant.executors.search import SearchAugmentedExecutor
from tiered_assistant.limits.rate_limiter import RateLimiter
from tiered_assistant.limits.store import CounterStore, InMemoryCounterStore, SqliteCounterStore
from tiered_assistant.normalizer import COST_TIERS, PROCESSING_TIERS
from tiered_assistant.obs.tracing import TraceStore
from tiered_assistant.streaming.transport import SSEChannel, relay
from tiered_assistant.types import DiabetesProfile, Question

logger = logging.getLogger(__name__)


def _create_chat_model(
    settings: Settings, model: str, *, temperature: float, max_tokens: int | None = None
) -> Any:
    if settings.openai_api_key is None:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=settings.openai_api_key,
    )


def _create_counter_store(settings: Settings) -> CounterStore:
    if settings.counter_store == "sqlite":
        return SqliteCounterStore(settings.counter_db_path)
    return InMemoryCounterStore()


def build_service(settings: Settings) -> AssistantService:
    """Wire the pipeline from settings; falls back to offline components when unconfigured."""
    executor_config = ExecutorConfig()
    router_config = RouterConfig()

    registry = ToolRegistry()
    if settings.search_api_url:
        api_key = settings.search_api_key.get_secret_value() if settings.search_api_key else None
        retriever = HttpSearchRetriever(
            settings.search_api_url,
            api_key=api_key,
            timeout_seconds=executor_config.retrieval_timeout_seconds,
        )
        register_search_tools(registry, retriever)
    else:
        logger.warning("SEARCH_API_URL is not set; search and research tiers will run degraded")

    router_llm = _create_chat_model(
        settings,
        settings.router_model,
        temperature=router_config.temperature,
        max_tokens=router_config.max_output_tokens,
    )
    answer_llm = _create_chat_model(settings, settings.openai_model, temperature=0.3)
    research_llm = _create_chat_model(settings, settings.research_model, temperature=0.2)

    answer_generator: Generator = (
        ChatModelGenerator(answer_llm, model_name=settings.openai_model)
        if answer_llm is not None
        else DeterministicGenerator()
    )
    research_generator: Generator = (
        ChatModelGenerator(research_llm, model_name=settings.research_model)
        if research_llm is not None
        else DeterministicGenerator()
    )

    return AssistantService(
        router=TierRouter(llm=router_llm, config=router_config, model_name=settings.router_model),
        rate_limiter=RateLimiter(_create_counter_store(settings), settings.rate_limit_config()),
        executors={
            1: DirectExecutor(generator=answer_generator, registry=registry, config=executor_config),
            2: SearchAugmentedExecutor(generator=answer_generator, registry=registry, config=executor_config),
            3: DeepResearchExecutor(generator=research_generator, registry=registry, config=executor_config),
        },
        trace_store=TraceStore(),
    )


class DiabetesProfileModel(BaseModel):
    type: str | None = None
    medications: list[str] = Field(default_factory=list)

    def to_domain(self) -> DiabetesProfile:
        return DiabetesProfile(diabetes_type=self.type, medications=tuple(self.medications))


class AskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str | None = None
    user_id: str | None = Field(default=None, alias="userId")
    diabetes_profile: DiabetesProfileModel | None = Field(default=None, alias="diabetesProfile")

    def to_question(self, session_id: str | None = None) -> Question:
        return Question(
            text=self.question or "",
            user_id=self.user_id or "",
            profile=self.diabetes_profile.to_domain() if self.diabetes_profile else None,
            session_id=session_id,
        )


class StreamRequest(AskRequest):
    session_id: str | None = Field(default=None, alias="sessionId")


_settings = Settings()
logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

_stream_config = StreamConfig()
_service = build_service(_settings)


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    logger.info("Shutting down; closing search clients")
    await _service.aclose()


app = FastAPI(title="Tiered Diabetes Assistant", version=__version__, lifespan=lifespan)


def get_service() -> AssistantService:
    return _service


def _error_detail(code: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"error": code, "message": message, **extra}


@app.get("/health")
def health(service: AssistantService = Depends(get_service)) -> dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "architecture": "3-tier",
        "tiers": {
            str(tier): {
                "name": PROCESSING_TIERS[tier],
                "model": executor.model_name,
                "costTier": COST_TIERS[tier],
            }
            for tier, executor in sorted(service.executors.items())
        },
        "router": {"mode": service.router.mode, "model": service.router.model_name},
        "rateLimits": {
            "proResearchDailyLimit": service.rate_limiter.daily_limit,
            "failOpen": service.rate_limiter.config.fail_open,
        },
    }


@app.get("/usage/{user_id}")
async def usage(user_id: str, service: AssistantService = Depends(get_service)) -> dict[str, Any]:
    try:
        snapshot = await service.rate_limiter.get_usage(user_id)
    except LimiterBackendError as exc:
        raise HTTPException(
            status_code=503, detail=_error_detail("rate_limiter_unavailable", str(exc))
        ) from exc
    return {"userId": user_id, **snapshot.to_payload()}


@app.post("/ask")
async def ask(body: AskRequest, service: AssistantService = Depends(get_service)) -> dict[str, Any]:
    try:
        envelope = await service.ask(body.to_question())
    except InputValidationError as exc:
        raise HTTPException(status_code=400, detail=_error_detail("invalid_input", str(exc))) from exc
    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=429,
            detail=_error_detail(
                "rate_limit_exceeded",
                str(exc),
                remaining=exc.remaining,
                limit=exc.limit,
                resetAt=exc.reset_at.isoformat(),
            ),
        ) from exc
    except LimiterBackendError as exc:
        raise HTTPException(
            status_code=503, detail=_error_detail("rate_limiter_unavailable", str(exc))
        ) from exc
    except ProgrammerError as exc:
        logger.exception("Internal error while answering")
        raise HTTPException(
            status_code=500, detail=_error_detail("internal_error", "The request could not be completed.")
        ) from exc
    return envelope.to_payload()


@app.post("/ask/stream")
async def ask_stream(
    body: StreamRequest,
    request: Request,
    service: AssistantService = Depends(get_service),
) -> StreamingResponse:
    try:
        question = service.validate(body.to_question(session_id=body.session_id))
    except InputValidationError as exc:
        raise HTTPException(status_code=400, detail=_error_detail("invalid_input", str(exc))) from exc

    channel = SSEChannel(_stream_config)

    async def event_stream():
        producer = asyncio.create_task(service.stream(question, channel))
        async with contextlib.aclosing(relay(channel, producer, request.is_disconnected)) as frames:
            async for frame in frames:
                yield frame

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/traces")
def traces(limit: int = 20, service: AssistantService = Depends(get_service)) -> dict[str, Any]:
    records = [asdict(record) for record in service.trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str, service: AssistantService = Depends(get_service)) -> dict[str, Any]:
    try:
        record = service.trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics(service: AssistantService = Depends(get_service)) -> dict[str, Any]:
    return service.trace_store.summary()
