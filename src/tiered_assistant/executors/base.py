"""Shared executor contract and capability call helpers."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, TypeVar

from tiered_assistant.agent.capabilities import Generator
from tiered_assistant.agent.registry import ToolRegistry
from tiered_assistant.config import ExecutorConfig
from tiered_assistant.errors import CapabilityError, CapabilityTimeoutError
from tiered_assistant.types import (
    DiabetesProfile,
    RoutingDecision,
    SearchHit,
    Source,
    TierResult,
    ToolTrace,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StreamSink(Protocol):
    """Receives incremental output on the streaming path."""

    async def on_sources(self, sources: list[Source]) -> None:
        ...

    async def on_token(self, text: str) -> None:
        ...

    async def on_progress(self, event: dict[str, Any]) -> None:
        ...


@dataclass(slots=True, frozen=True)
class ExecutionRequest:
    question: str
    system_prompt: str
    decision: RoutingDecision
    profile: DiabetesProfile | None = None
    guidance: str = ""


class TierExecutor(ABC):
    """Base class for the three tier executors.

    Capability failures never escape `execute`: they produce a degraded but
    valid `TierResult`. Cancellation is always propagated.
    """

    tier: ClassVar[int]

    def __init__(
        self,
        *,
        generator: Generator,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
    ) -> None:
        self.generator = generator
        self.registry = registry
        self.config = config or ExecutorConfig()

    @property
    def model_name(self) -> str:
        return self.generator.model_name

    @abstractmethod
    async def execute(self, request: ExecutionRequest, sink: StreamSink | None = None) -> TierResult:
        raise NotImplementedError

    async def _bounded(self, awaitable: Awaitable[T], capability: str, timeout: float) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CapabilityTimeoutError(capability, f"timed out after {timeout:g}s") from exc
        except CapabilityError:
            raise
        except Exception as exc:
            raise CapabilityError(capability, f"{type(exc).__name__}: {exc}") from exc

    async def _search(
        self,
        tool_name: str,
        query: str,
        max_results: int,
        traces: list[ToolTrace],
    ) -> list[SearchHit]:
        return await self._bounded(
            self.registry.execute(
                tool_name,
                {"query": query, "max_results": max_results},
                traces=traces,
            ),
            f"retrieval:{tool_name}",
            self.config.retrieval_timeout_seconds,
        )

    async def _generate(self, system_prompt: str, user_prompt: str, sink: StreamSink | None) -> str:
        if sink is None:
            text = await self._bounded(
                self.generator.generate(system_prompt, user_prompt),
                "generation",
                self.config.generation_timeout_seconds,
            )
        else:
            text = await self._generate_streaming(system_prompt, user_prompt, sink)
        if not text.strip():
            raise CapabilityError("generation", "empty response")
        return text

    async def _generate_streaming(self, system_prompt: str, user_prompt: str, sink: StreamSink) -> str:
        parts: list[str] = []
        iterator = self.generator.stream(system_prompt, user_prompt).__aiter__()
        timeout = self.config.stream_chunk_timeout_seconds
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
                except StopAsyncIteration:
                    break
                parts.append(chunk)
                await sink.on_token(chunk)
        except asyncio.TimeoutError as exc:
            raise CapabilityTimeoutError(
                "generation", f"no chunk within {timeout:g}s", partial_text="".join(parts)
            ) from exc
        except CapabilityError as exc:
            exc.partial_text = "".join(parts)
            raise
        except Exception as exc:
            raise CapabilityError(
                "generation", f"{type(exc).__name__}: {exc}", partial_text="".join(parts)
            ) from exc
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(parts)

    async def _degraded_answer(self, exc: CapabilityError, sink: StreamSink | None) -> str:
        """Best-effort answer after a generation failure, streamed when needed."""
        logger.warning("Tier %d generation degraded: %s", self.tier, exc)
        if exc.partial_text.strip():
            note = "\n\n(This answer was cut short because the model stopped responding.)"
            answer = exc.partial_text + note
        else:
            note = self.config.degraded_answer
            answer = note
        if sink is not None:
            await sink.on_token(note)
        return answer


def tool_names(traces: Iterable[ToolTrace]) -> list[str]:
    names: list[str] = []
    for trace in traces:
        if trace.name not in names:
            names.append(trace.name)
    return names


def dedupe_hits(hits: Iterable[SearchHit], limit: int | None = None) -> list[SearchHit]:
    seen: set[str] = set()
    unique: list[SearchHit] = []
    for hit in hits:
        key = hit.url or f"{hit.source_class}:{hit.title}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(hit)
        if limit is not None and len(unique) >= limit:
            break
    return unique
