"""Shared fakes for the tiered assistant tests."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator

from langchain_core.runnables import RunnableLambda

# Keep module-level app wiring offline regardless of the developer's shell.
for _name in ("OPENAI_API_KEY", "SEARCH_API_URL", "SEARCH_API_KEY", "COUNTER_STORE"):
    os.environ.pop(_name, None)

from tiered_assistant.agent.registry import ToolRegistry
from tiered_assistant.agent.router import TierRouter
from tiered_assistant.agent.service import AssistantService
from tiered_assistant.agent.tools import register_search_tools
from tiered_assistant.config import ExecutorConfig, RateLimitConfig
from tiered_assistant.executors.direct import DirectExecutor
from tiered_assistant.executors.research import DeepResearchExecutor
from tiered_assistant.executors.search import SearchAugmentedExecutor
from tiered_assistant.limits.rate_limiter import RateLimiter
from tiered_assistant.limits.store import InMemoryCounterStore
from tiered_assistant.types import SearchHit


class FakeGenerator:
    def __init__(
        self,
        answer: str = "A1C reflects your average blood glucose over about three months.",
        *,
        model_name: str = "fake-model",
        error: Exception | None = None,
        fail_after_chunks: int | None = None,
    ) -> None:
        self.answer = answer
        self.model_name = model_name
        self.error = error
        self.fail_after_chunks = fail_after_chunks
        self.calls: list[tuple[str, str]] = []

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        return self.answer

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        self.calls.append((system_prompt, user_prompt))
        if self.error is not None and self.fail_after_chunks is None:
            raise self.error
        for index, word in enumerate(self.answer.split(" ")):
            if self.fail_after_chunks is not None and index >= self.fail_after_chunks:
                raise self.error or RuntimeError("stream dropped")
            yield word if index == 0 else f" {word}"


class FakeRetriever:
    def __init__(self, *, failing: set[str] | None = None, per_call: int = 3) -> None:
        self.failing = failing or set()
        self.per_call = per_call
        self.calls: list[tuple[str, str | None]] = []

    async def search(
        self,
        query: str,
        *,
        source_class: str | None = None,
        max_results: int = 5,
    ) -> list[SearchHit]:
        label = source_class or "web"
        self.calls.append((query, source_class))
        if label in self.failing:
            raise ConnectionError(f"{label} provider unavailable")
        return [
            SearchHit(
                title=f"{label} result {index} for {query}",
                url=f"https://example.org/{label}/{len(query)}/{index}",
                snippet=f"Finding {index} from {label} about {query}.",
                source_class=label,
            )
            for index in range(1, min(self.per_call, max_results) + 1)
        ]


def fixed_reply(text: str) -> RunnableLambda:
    """Chat model stand-in that always replies with `text`."""

    async def _reply(_prompt_value: object) -> str:
        return text

    return RunnableLambda(_reply)


def failing_llm(exc: Exception) -> RunnableLambda:
    async def _raise(_prompt_value: object) -> str:
        raise exc

    return RunnableLambda(_raise)


def make_service(
    *,
    router_llm: object | None = None,
    generator: FakeGenerator | None = None,
    research_generator: FakeGenerator | None = None,
    retriever: FakeRetriever | None = None,
    rate_limit: RateLimitConfig | None = None,
    store: object | None = None,
    executor_config: ExecutorConfig | None = None,
) -> AssistantService:
    registry = ToolRegistry()
    register_search_tools(registry, retriever or FakeRetriever())
    generator = generator or FakeGenerator()
    research_generator = research_generator or FakeGenerator(
        "Across recent studies the evidence is mixed.", model_name="fake-research-model"
    )
    config = executor_config or ExecutorConfig()
    return AssistantService(
        router=TierRouter(llm=router_llm),
        rate_limiter=RateLimiter(store or InMemoryCounterStore(), rate_limit or RateLimitConfig()),
        executors={
            1: DirectExecutor(generator=generator, registry=registry, config=config),
            2: SearchAugmentedExecutor(generator=generator, registry=registry, config=config),
            3: DeepResearchExecutor(generator=research_generator, registry=registry, config=config),
        },
    )


def parse_sse(body: str) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []
    for block in body.split("\n\n"):
        if not block.strip() or block.startswith(":"):
            continue
        event, data = "", ""
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        events.append((event, json.loads(data)))
    return events
