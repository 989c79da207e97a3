"""Search tool registry built on Pydantic v2 models."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import Any

from pydantic import BaseModel, ConfigDict

from tiered_assistant.types import SearchHit, ToolTrace


class ToolSpec(BaseModel):
    """Declarative search tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[BaseModel], Awaitable[list[SearchHit]]]
    source_class: str

    async def invoke(self, payload: dict[str, Any]) -> list[SearchHit]:
        data = self.args_schema.model_validate(payload)
        return await self.handler(data)


class ToolRegistry:
    """Stores search tools and records a `ToolTrace` for every call.

    Traces go to the `traces` list passed to `execute`, so concurrent requests
    sharing one registry keep separate audit trails. Clients backing the tools
    are handed to `own` and closed by `aclose`.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._owned: list[Any] = []

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def own(self, resource: Any) -> None:
        if resource not in self._owned:
            self._owned.append(resource)

    async def aclose(self) -> None:
        owned, self._owned = self._owned, []
        for resource in owned:
            aclose = getattr(resource, "aclose", None)
            if aclose is not None:
                await aclose()

    def has(self, name: str) -> bool:
        return name in self._tools

    def for_source_class(self, source_class: str) -> ToolSpec | None:
        for spec in self._tools.values():
            if spec.source_class == source_class:
                return spec
        return None

    async def execute(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        traces: list[ToolTrace] | None = None,
    ) -> list[SearchHit]:
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")

        start = perf_counter()
        hits = await spec.invoke(payload)
        latency_ms = (perf_counter() - start) * 1000.0

        if traces is not None:
            traces.append(
                ToolTrace(
                    name=spec.name,
                    input_payload=payload,
                    output_preview="; ".join(hit.title for hit in hits)[:320],
                    latency_ms=latency_ms,
                )
            )
        return hits
