"""Request tracing and cost accounting."""

from __future__ import annotations

import re
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    user_id: str
    question: str
    tier: int
    routing_method: str
    routing_confidence: float
    answer_preview: str
    source_count: int
    tools_used: list[str]
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    degraded: bool
    streamed: bool


@dataclass(slots=True)
class CostModel:
    """Token pricing per tier (USD per 1K tokens), plus a flat router charge."""

    prices_per_1k: dict[int, tuple[float, float]] = field(
        default_factory=lambda: {
            1: (0.00015, 0.0006),
            2: (0.00015, 0.0006),
            3: (0.0025, 0.01),
        }
    )
    router_call_usd: float = 0.0001

    def estimate_cost(self, tier: int, input_tokens: int, output_tokens: int) -> float:
        input_per_1k, output_per_1k = self.prices_per_1k.get(tier, (0.0, 0.0))
        return (
            self.router_call_usd
            + (input_tokens / 1000.0) * input_per_1k
            + (output_tokens / 1000.0) * output_per_1k
        )


class TraceStore:
    """In-memory, bounded trace storage for API-level observability."""

    def __init__(self, *, cost_model: CostModel | None = None, max_records: int = 5000) -> None:
        self._records: OrderedDict[str, TraceRecord] = OrderedDict()
        self._cost_model = cost_model or CostModel()
        self._max_records = max_records

    def create_record(
        self,
        *,
        user_id: str,
        question: str,
        tier: int,
        routing_method: str,
        routing_confidence: float,
        answer: str,
        source_count: int,
        tools_used: list[str],
        input_tokens: int,
        output_tokens: int,
        latency_ms: float,
        degraded: bool,
        streamed: bool = False,
    ) -> TraceRecord:
        trace_id = str(uuid.uuid4())
        record = TraceRecord(
            trace_id=trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            user_id=user_id,
            question=question,
            tier=tier,
            routing_method=routing_method,
            routing_confidence=routing_confidence,
            answer_preview=answer[:320],
            source_count=source_count,
            tools_used=tools_used,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_usd=self._cost_model.estimate_cost(tier, input_tokens, output_tokens),
            latency_ms=latency_ms,
            degraded=degraded,
            streamed=streamed,
        )
        self._records[trace_id] = record
        while len(self._records) > self._max_records:
            self._records.popitem(last=False)
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, object]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "tier_distribution": {},
                "degraded_requests": 0,
                "router_fallbacks": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_estimated_cost_usd": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        tiers = Counter(record.tier for record in records)

        return {
            "total_requests": total,
            "tier_distribution": {str(tier): tiers[tier] for tier in sorted(tiers)},
            "degraded_requests": sum(1 for record in records if record.degraded),
            "router_fallbacks": sum(1 for record in records if record.routing_method == "fallback"),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
        }


class Timer:
    """Simple context timer used by the request pipeline."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
