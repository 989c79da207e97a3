"""Error taxonomy shared by the pipeline, executors and HTTP layer."""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum

import httpx


class AssistantError(Exception):
    """Base class for all errors raised by the assistant."""


class InputValidationError(AssistantError):
    """Missing or malformed request input; raised before any tier work."""


class RateLimitExceededError(AssistantError):
    """The user has used up their daily deep research quota."""

    def __init__(self, *, limit: int, reset_at: datetime) -> None:
        super().__init__(
            f"Daily deep research limit of {limit} reached. Resets at {reset_at.isoformat()}."
        )
        self.limit = limit
        self.remaining = 0
        self.reset_at = reset_at


class CapabilityError(AssistantError):
    """A generation or retrieval capability call failed."""

    def __init__(self, capability: str, message: str, *, partial_text: str = "") -> None:
        super().__init__(f"{capability}: {message}")
        self.capability = capability
        self.partial_text = partial_text


class CapabilityTimeoutError(CapabilityError):
    """A capability call exceeded its bounded wait."""


class LimiterBackendError(AssistantError):
    """The usage counter store could not be reached."""


class ProgrammerError(RuntimeError):
    """An internal invariant was violated. Never expected in correct operation."""


class UnknownTierError(ProgrammerError):
    """A tier number or result variant outside the supported set."""


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


_RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "too many requests", "429", "quota")
_TRANSIENT_MARKERS = ("503", "502", "504", "unavailable", "connection reset", "temporarily", "overloaded")
_PERMANENT_MARKERS = ("401", "403", "invalid api key", "unauthorized", "forbidden", "400", "invalid request")


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify a capability error to decide whether it is worth retrying."""
    if isinstance(exc, (CapabilityTimeoutError, TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ErrorKind.RATE_LIMIT
        if status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorKind.TRANSIENT

    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    if any(marker in message for marker in _PERMANENT_MARKERS):
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in {ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT, ErrorKind.TIMEOUT}
