"""Server-sent event channel with an explicit open/closing/closed lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

from tiered_assistant.config import StreamConfig
from tiered_assistant.types import Source

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

_END = object()


class ChannelState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


class SSEChannel:
    """Ordered event channel between one producer and one HTTP response.

    - OPEN: `send` enqueues a frame.
    - CLOSING: no new frames are accepted; queued frames still drain.
    - CLOSED: nothing is delivered; `send` is a no-op.

    A frame that would push the stream past `max_bytes` is replaced by a
    single `error` event and the channel starts closing.
    """

    def __init__(self, config: StreamConfig | None = None) -> None:
        self.config = config or StreamConfig()
        self.state = ChannelState.OPEN
        self.bytes_written = 0
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self.state is ChannelState.OPEN

    async def send(self, event: str, data: Any) -> bool:
        if self.state is not ChannelState.OPEN:
            return False

        frame = format_sse(event, data)
        size = len(frame.encode("utf-8"))
        if self.bytes_written + size > self.config.max_bytes:
            logger.warning("Stream exceeded %d bytes; closing channel", self.config.max_bytes)
            self._queue.put_nowait(
                format_sse(
                    "error",
                    {"code": "stream_too_large", "message": "Response exceeded the stream size limit."},
                )
            )
            await self.close()
            return False

        self.bytes_written += size
        self._queue.put_nowait(frame)
        return True

    async def close(self) -> None:
        if self.state is not ChannelState.OPEN:
            return
        self.state = ChannelState.CLOSING
        self._queue.put_nowait(_END)

    def abort(self) -> None:
        """Close immediately, dropping anything not yet delivered."""
        if self.state is ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=self.config.heartbeat_seconds)
            except asyncio.TimeoutError:
                if self.state is ChannelState.OPEN:
                    yield KEEPALIVE_FRAME
                    continue
                return
            if item is _END or self.state is ChannelState.CLOSED:
                self.state = ChannelState.CLOSED
                return
            yield item


async def relay(
    channel: SSEChannel,
    producer: asyncio.Task[Any],
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """Deliver `channel` frames to one client.

    The client is checked between frames. On disconnect or a broken connection
    the channel is aborted and `producer` cancelled, which abandons in-flight
    generation and retrieval.
    """
    try:
        async for frame in channel.frames():
            if await is_disconnected():
                logger.info("Client disconnected during stream")
                break
            yield frame
    except (BrokenPipeError, ConnectionResetError):
        logger.info("Stream connection lost")
    finally:
        channel.abort()
        if not producer.done():
            producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer


class ChannelSink:
    """Forwards executor output to a channel as `progress`, `sources` and `token` events."""

    def __init__(self, channel: SSEChannel) -> None:
        self.channel = channel

    async def on_sources(self, sources: list[Source]) -> None:
        await self.channel.send("sources", {"sources": [source.to_payload() for source in sources]})

    async def on_token(self, text: str) -> None:
        await self.channel.send("token", {"content": text})

    async def on_progress(self, event: dict[str, Any]) -> None:
        await self.channel.send("progress", event)
