"""Reasoning/content demultiplexing for streamed deltas.

A single chat-completion stream interleaves two logical outputs: the model's
reasoning ("thinking") text and its final answer. ``DualChannelAccumulator``
splits DeltaChunks into two independently consumable async channels and
keeps a running buffer for each.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Optional

from ..core.timing_logger import timed, timing_mark
from .constants import REASONING_MARKER
from .sse_parser import DeltaChunk

LOGGER = logging.getLogger(__name__)


class _Closed:
    __slots__ = ("error",)

    def __init__(self, error: Optional[BaseException]) -> None:
        self.error = error


class StreamChannel:
    """Single-producer, single-consumer text channel with a close signal.

    Iterating yields emissions in the order they were pushed and stops after
    ``close()``. When closed with an error, iteration raises it after the
    already-queued emissions have been delivered.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[str | _Closed] = asyncio.Queue()
        self._closed = False
        self.emitted = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, text: str) -> None:
        if self._closed:
            raise RuntimeError(f"{self.name} channel is closed")
        self.emitted += 1
        self._queue.put_nowait(text)

    def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_Closed(error))

    def discard_pending(self) -> int:
        """Drop queued emissions that no consumer has taken yet."""
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(item, _Closed):
                self._queue.put_nowait(item)
                break
            dropped += 1
        return dropped

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if isinstance(item, _Closed):
            # Leave the marker for any later reader.
            self._queue.put_nowait(item)
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        return item


class DualChannelAccumulator:
    """Split DeltaChunks into a reasoning channel and a content channel.

    For every chunk, reasoning is handled before content:
    - non-empty ``reasoning_content`` is appended to ``reasoning_buffer`` and
      emitted on ``reasoning``; the first such emission of the turn carries
      the ``[Reasoning]: `` marker
    - non-empty ``content`` is appended to ``content_buffer`` and emitted on
      ``content`` unprefixed

    Both channels close when the upstream chunk sequence ends.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER
        self.reasoning = StreamChannel("reasoning")
        self.content = StreamChannel("content")
        self.reasoning_buffer = ""
        self.content_buffer = ""
        self.finish_reason: Optional[str] = None
        self._marker_sent = False
        self._pump_task: Optional[asyncio.Task[None]] = None

    def feed(self, chunk: DeltaChunk) -> tuple[Optional[str], Optional[str]]:
        """Apply one chunk and return ``(reasoning_emission, content_emission)``.

        Emissions are also pushed onto the channels unless they are closed.
        """
        reasoning_emission: Optional[str] = None
        content_emission: Optional[str] = None

        if chunk.reasoning_content:
            self.reasoning_buffer += chunk.reasoning_content
            if self._marker_sent:
                reasoning_emission = chunk.reasoning_content
            else:
                reasoning_emission = REASONING_MARKER + chunk.reasoning_content
                self._marker_sent = True
                timing_mark("first_reasoning_token")
            if not self.reasoning.closed:
                self.reasoning.push(reasoning_emission)

        if chunk.content:
            if not self.content_buffer:
                timing_mark("first_content_token")
            self.content_buffer += chunk.content
            content_emission = chunk.content
            if not self.content.closed:
                self.content.push(content_emission)

        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        return reasoning_emission, content_emission

    @timed
    async def consume(self, chunks: AsyncIterable[DeltaChunk]) -> None:
        """Feed every chunk from ``chunks``, then close both channels.

        Upstream errors are forwarded to both channel consumers. Cancellation
        closes the channels cleanly.
        """
        error: Optional[BaseException] = None
        try:
            async for chunk in chunks:
                self.feed(chunk)
        except Exception as exc:
            self.logger.error("Delta stream failed: %s", exc)
            error = exc
        finally:
            self.reasoning.close(error)
            self.content.close(error)
            self.logger.debug(
                "Accumulator finished: reasoning=%d chars content=%d chars finish_reason=%s",
                len(self.reasoning_buffer),
                len(self.content_buffer),
                self.finish_reason,
            )

    def start(self, chunks: AsyncIterable[DeltaChunk]) -> asyncio.Task[None]:
        """Run :meth:`consume` as a background task and return it."""
        if self._pump_task is not None:
            raise RuntimeError("accumulator already started")
        self._pump_task = asyncio.create_task(self.consume(chunks), name="delta-accumulator")
        return self._pump_task

    async def aclose(self) -> None:
        """Stop the pump and discard emissions nobody consumed yet."""
        task = self._pump_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        dropped = self.reasoning.discard_pending() + self.content.discard_pending()
        if dropped:
            self.logger.debug("Discarded %d unconsumed emission(s)", dropped)
        self.reasoning.close()
        self.content.close()
