"""Tests for the reasoning/content channel split."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest

from lmstudio_chat.streaming.accumulator import DualChannelAccumulator, StreamChannel
from lmstudio_chat.streaming.constants import REASONING_MARKER
from lmstudio_chat.streaming.sse_parser import DeltaChunk


async def _chunks(*items: DeltaChunk) -> AsyncIterator[DeltaChunk]:
    for item in items:
        yield item


async def _drain(channel: StreamChannel) -> list[str]:
    return [emission async for emission in channel]


class TestFeed:
    def test_first_reasoning_emission_carries_marker(self) -> None:
        acc = DualChannelAccumulator()
        first, _ = acc.feed(DeltaChunk(reasoning_content="Because"))
        second, _ = acc.feed(DeltaChunk(reasoning_content=" X"))
        assert first == REASONING_MARKER + "Because"
        assert second == " X"
        assert acc.reasoning_buffer == "Because X"

    def test_content_is_never_prefixed(self) -> None:
        acc = DualChannelAccumulator()
        _, content = acc.feed(DeltaChunk(content="Answer"))
        assert content == "Answer"
        assert acc.content_buffer == "Answer"

    def test_chunk_with_both_fields(self) -> None:
        acc = DualChannelAccumulator()
        reasoning, content = acc.feed(DeltaChunk(reasoning_content="think", content="say"))
        assert reasoning == REASONING_MARKER + "think"
        assert content == "say"
        assert acc.reasoning.emitted == 1
        assert acc.content.emitted == 1

    def test_empty_fragments_ignored(self) -> None:
        acc = DualChannelAccumulator()
        assert acc.feed(DeltaChunk(content="", reasoning_content="")) == (None, None)
        assert acc.feed(DeltaChunk()) == (None, None)
        assert acc.reasoning.emitted == 0
        assert acc.content.emitted == 0

    def test_marker_not_consumed_by_content(self) -> None:
        acc = DualChannelAccumulator()
        acc.feed(DeltaChunk(content="first"))
        reasoning, _ = acc.feed(DeltaChunk(reasoning_content="late"))
        assert reasoning == REASONING_MARKER + "late"

    def test_finish_reason_recorded(self) -> None:
        acc = DualChannelAccumulator()
        acc.feed(DeltaChunk(content="x", finish_reason="stop"))
        assert acc.finish_reason == "stop"


class TestConsume:
    @pytest.mark.asyncio
    async def test_buffers_equal_concatenated_fragments(self) -> None:
        chunks = [
            DeltaChunk(reasoning_content="a"),
            DeltaChunk(content="1"),
            DeltaChunk(reasoning_content="b", content="2"),
            DeltaChunk(content=""),
            DeltaChunk(reasoning_content="c"),
            DeltaChunk(content="3"),
        ]
        acc = DualChannelAccumulator()
        await acc.consume(_chunks(*chunks))

        assert acc.reasoning_buffer == "abc"
        assert acc.content_buffer == "123"
        assert await _drain(acc.reasoning) == [REASONING_MARKER + "a", "b", "c"]
        assert await _drain(acc.content) == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_channels_drained_concurrently(self) -> None:
        acc = DualChannelAccumulator()
        acc.start(_chunks(DeltaChunk(content="Hel"), DeltaChunk(content="lo")))
        reasoning, content = await asyncio.gather(_drain(acc.reasoning), _drain(acc.content))
        assert reasoning == []
        assert content == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_upstream_error_reaches_both_consumers(self) -> None:
        async def failing() -> AsyncIterator[DeltaChunk]:
            yield DeltaChunk(content="partial")
            raise RuntimeError("boom")

        acc = DualChannelAccumulator()
        await acc.consume(failing())

        received: list[str] = []
        with pytest.raises(RuntimeError, match="boom"):
            async for emission in acc.content:
                received.append(emission)
        assert received == ["partial"]
        with pytest.raises(RuntimeError, match="boom"):
            await _drain(acc.reasoning)

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self) -> None:
        acc = DualChannelAccumulator()
        task = acc.start(_chunks())
        with pytest.raises(RuntimeError):
            acc.start(_chunks())
        await task

    @pytest.mark.asyncio
    async def test_aclose_stops_pump_and_discards_pending(self) -> None:
        gate = asyncio.Event()

        async def slow() -> AsyncIterator[DeltaChunk]:
            yield DeltaChunk(content="kept?")
            await gate.wait()
            yield DeltaChunk(content="never")

        acc = DualChannelAccumulator()
        task = acc.start(slow())
        while acc.content.emitted == 0:
            await asyncio.sleep(0)

        await acc.aclose()

        assert task.done()
        assert acc.content.closed and acc.reasoning.closed
        assert await _drain(acc.content) == []
        assert acc.content_buffer == "kept?"


class TestStreamChannel:
    @pytest.mark.asyncio
    async def test_push_after_close_rejected(self) -> None:
        channel = StreamChannel("content")
        channel.close()
        with pytest.raises(RuntimeError):
            channel.push("x")

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_sticky(self) -> None:
        channel = StreamChannel("content")
        channel.push("a")
        channel.close()
        channel.close(RuntimeError("ignored"))
        assert await _drain(channel) == ["a"]
        assert await _drain(channel) == []
