"""Server-Sent Events (SSE) parsing for chat-completion streams.

This module turns the raw line stream of a streaming chat completion into
DeltaChunk objects:
- ``data:`` line extraction (everything else is ignored)
- ``[DONE]`` termination
- JSON decoding of each frame into the first choice's delta
- Tolerance of blank, partial and corrupt frames (skipped, never raised)
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, AsyncIterable, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..core.timing_logger import timed, timing_mark
from ..core.utils import _truncate
from .constants import SSE_DATA_PREFIX, SSE_DONE_SENTINEL

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Frame Schemas
# -----------------------------------------------------------------------------

class ChunkDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    content: Optional[str] = None
    # llama.cpp and LM Studio use ``reasoning_content``; some gateways send ``reasoning``.
    reasoning_content: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("reasoning_content", "reasoning"),
    )


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: Optional[int] = None
    finish_reason: Optional[str] = None
    logprobs: Any = None
    delta: ChunkDelta = Field(default_factory=ChunkDelta)


class ChatCompletionChunk(BaseModel):
    """One ``chat.completion.chunk`` frame."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    object: Optional[str] = None
    created: Optional[int] = None
    model: Optional[str] = None
    system_fingerprint: Optional[str] = None
    choices: List[ChunkChoice] = Field(default_factory=list)


class DeltaChunk(BaseModel):
    """The part of a frame the accumulator consumes. Never persisted."""

    model_config = ConfigDict(frozen=True)

    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    finish_reason: Optional[str] = None


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------

class _Done:
    """Marker returned by ``parse_line`` for the ``[DONE]`` frame."""


DONE = _Done()


class SSEParser:
    """Line-oriented SSE parser for OpenAI-compatible chat-completion streams.

    One parser instance may be reused across requests; it keeps only
    per-call counters, which are reset at the start of every ``parse``.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER
        self.frames_parsed = 0
        self.frames_skipped = 0

    def parse_line(self, line: Union[str, bytes]) -> Union[DeltaChunk, _Done, None]:
        """Decode one line.

        Returns a DeltaChunk for a valid frame, ``DONE`` for the terminator
        and None for anything that should be ignored.
        """
        if isinstance(line, (bytes, bytearray)):
            try:
                line = bytes(line).decode("utf-8")
            except UnicodeDecodeError:
                self.frames_skipped += 1
                self.logger.warning("Skipping SSE line that is not valid UTF-8")
                return None
        text = line.rstrip("\r\n")
        if not text.startswith(SSE_DATA_PREFIX):
            # Blank event separators, ``:`` comments, ``event:``/``id:`` fields.
            return None
        data = text[len(SSE_DATA_PREFIX):]
        if data.startswith(" "):
            data = data[1:]
        data = data.strip()
        if not data:
            return None
        if data == SSE_DONE_SENTINEL:
            return DONE

        try:
            frame = ChatCompletionChunk.model_validate_json(data)
        except ValidationError as exc:
            self.frames_skipped += 1
            self.logger.warning(
                "Chunk parse failed (%d error(s)): %s",
                exc.error_count(),
                _truncate(data, 120),
            )
            return None
        if not frame.choices:
            # Usage-only trailers and keep-alives carry no delta.
            return None
        choice = frame.choices[0]
        self.frames_parsed += 1
        return DeltaChunk(
            content=choice.delta.content,
            reasoning_content=choice.delta.reasoning_content,
            finish_reason=choice.finish_reason,
        )

    @timed
    async def parse(self, lines: AsyncIterable[Union[str, bytes]]) -> AsyncGenerator[DeltaChunk, None]:
        """Yield one DeltaChunk per valid frame, in arrival order.

        Stops at ``[DONE]`` or when ``lines`` is exhausted. The source is not
        closed here; whoever opened the connection owns it.
        """
        self.frames_parsed = 0
        self.frames_skipped = 0
        first = True
        async for line in lines:
            result = self.parse_line(line)
            if result is None:
                continue
            if result is DONE:
                self.logger.debug("SSE stream signalled [DONE]")
                break
            if first:
                timing_mark("sse_first_frame")
                first = False
            yield result  # type: ignore[misc]
        self.logger.debug(
            "SSE stream finished: %d frame(s) parsed, %d skipped",
            self.frames_parsed,
            self.frames_skipped,
        )
