"""Streaming response processing subsystem.

This package contains streaming-related functionality:
- sse_parser: Server-Sent Events line parsing into DeltaChunks
- accumulator: reasoning/content channel split with running buffers
- constants: SSE framing literals and the reasoning marker
"""

from .accumulator import DualChannelAccumulator, StreamChannel
from .constants import REASONING_MARKER
from .sse_parser import DeltaChunk, SSEParser

__all__ = [
    "DualChannelAccumulator",
    "StreamChannel",
    "REASONING_MARKER",
    "DeltaChunk",
    "SSEParser",
]
