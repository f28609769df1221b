"""LM Studio API gateway.

This module provides the HTTP transport for the server's OpenAI-compatible API:
- LMStudioApiClient: /v1/models and /v1/chat/completions
- LineStream: cancellable line sequence of a streaming response
"""

from __future__ import annotations

from .lmstudio_client import LMStudioApiClient, LineStream

__all__ = [
    "LMStudioApiClient",
    "LineStream",
]
