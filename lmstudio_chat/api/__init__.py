"""API subsystem.

This module provides API integration with the LM Studio server:
- Request body construction for chat completions
- The transport client (api.gateway subpackage)
"""

from __future__ import annotations

from .transforms import ChatCompletionsBody, build_chat_completions_body

# The transport client is accessed via the api.gateway subpackage

__all__ = [
    "ChatCompletionsBody",
    "build_chat_completions_body",
]
