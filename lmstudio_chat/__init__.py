"""Streaming chat client for LM Studio's OpenAI-compatible API.

This package provides a chat-completion session client, including:
- Domain subsystems: streaming (SSE parsing, reasoning/content split), storage
- Infrastructure modules: config, errors, logging, timing
- Transport: api.gateway (LMStudioApiClient)
- Orchestrator: requests (SessionController) and chat (ChatApplication)

Attributes are loaded lazily on first access so that importing a single
subpackage does not pull in the whole client.
"""

from typing import TYPE_CHECKING

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("lmstudio-chat-client")
except Exception:
    __version__ = "0.1.0"  # Fallback if not installed as package

# -----------------------------------------------------------------------------
# Type hints only (no runtime import)
# -----------------------------------------------------------------------------

if TYPE_CHECKING:
    from .chat import ChatApplication
    from .core.config import ClientValves, GenerationParameters, build_base_url
    from .core.errors import (
        LMStudioError,
        RequestValidationError,
        ServerConnectionError,
        SslError,
        ServerError,
        NoContentError,
        UnexpectedError,
    )
    from .core.logging_system import SessionLogger
    from .api.gateway.lmstudio_client import LMStudioApiClient, LineStream
    from .models.registry import LMStudioModel, ModelRegistry
    from .storage.persistence import Conversation, ConversationStore, Message
    from .streaming.sse_parser import DeltaChunk, SSEParser
    from .streaming.accumulator import DualChannelAccumulator
    from .streaming.constants import REASONING_MARKER
    from .requests.orchestrator import SessionController, SessionState, TurnResult


# -----------------------------------------------------------------------------
# Public API - All lazy loaded
# -----------------------------------------------------------------------------

__all__ = [
    # Application
    "ChatApplication",

    # Configuration
    "ClientValves",
    "GenerationParameters",
    "build_base_url",

    # Error handling
    "LMStudioError",
    "RequestValidationError",
    "ServerConnectionError",
    "SslError",
    "ServerError",
    "NoContentError",
    "UnexpectedError",

    # Transport and models
    "LMStudioApiClient",
    "LineStream",
    "LMStudioModel",
    "ModelRegistry",

    # Storage
    "Conversation",
    "ConversationStore",
    "Message",

    # Streaming
    "DeltaChunk",
    "SSEParser",
    "DualChannelAccumulator",
    "REASONING_MARKER",

    # Session
    "SessionController",
    "SessionState",
    "TurnResult",

    # Logging
    "SessionLogger",
]


# -----------------------------------------------------------------------------
# Lazy Loading Implementation
# -----------------------------------------------------------------------------

# Cache for loaded attributes
_cache: dict = {}

# Mapping of attribute name to (module_path, attr_name_in_module)
_LAZY_IMPORTS = {
    "ChatApplication": (".chat", "ChatApplication"),

    "ClientValves": (".core.config", "ClientValves"),
    "GenerationParameters": (".core.config", "GenerationParameters"),
    "build_base_url": (".core.config", "build_base_url"),

    "LMStudioError": (".core.errors", "LMStudioError"),
    "RequestValidationError": (".core.errors", "RequestValidationError"),
    "ServerConnectionError": (".core.errors", "ServerConnectionError"),
    "SslError": (".core.errors", "SslError"),
    "ServerError": (".core.errors", "ServerError"),
    "NoContentError": (".core.errors", "NoContentError"),
    "UnexpectedError": (".core.errors", "UnexpectedError"),

    "LMStudioApiClient": (".api.gateway.lmstudio_client", "LMStudioApiClient"),
    "LineStream": (".api.gateway.lmstudio_client", "LineStream"),
    "LMStudioModel": (".models.registry", "LMStudioModel"),
    "ModelRegistry": (".models.registry", "ModelRegistry"),

    "Conversation": (".storage.persistence", "Conversation"),
    "ConversationStore": (".storage.persistence", "ConversationStore"),
    "Message": (".storage.persistence", "Message"),

    "DeltaChunk": (".streaming.sse_parser", "DeltaChunk"),
    "SSEParser": (".streaming.sse_parser", "SSEParser"),
    "DualChannelAccumulator": (".streaming.accumulator", "DualChannelAccumulator"),
    "REASONING_MARKER": (".streaming.constants", "REASONING_MARKER"),

    "SessionController": (".requests.orchestrator", "SessionController"),
    "SessionState": (".requests.orchestrator", "SessionState"),
    "TurnResult": (".requests.orchestrator", "TurnResult"),

    "SessionLogger": (".core.logging_system", "SessionLogger"),
}


def __getattr__(name: str):
    """Lazy-load public attributes on first access."""
    if name in _cache:
        return _cache[name]

    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        import importlib
        module = importlib.import_module(module_path, __name__)
        value = getattr(module, attr_name)
        _cache[name] = value
        globals()[name] = value
        return value

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(set(globals()) | set(__all__))
