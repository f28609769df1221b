"""Core infrastructure module.

Foundation services required by all domains:
- Configuration schemas (ClientValves, GenerationParameters)
- Error taxonomy and message formatting
- Per-turn logging
- Pure utility functions
"""

from .config import ClientValves, GenerationParameters, build_base_url, LOGGER
from .errors import (
    LMStudioError,
    RequestValidationError,
    ServerConnectionError,
    SslError,
    ServerError,
    NoContentError,
    UnexpectedError,
    classify_transport_error,
    format_user_error,
)
from .logging_system import SessionLogger

__all__ = [
    "ClientValves",
    "GenerationParameters",
    "build_base_url",
    "LOGGER",
    "LMStudioError",
    "RequestValidationError",
    "ServerConnectionError",
    "SslError",
    "ServerError",
    "NoContentError",
    "UnexpectedError",
    "classify_transport_error",
    "format_user_error",
    "SessionLogger",
]
