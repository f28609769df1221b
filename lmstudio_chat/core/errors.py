"""Error taxonomy and user-facing error formatting.

This module handles all error-related functionality:
- LMStudioError hierarchy (validation, connection, TLS, server, no content, unexpected)
- Classification of raw aiohttp/asyncio exceptions, done once at the transport boundary
- Rendering of human-readable messages from the configured templates

Cancellation is not an error: ``asyncio.CancelledError`` is never classified or
formatted here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
from typing import TYPE_CHECKING, Any, Optional

import aiohttp

from .utils import _extract_server_error_message, _render_error_template

if TYPE_CHECKING:
    from .config import ClientValves

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exception Hierarchy
# -----------------------------------------------------------------------------

class LMStudioError(RuntimeError):
    """Base class for every error surfaced past the transport boundary."""

    kind = "unexpected"

    def __init__(self, message: str = "", *, detail: Optional[str] = None) -> None:
        self.detail = (detail or "").strip() or None
        super().__init__(message or self.detail or self.__class__.__name__)

    def template_values(self) -> dict[str, Any]:
        return {"detail": self.detail or ""}


class RequestValidationError(LMStudioError):
    """Rejected before any network call (no model selected, empty prompt, bad settings)."""

    kind = "validation"

    def __init__(self, message: str) -> None:
        super().__init__(message, detail=message)


class ServerConnectionError(LMStudioError):
    """DNS failure, refused connection, dropped connection or connect timeout."""

    kind = "connection"


class SslError(LMStudioError):
    """TLS handshake or certificate failure."""

    kind = "ssl"


class ServerError(LMStudioError):
    """The server answered with a non-2xx status."""

    kind = "server"

    def __init__(self, status: int, reason: str = "", *, body: Optional[str] = None) -> None:
        self.status = int(status)
        self.reason = (reason or "").strip()
        self.body = body or ""
        server_message = _extract_server_error_message(self.body)
        summary = f"Server returned HTTP {self.status}" + (f" {self.reason}" if self.reason else "")
        super().__init__(summary, detail=server_message)

    def template_values(self) -> dict[str, Any]:
        values = super().template_values()
        values.update({"status": self.status, "reason": self.reason})
        return values


class NoContentError(LMStudioError):
    """A decoded response carried no usable choice/message."""

    kind = "no_content"

    def __init__(self, message: str = "No content in response") -> None:
        super().__init__(message)


class UnexpectedError(LMStudioError):
    """Anything the transport could not place in a more specific category."""

    kind = "unexpected"


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

def classify_transport_error(exc: BaseException) -> LMStudioError:
    """Map a raw transport exception onto the taxonomy.

    Already-classified errors are returned unchanged. ``asyncio.CancelledError``
    must be re-raised by callers before reaching this function.
    """
    if isinstance(exc, LMStudioError):
        return exc
    if isinstance(exc, (aiohttp.ClientConnectorCertificateError, aiohttp.ClientSSLError, ssl.SSLError)):
        return SslError("TLS connection to the server failed", detail=str(exc))
    # ContentTypeError subclasses ClientResponseError but is a decoding problem.
    if isinstance(exc, (aiohttp.ContentTypeError, json.JSONDecodeError, UnicodeDecodeError)):
        return UnexpectedError("Could not decode the server response", detail=str(exc))
    if isinstance(exc, aiohttp.ClientResponseError):
        return ServerError(exc.status, exc.message or "")
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ServerConnectionError("Timed out waiting for the server", detail=str(exc) or "timeout")
    if isinstance(exc, (aiohttp.ClientConnectionError, ConnectionError)):
        return ServerConnectionError("Could not connect to the server", detail=str(exc))
    return UnexpectedError(f"Unexpected {type(exc).__name__}", detail=str(exc))


# -----------------------------------------------------------------------------
# Formatting
# -----------------------------------------------------------------------------

def _template_for(error: LMStudioError, valves: "ClientValves") -> str:
    return {
        "validation": valves.VALIDATION_ERROR_TEMPLATE,
        "connection": valves.CONNECTION_ERROR_TEMPLATE,
        "ssl": valves.SSL_ERROR_TEMPLATE,
        "server": valves.SERVER_ERROR_TEMPLATE,
        "no_content": valves.NO_CONTENT_ERROR_TEMPLATE,
    }.get(error.kind, valves.UNEXPECTED_ERROR_TEMPLATE)


def format_user_error(error: LMStudioError, valves: "ClientValves") -> str:
    """Render ``error`` as the human-readable string shown to the user."""
    values = error.template_values()
    values.setdefault("base_url", valves.BASE_URL)
    rendered = _render_error_template(_template_for(error, valves), values)
    return rendered or str(error)
