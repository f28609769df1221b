"""Configuration for the LM Studio chat client.

This module contains the configuration schemas and constants:
- ClientValves: connection, timeout, storage, logging and message templates
- GenerationParameters: the per-send snapshot of sampling options
- build_base_url: validation for a user-entered server address
- Title generation prompt and parameters
"""

from __future__ import annotations

import logging
import os
from typing import Any, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import _normalize_optional_str, _normalize_string_list

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_DEFAULT_BASE_URL = "http://localhost:1234"
_DEFAULT_PORT = 1234
_MAX_STOP_SEQUENCES = 4
_MAX_COMPLETION_TOKENS_LIMIT = 131072

PREFERENCE_BASE_URL = "baseURL"
PREFERENCE_SELECTED_MODEL = "lastSelectedModelID"

TITLE_PROMPT = (
    "Provide a very short, descriptive title for this message. "
    "Limit to max 6 words and focus only on the main topic or purpose.\n"
    "Respond only with the title."
)

DEFAULT_VALIDATION_ERROR_TEMPLATE = "{detail}"

DEFAULT_CONNECTION_ERROR_TEMPLATE = (
    "Failed to get a response: could not connect to the server.\n"
    "{{#if base_url}}\n"
    "Server: {base_url}\n"
    "{{/if}}\n"
    "Check that the server is running and reachable, then try again.\n"
    "{{#if detail}}\n"
    "Details: {detail}\n"
    "{{/if}}"
)

DEFAULT_SSL_ERROR_TEMPLATE = (
    "Failed to get a response: the secure connection could not be established.\n"
    "{{#if base_url}}\n"
    "Server: {base_url}\n"
    "{{/if}}\n"
    "If the server does not use TLS, switch the protocol to http; otherwise check its certificate.\n"
    "{{#if detail}}\n"
    "Details: {detail}\n"
    "{{/if}}"
)

DEFAULT_SERVER_ERROR_TEMPLATE = (
    "Failed to get a response: the server returned HTTP {status}.\n"
    "{{#if detail}}\n"
    "Server message: {detail}\n"
    "{{/if}}"
)

DEFAULT_NO_CONTENT_ERROR_TEMPLATE = "Failed to get a response: the server returned no content."

DEFAULT_UNEXPECTED_ERROR_TEMPLATE = (
    "Failed to get a response.\n"
    "{{#if detail}}\n"
    "Details: {detail}\n"
    "{{/if}}"
)


def _resolve_log_level_default() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    value = (os.getenv("LMSTUDIO_LOG_LEVEL") or "INFO").strip().upper()
    if value in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return value  # type: ignore[return-value]
    return "INFO"


def _resolve_base_url_default() -> str:
    return (os.getenv("LMSTUDIO_BASE_URL") or "").strip() or _DEFAULT_BASE_URL


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------

class ClientValves(BaseModel):
    """Process-wide configuration for the chat client."""

    model_config = ConfigDict(validate_assignment=True)

    # Connection
    BASE_URL: str = Field(
        default_factory=_resolve_base_url_default,
        validate_default=True,
        description="Inference server base URL (scheme, host and port). Defaults to LMSTUDIO_BASE_URL.",
    )
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection before failing.",
    )
    REQUEST_TIMEOUT_SECONDS: int = Field(
        default=60,
        ge=1,
        description=(
            "Total timeout for bounded requests (model listing, non-streaming completions, titles). "
            "Streaming completions never time out; they end by cancellation or connection close."
        ),
    )

    # Storage
    DATABASE_URL: str = Field(
        default="sqlite://",
        description="SQLAlchemy URL of the conversation store. The default keeps conversations in memory.",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Minimum level written to the console for each turn. Defaults to LMSTUDIO_LOG_LEVEL.",
    )
    SESSION_LOG_MAX_LINES: int = Field(
        default=2000,
        ge=100,
        le=200000,
        description="Maximum structured log events retained in memory per turn.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=False,
        description="Write function timing events (JSONL) for each turn to TIMING_LOG_FILE.",
    )
    TIMING_LOG_FILE: str = Field(
        default="logs/timing.jsonl",
        description="Destination of timing events when ENABLE_TIMING_LOG is on.",
    )

    # User-facing messages
    VALIDATION_ERROR_TEMPLATE: str = Field(default=DEFAULT_VALIDATION_ERROR_TEMPLATE)
    CONNECTION_ERROR_TEMPLATE: str = Field(default=DEFAULT_CONNECTION_ERROR_TEMPLATE)
    SSL_ERROR_TEMPLATE: str = Field(default=DEFAULT_SSL_ERROR_TEMPLATE)
    SERVER_ERROR_TEMPLATE: str = Field(default=DEFAULT_SERVER_ERROR_TEMPLATE)
    NO_CONTENT_ERROR_TEMPLATE: str = Field(default=DEFAULT_NO_CONTENT_ERROR_TEMPLATE)
    UNEXPECTED_ERROR_TEMPLATE: str = Field(default=DEFAULT_UNEXPECTED_ERROR_TEMPLATE)

    @field_validator("BASE_URL")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        text = (value or "").strip().rstrip("/")
        parts = urlsplit(text)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            raise ValueError(f"BASE_URL must be an http(s) URL with a host, got {value!r}")
        return text


# -----------------------------------------------------------------------------
# Generation Parameters
# -----------------------------------------------------------------------------

class GenerationParameters(BaseModel):
    """Snapshot of sampling options for one send.

    Every field is optional. Unset fields are left out of the request body so
    the server applies its own defaults.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, alias="topP")
    max_tokens: Optional[int] = Field(default=None, ge=1, le=_MAX_COMPLETION_TOKENS_LIMIT, alias="maxTokens")
    presence_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0, alias="presencePenalty")
    frequency_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0, alias="frequencyPenalty")
    repeat_penalty: Optional[float] = Field(default=None, ge=0.0, le=2.0, alias="repeatPenalty")
    seed: Optional[str] = None
    stop_sequences: Optional[list[str]] = Field(default=None, alias="stopSequences")
    logit_bias: Optional[dict[str, float]] = Field(default=None, alias="logitBias")
    stream: Optional[bool] = None

    @field_validator("seed", mode="before")
    @classmethod
    def _normalize_seed(cls, value: Any) -> Optional[str]:
        return _normalize_optional_str(value)

    @field_validator("stop_sequences", mode="before")
    @classmethod
    def _normalize_stop_sequences(cls, value: Any) -> Optional[list[str]]:
        # The settings screen stores stop sequences as one comma-separated string.
        items = _normalize_string_list(value)
        if not items:
            return None
        if len(items) > _MAX_STOP_SEQUENCES:
            raise ValueError(f"At most {_MAX_STOP_SEQUENCES} stop sequences are supported")
        return items

    @property
    def streaming(self) -> bool:
        """Streaming is the default when the flag is unset."""
        return self.stream is not False

    @classmethod
    def app_defaults(cls) -> "GenerationParameters":
        """Return the values the settings screen resets to."""
        return cls(
            temperature=1.0,
            top_p=1.0,
            max_tokens=1024,
            presence_penalty=0.0,
            frequency_penalty=0.0,
            repeat_penalty=1.0,
            stream=True,
        )


TITLE_GENERATION_PARAMETERS = GenerationParameters(
    top_p=0.5,
    temperature=0.2,
    max_tokens=15,
    presence_penalty=0.5,
    frequency_penalty=0.5,
    stream=False,
)


# -----------------------------------------------------------------------------
# Server Address
# -----------------------------------------------------------------------------

def build_base_url(scheme: str, host: str, port: int | str | None = _DEFAULT_PORT) -> str:
    """Assemble ``scheme://host:port`` from the settings form fields.

    Raises:
        ValueError: when the host is empty, the port is not a positive integer
            or the scheme is not http/https.
    """
    scheme_value = (scheme or "").strip().lower()
    host_value = (host or "").strip()
    try:
        port_value = int(str(port).strip()) if port not in (None, "") else _DEFAULT_PORT
    except ValueError:
        port_value = 0
    if not host_value or port_value <= 0 or port_value > 65535:
        raise ValueError("Invalid server address or port.")
    if scheme_value not in {"http", "https"}:
        raise ValueError("Failed to construct a valid URL.")
    if "/" in host_value or ":" in host_value or " " in host_value:
        raise ValueError("Invalid server address or port.")
    return f"{scheme_value}://{host_value}:{port_value}"
