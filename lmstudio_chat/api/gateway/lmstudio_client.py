"""HTTP transport for the LM Studio OpenAI-compatible API.

The client issues every request the chat session needs:
- ``GET /v1/models`` for the model catalog
- ``POST /v1/chat/completions`` in request/response mode (bounded timeout)
- ``POST /v1/chat/completions`` in streaming mode (no timeout), returned as a
  cancellable, single-pass sequence of raw response lines

Raw aiohttp/asyncio exceptions are classified here, once, so nothing above
this module ever sees them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Iterable, List, Optional

import aiohttp
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ...core.config import ClientValves, GenerationParameters
from ...core.errors import (
    LMStudioError,
    NoContentError,
    ServerError,
    UnexpectedError,
    classify_transport_error,
)
from ...core.timing_logger import timed, timing_mark
from ...models.registry import LMStudioModel, ModelsResponse
from ...requests.debug import _debug_print_request, _read_error_body
from ...streaming.constants import SSE_CONTENT_TYPE
from ..transforms import ConversationTurn, build_chat_completions_body

LOGGER = logging.getLogger(__name__)

_MODELS_PATH = "/v1/models"
_CHAT_COMPLETIONS_PATH = "/v1/chat/completions"


# -----------------------------------------------------------------------------
# Non-streaming Response Schema
# -----------------------------------------------------------------------------

class CompletionMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    content: Optional[str] = None
    reasoning_content: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("reasoning_content", "reasoning"),
    )


class CompletionChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: Optional[int] = None
    finish_reason: Optional[str] = None
    message: Optional[CompletionMessage] = None


class ChatCompletionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    model: Optional[str] = None
    choices: Optional[List[CompletionChoice]] = None


# -----------------------------------------------------------------------------
# Line Stream
# -----------------------------------------------------------------------------

class LineStream:
    """Lazy, single-pass sequence of raw lines from a streaming response.

    The stream owns the HTTP response. Exhausting it returns the connection
    to the pool; :meth:`aclose` closes the connection so no further bytes are
    read. A connection that drops mid-body ends the sequence (logged, not
    raised).
    """

    def __init__(self, response: aiohttp.ClientResponse, *, logger: Optional[logging.Logger] = None) -> None:
        self._response = response
        self.logger = logger or LOGGER
        self._started = False
        self._closed = False
        self.lines_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def status(self) -> int:
        return self._response.status

    def __aiter__(self) -> AsyncGenerator[bytes, None]:
        if self._started:
            raise RuntimeError("LineStream can only be iterated once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[bytes, None]:
        buf = bytearray()
        try:
            async for chunk in self._response.content.iter_any():
                if self._closed:
                    break
                if not chunk:
                    continue
                if not self.lines_read and not buf:
                    timing_mark("stream_first_bytes")
                buf.extend(chunk)
                start_idx = 0
                while True:
                    newline_idx = buf.find(b"\n", start_idx)
                    if newline_idx == -1:
                        break
                    line = bytes(buf[start_idx:newline_idx]).rstrip(b"\r")
                    start_idx = newline_idx + 1
                    self.lines_read += 1
                    yield line
                    if self._closed:
                        return
                del buf[:start_idx]
            if buf and not self._closed:
                # Final line without a trailing newline.
                self.lines_read += 1
                yield bytes(buf).rstrip(b"\r")
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as exc:
            if not self._closed:
                self.logger.warning("Stream connection ended early after %d line(s): %s", self.lines_read, exc)
        finally:
            self._release()

    def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.release()

    async def aclose(self) -> None:
        """Stop reading and drop the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._response.close()
        self.logger.debug("Stream closed after %d line(s)", self.lines_read)


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------

class LMStudioApiClient:
    """Async client for one LM Studio server.

    The base URL is read from ``valves`` at the start of every call, so a
    change only affects requests issued afterwards.
    """

    def __init__(
        self,
        valves: Optional[ClientValves] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves or ClientValves()
        self.logger = logger or LOGGER
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self.valves.BASE_URL

    @base_url.setter
    def base_url(self, value: str) -> None:
        # validate_assignment runs the BASE_URL validator.
        self.valves.BASE_URL = value

    def _url(self, path: str) -> str:
        return f"{self.valves.BASE_URL}{path}"

    @timed
    def _create_http_session(self) -> aiohttp.ClientSession:
        """Return a ClientSession with bounded defaults; streaming overrides per request."""
        connector = aiohttp.TCPConnector(
            limit=10,
            limit_per_host=10,
            keepalive_timeout=75,
            ttl_dns_cache=300,
        )
        timeout = aiohttp.ClientTimeout(
            total=float(self.valves.REQUEST_TIMEOUT_SECONDS),
            connect=float(self.valves.HTTP_CONNECT_TIMEOUT_SECONDS),
        )
        self.logger.debug(
            "HTTP timeouts: connect=%ss total=%ss",
            self.valves.HTTP_CONNECT_TIMEOUT_SECONDS,
            self.valves.REQUEST_TIMEOUT_SECONDS,
        )
        return aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            json_serialize=json.dumps,
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._create_http_session()
            self._owns_session = True
        return self._session

    def _bounded_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=float(self.valves.REQUEST_TIMEOUT_SECONDS),
            connect=float(self.valves.HTTP_CONNECT_TIMEOUT_SECONDS),
        )

    def _streaming_timeout(self) -> aiohttp.ClientTimeout:
        # Generation may legitimately take minutes; only connecting is bounded.
        return aiohttp.ClientTimeout(
            total=None,
            connect=float(self.valves.HTTP_CONNECT_TIMEOUT_SECONDS),
            sock_read=None,
        )

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    @timed
    async def fetch_models(self) -> list[LMStudioModel]:
        """Return the models advertised by ``GET /v1/models``.

        Raises:
            ServerError: on a non-2xx status.
            LMStudioError: any other classified transport failure.
        """
        url = self._url(_MODELS_PATH)
        headers = {"Accept": "application/json"}
        _debug_print_request(url, headers, None, logger=self.logger)
        try:
            async with self._get_session().get(url, headers=headers, timeout=self._bounded_timeout()) as resp:
                if not 200 <= resp.status < 300:
                    error_body = await _read_error_body(resp, logger=self.logger)
                    raise ServerError(resp.status, resp.reason or "", body=error_body)
                data = await resp.json(content_type=None)
        except LMStudioError:
            raise
        except Exception as exc:
            raise classify_transport_error(exc) from exc

        try:
            parsed = ModelsResponse.model_validate(data)
        except ValidationError as exc:
            raise UnexpectedError("Could not decode the model list", detail=str(exc)) from exc
        return list(parsed.data)

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    @timed
    async def send_nonstreaming(
        self,
        messages: Iterable[ConversationTurn],
        model_id: str,
        params: Optional[GenerationParameters] = None,
    ) -> str:
        """POST a completion with ``stream=false`` and return the first choice's text.

        Raises:
            NoContentError: the response has no choice, no message, or a null content.
            ServerError: on a non-2xx status.
            LMStudioError: any other classified transport failure.
        """
        body = build_chat_completions_body(messages, model_id, params, stream=False)
        payload = body.to_payload()
        url = self._url(_CHAT_COMPLETIONS_PATH)
        headers = {"Accept": "application/json"}
        _debug_print_request(url, headers, payload, logger=self.logger)

        timing_mark("chat_http_request_start")
        try:
            async with self._get_session().post(
                url, json=payload, headers=headers, timeout=self._bounded_timeout()
            ) as resp:
                timing_mark("chat_http_headers_received")
                if not 200 <= resp.status < 300:
                    error_body = await _read_error_body(resp, logger=self.logger)
                    raise ServerError(resp.status, resp.reason or "", body=error_body)
                data = await resp.json(content_type=None)
        except LMStudioError:
            raise
        except Exception as exc:
            raise classify_transport_error(exc) from exc

        try:
            parsed = ChatCompletionResponse.model_validate(data)
        except ValidationError as exc:
            raise UnexpectedError("Could not decode the completion response", detail=str(exc)) from exc
        if not parsed.choices:
            raise NoContentError()
        message = parsed.choices[0].message
        if message is None or message.content is None:
            raise NoContentError()
        self.logger.debug(
            "Completion received: %d chars (finish_reason=%s)",
            len(message.content),
            parsed.choices[0].finish_reason,
        )
        return message.content

    @timed
    async def send_streaming(
        self,
        messages: Iterable[ConversationTurn],
        model_id: str,
        params: Optional[GenerationParameters] = None,
    ) -> LineStream:
        """POST a completion with ``stream=true`` and return its line stream.

        Returns once the response headers have arrived. Connection failures
        and non-2xx statuses are raised here, already classified; failures
        after that end the returned stream.
        """
        body = build_chat_completions_body(messages, model_id, params, stream=True)
        payload = body.to_payload()
        url = self._url(_CHAT_COMPLETIONS_PATH)
        headers = {"Accept": SSE_CONTENT_TYPE}
        _debug_print_request(url, headers, payload, logger=self.logger)

        timing_mark("chat_http_request_start")
        try:
            resp = await self._get_session().post(
                url, json=payload, headers=headers, timeout=self._streaming_timeout()
            )
        except Exception as exc:
            raise classify_transport_error(exc) from exc
        timing_mark("chat_http_headers_received")

        if not 200 <= resp.status < 300:
            error_body = await _read_error_body(resp, logger=self.logger)
            resp.release()
            raise ServerError(resp.status, resp.reason or "", body=error_body)

        content_type = resp.headers.get("Content-Type", "")
        if content_type and SSE_CONTENT_TYPE not in content_type:
            self.logger.debug("Streaming response has Content-Type %s; parsing lines anyway", content_type)
        return LineStream(resp, logger=self.logger)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        session = self._session
        self._session = None
        if session is not None and self._owns_session and not session.closed:
            await session.close()

    async def __aenter__(self) -> "LMStudioApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
