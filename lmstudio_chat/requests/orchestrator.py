"""Session Controller: one send operation from prompt to terminal state.

A turn moves through ``IDLE -> AWAITING_RESPONSE -> STREAMING -> COMPLETED``
(streaming) or ``IDLE -> AWAITING_RESPONSE -> COMPLETED`` (request/response).
``CANCELLED`` and ``FAILED`` are terminal states reachable from either
in-flight state.

The controller is the only writer of conversation messages. Every
materialization step is followed by an explicit ``store.save()``; there is
no await between the mutation and the save.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..core.config import ClientValves, GenerationParameters
from ..core.errors import (
    LMStudioError,
    RequestValidationError,
    classify_transport_error,
    format_user_error,
)
from ..core.logging_system import SessionLogger
from ..core.timing_logger import (
    clear_timing_context,
    configure_timing_file,
    set_timing_context,
    timed,
    timing_mark,
)
from ..storage.persistence import Conversation, Message, generate_item_id
from ..streaming.accumulator import DualChannelAccumulator
from ..streaming.sse_parser import SSEParser
from .title_generator import TitleGenerator

if TYPE_CHECKING:
    from ..api.gateway.lmstudio_client import LineStream, LMStudioApiClient
    from ..models.registry import ModelRegistry
    from ..storage.persistence import ConversationStore

LOGGER = logging.getLogger(__name__)

MISSING_MODEL_MESSAGE = "Please select a model"
EMPTY_PROMPT_MESSAGE = "Message must not be empty"
BUSY_MESSAGE = "A response is already in progress"

MessageCallback = Callable[[Message], Any]


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


@dataclass
class TurnResult:
    """Outcome of one send, handed back to the caller."""

    state: SessionState
    request_id: str
    user_message: Optional[Message] = None
    reasoning_message: Optional[Message] = None
    content_message: Optional[Message] = None
    error: Optional[LMStudioError] = None
    error_message: Optional[str] = None
    logs: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is SessionState.COMPLETED


class StreamSession:
    """Mutable per-request state, discarded once the turn is terminal."""

    def __init__(self, request_id: str, conversation: Conversation) -> None:
        self.request_id = request_id
        self.conversation = conversation
        self.state = SessionState.IDLE
        self.cancel_requested = False
        self.reasoning_buffer = ""
        self.content_buffer = ""
        self.user_message: Optional[Message] = None
        self.reasoning_message: Optional[Message] = None
        self.content_message: Optional[Message] = None
        self.accumulator: Optional[DualChannelAccumulator] = None
        self.line_stream: Optional["LineStream"] = None
        self.task: Optional[asyncio.Task[None]] = None

    def cancel(self) -> bool:
        """Request cooperative cancellation. Returns False once the turn is terminal."""
        if self.state.terminal or self.cancel_requested:
            return False
        self.cancel_requested = True
        if self.task is not None and not self.task.done():
            self.task.cancel()
        return True

    async def aclose(self) -> None:
        """Drop the connection first so no further bytes are read, then stop the pump."""
        if self.line_stream is not None:
            await self.line_stream.aclose()
        if self.accumulator is not None:
            await self.accumulator.aclose()


class SessionController:
    """Run send operations against one client/store/registry trio."""

    def __init__(
        self,
        client: "LMStudioApiClient",
        store: "ConversationStore",
        registry: "ModelRegistry",
        *,
        valves: Optional[ClientValves] = None,
        title_generator: Optional[TitleGenerator] = None,
        on_update: Optional[MessageCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.registry = registry
        self.valves = valves or client.valves
        self.logger = logger or SessionLogger.get_logger(__name__)
        self.title_generator = title_generator or TitleGenerator(client, store, logger=self.logger)
        self.on_update = on_update
        self._active: Optional[StreamSession] = None

    @property
    def active_session(self) -> Optional[StreamSession]:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active is not None

    def cancel(self) -> bool:
        """Cancel the in-flight turn, if any. Cancellation is not an error."""
        session = self._active
        if session is None:
            return False
        cancelled = session.cancel()
        if cancelled:
            self.logger.info("Cancellation requested for %s", session.request_id)
        return cancelled

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(
        self,
        conversation: Conversation,
        prompt: str,
        params: Optional[GenerationParameters] = None,
    ) -> TurnResult:
        """Run one turn and return its terminal result.

        Classified failures are reported in the result, never raised. If the
        calling task itself is cancelled, the turn is cleaned up and the
        cancellation propagates.
        """
        request_id = generate_item_id()
        session = StreamSession(request_id, conversation)
        rid_token = SessionLogger.request_id.set(request_id)
        cid_token = SessionLogger.conversation_id.set(conversation.id)
        level_token = SessionLogger.log_level.set(logging.getLevelName(self.valves.LOG_LEVEL))
        if self.valves.ENABLE_TIMING_LOG:
            configure_timing_file(self.valves.TIMING_LOG_FILE)
        set_timing_context(request_id, enabled=self.valves.ENABLE_TIMING_LOG)
        try:
            result = await self._run_turn(session, prompt, params or GenerationParameters())
            result.logs = SessionLogger.logs_for(request_id)
            return result
        finally:
            clear_timing_context()
            SessionLogger.cleanup(request_id)
            SessionLogger.log_level.reset(level_token)
            SessionLogger.conversation_id.reset(cid_token)
            SessionLogger.request_id.reset(rid_token)

    async def _run_turn(
        self,
        session: StreamSession,
        prompt: str,
        params: GenerationParameters,
    ) -> TurnResult:
        if self._active is not None:
            return self._fail(session, RequestValidationError(BUSY_MESSAGE))
        model_id = self.registry.selected_model_id
        if not model_id:
            return self._fail(session, RequestValidationError(MISSING_MODEL_MESSAGE))
        text = (prompt or "").strip()
        if not text:
            return self._fail(session, RequestValidationError(EMPTY_PROMPT_MESSAGE))

        self._active = session
        try:
            conversation = session.conversation
            session.user_message = self.store.create_message(conversation, text, is_user=True)
            self.store.save()
            self._notify(session.user_message)
            history = list(conversation.messages)
            self.logger.info(
                "Sending turn %s to %s (%d message(s), stream=%s)",
                session.request_id,
                model_id,
                len(history),
                params.streaming,
            )

            self.title_generator.schedule(conversation, model_id)

            # on_update may have cancelled the turn already.
            if session.cancel_requested:
                session.state = SessionState.CANCELLED
                self.logger.info("Turn %s cancelled before the request was sent", session.request_id)
                return self._result(session)

            session.state = SessionState.AWAITING_RESPONSE
            session.task = asyncio.create_task(
                self._execute(session, history, model_id, params),
                name=f"turn-{session.request_id}",
            )
            try:
                await session.task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not session.cancel_requested or (current is not None and current.cancelling()):
                    session.state = SessionState.CANCELLED
                    raise
            except Exception as exc:
                return self._fail(session, classify_transport_error(exc))
            finally:
                await session.aclose()

            if session.cancel_requested:
                session.state = SessionState.CANCELLED
                self.logger.info(
                    "Turn %s cancelled (reasoning=%d chars, content=%d chars kept)",
                    session.request_id,
                    len(session.reasoning_buffer),
                    len(session.content_buffer),
                )
            else:
                session.state = SessionState.COMPLETED
                self.logger.info(
                    "Turn %s completed (reasoning=%d chars, content=%d chars)",
                    session.request_id,
                    len(session.reasoning_buffer),
                    len(session.content_buffer),
                )
            return self._result(session)
        finally:
            self._active = None

    @timed
    async def _execute(
        self,
        session: StreamSession,
        history: list[Message],
        model_id: str,
        params: GenerationParameters,
    ) -> None:
        if params.streaming:
            await self._run_streaming(session, history, model_id, params)
        else:
            await self._run_nonstreaming(session, history, model_id, params)

    # ------------------------------------------------------------------
    # Request/response path
    # ------------------------------------------------------------------

    async def _run_nonstreaming(
        self,
        session: StreamSession,
        history: list[Message],
        model_id: str,
        params: GenerationParameters,
    ) -> None:
        text = await self.client.send_nonstreaming(history, model_id, params)
        if session.cancel_requested:
            return
        session.content_buffer = text
        session.content_message = self.store.create_message(session.conversation, text, is_user=False)
        self.store.save()
        self._notify(session.content_message)

    # ------------------------------------------------------------------
    # Streaming path
    # ------------------------------------------------------------------

    async def _run_streaming(
        self,
        session: StreamSession,
        history: list[Message],
        model_id: str,
        params: GenerationParameters,
    ) -> None:
        session.line_stream = await self.client.send_streaming(history, model_id, params)
        session.state = SessionState.STREAMING
        timing_mark("turn_streaming")

        accumulator = DualChannelAccumulator(logger=self.logger)
        session.accumulator = accumulator
        parser = SSEParser(logger=self.logger)
        accumulator.start(parser.parse(session.line_stream))

        reasoning_task = asyncio.create_task(
            self._drain_reasoning(session, accumulator),
            name=f"reasoning-{session.request_id}",
        )
        try:
            await self._drain_content(session, accumulator)
            await reasoning_task
        finally:
            if not reasoning_task.done():
                reasoning_task.cancel()
                await asyncio.gather(reasoning_task, return_exceptions=True)
        if accumulator.finish_reason:
            self.logger.debug("Stream finish_reason=%s", accumulator.finish_reason)

    async def _drain_reasoning(self, session: StreamSession, accumulator: DualChannelAccumulator) -> None:
        """Materialize reasoning emissions: create on the first, append afterwards."""
        async for emission in accumulator.reasoning:
            if session.cancel_requested:
                break
            session.reasoning_buffer += emission
            message = session.reasoning_message
            if message is None:
                message = self.store.create_message(session.conversation, emission, is_user=False)
                session.reasoning_message = message
            else:
                message.text = (message.text or "") + emission
                self.store.append_or_update(session.conversation, message)
            self.store.save()
            self._notify(message)

    async def _drain_content(self, session: StreamSession, accumulator: DualChannelAccumulator) -> None:
        """Materialize content emissions: the message always holds the full running text."""
        async for emission in accumulator.content:
            if session.cancel_requested:
                break
            session.content_buffer += emission
            message = session.content_message
            if message is None:
                message = self.store.create_message(session.conversation, session.content_buffer, is_user=False)
                session.content_message = message
            else:
                message.text = session.content_buffer
                self.store.append_or_update(session.conversation, message)
            self.store.save()
            self._notify(message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _notify(self, message: Message) -> None:
        if self.on_update is not None:
            self.on_update(message)

    def _fail(self, session: StreamSession, error: LMStudioError) -> TurnResult:
        session.state = SessionState.FAILED
        message = format_user_error(error, self.valves)
        if isinstance(error, RequestValidationError):
            self.logger.info("Turn %s rejected: %s", session.request_id, error)
        else:
            self.logger.warning("Turn %s failed (%s): %s", session.request_id, error.kind, error)
        return self._result(session, error=error, error_message=message)

    @staticmethod
    def _result(
        session: StreamSession,
        *,
        error: Optional[LMStudioError] = None,
        error_message: Optional[str] = None,
    ) -> TurnResult:
        return TurnResult(
            state=session.state,
            request_id=session.request_id,
            user_message=session.user_message,
            reasoning_message=session.reasoning_message,
            content_message=session.content_message,
            error=error,
            error_message=error_message,
        )
