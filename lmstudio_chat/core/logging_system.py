"""Per-turn logging with context-aware buffering.

This module handles logging for chat turns:
- SessionLogger: logger factory that tags records with the active turn
- Structured event capture into a bounded in-memory buffer per request id
- Console output honoring the per-turn log level

The SessionLogger uses contextvars to track request_id and conversation_id, so
records emitted from the reasoning/content drain tasks and from the title
task are attributed to the turn that spawned them.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .timing_logger import timed

LOGGER = logging.getLogger(__name__)


class SessionLogger:
    """Logger factory plus an in-memory log buffer keyed by request id.

    Cleanup is explicit: the Session Controller calls ``cleanup`` when a turn
    ends, after giving callers a chance to read ``logs_for``.

    Attributes:
        request_id:      ContextVar storing the per-turn buffer key.
        conversation_id: ContextVar storing the conversation the turn belongs to.
        log_level:       ContextVar storing the minimum console level for the turn.
        logs:            Map of request_id -> bounded deque of structured events.
    """

    request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
    conversation_id: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured event extracted from a LogRecord."""
        event: dict[str, Any] = {
            "created": float(getattr(record, "created", time.time())),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "conversation_id": getattr(record, "conversation_id", None),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            event["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return event

    @classmethod
    @timed
    def get_logger(cls, name: str = __name__) -> logging.Logger:
        """Return ``logging.getLogger(name)`` wired to the turn context.

        Records still propagate to the root logger, so applications (and
        pytest's caplog) see them as usual.
        """
        logger = logging.getLogger(name)
        if getattr(logger, "_lmstudio_session_wired", False):
            return logger
        logger.setLevel(logging.DEBUG)

        def _attach_context(record: logging.LogRecord) -> bool:
            record.request_id = cls.request_id.get()
            record.conversation_id = cls.conversation_id.get()
            record.session_log_level = cls.log_level.get()
            return True

        handler = _SessionBufferHandler(cls)
        handler.addFilter(_attach_context)
        logger.addHandler(handler)
        logger._lmstudio_session_wired = True  # type: ignore[attr-defined]
        return logger

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        """Set the maximum in-memory events retained per request."""
        cls.max_lines = max(100, min(200000, int(value)))

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        """Write ``record`` to the console (per-turn level) and the request buffer."""
        if record.levelno >= int(getattr(record, "session_log_level", logging.INFO)):
            sys.stderr.write(cls._console_formatter.format(record) + "\n")
        request_id = getattr(record, "request_id", None)
        if not request_id:
            return
        event = cls._build_event(record)
        with cls._state_lock:
            buffer = cls.logs.get(request_id)
            if buffer is None or buffer.maxlen != cls.max_lines:
                buffer = deque(buffer or (), maxlen=cls.max_lines)
                cls.logs[request_id] = buffer
            buffer.append(event)

    @classmethod
    def logs_for(cls, request_id: str) -> list[dict[str, Any]]:
        with cls._state_lock:
            return list(cls.logs.get(request_id) or ())

    @classmethod
    def cleanup(cls, request_id: Optional[str]) -> None:
        """Drop the buffered events of a finished turn."""
        if not request_id:
            return
        with cls._state_lock:
            cls.logs.pop(request_id, None)


class _SessionBufferHandler(logging.Handler):
    """Handler delegating every record to ``SessionLogger.process_record``."""

    def __init__(self, owner: type[SessionLogger]) -> None:
        super().__init__(level=logging.DEBUG)
        self._owner = owner

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._owner.process_record(record)
        except Exception:
            self.handleError(record)
