"""Function timing instrumentation with JSONL file output.

Provides:
- @timed decorator for function entrance/exit events
- timing_scope() context manager for code block timing
- timing_mark() for point-in-time events (first byte, first token, ...)

Timing is keyed by the per-turn request id and is only recorded when the
ENABLE_TIMING_LOG valve is on and a file has been configured:

    configure_timing_file(valves.TIMING_LOG_FILE)
    set_timing_context(request_id, enabled=valves.ENABLE_TIMING_LOG)
"""

from __future__ import annotations

import datetime
import functools
import inspect
import json
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Optional, TextIO, TypeVar

_PACKAGE_PREFIX = "lmstudio_chat."

_file_lock = threading.Lock()
_file_path: Optional[Path] = None
_file_handle: Optional[TextIO] = None

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_request_id: ContextVar[Optional[str]] = ContextVar("timing_request_id", default=None)


def _iso_utc(wall_ts: float) -> str:
    dt = datetime.datetime.fromtimestamp(wall_ts, tz=datetime.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _write(event: str, label: str, *, perf_ts: float, elapsed_ms: Optional[float] = None) -> None:
    """Append one event line to the timing file (thread-safe)."""
    request_id = _timing_request_id.get()
    if not request_id:
        return
    record: dict[str, Any] = {
        "ts": _iso_utc(time.time()),
        "perf_ts": round(perf_ts, 6),
        "event": event,
        "label": label,
        "request_id": request_id,
    }
    if elapsed_ms is not None:
        record["elapsed_ms"] = round(elapsed_ms, 3)
    with _file_lock:
        if _file_handle is None:
            return
        try:
            _file_handle.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")
            _file_handle.flush()
        except OSError:
            pass  # timing must never break a turn


# -----------------------------------------------------------------------------
# File configuration
# -----------------------------------------------------------------------------

def configure_timing_file(file_path: str) -> bool:
    """Open ``file_path`` in append mode, creating parent directories.

    Returns True when the file is ready for writing. Calling again with the
    same path is a no-op; a different path closes the previous file first.
    """
    global _file_path, _file_handle

    path = Path(file_path)
    with _file_lock:
        if _file_handle is not None and _file_path == path:
            return True
        if _file_handle is not None:
            _file_handle.close()
            _file_handle = None
            _file_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _file_handle = open(path, "a", encoding="utf-8")
        except OSError:
            return False
        _file_path = path
        return True


def close_timing_file() -> None:
    """Close the timing file. Safe to call multiple times."""
    global _file_path, _file_handle

    with _file_lock:
        if _file_handle is not None:
            _file_handle.close()
        _file_handle = None
        _file_path = None


def set_timing_context(request_id: str, enabled: bool) -> None:
    """Bind timing to ``request_id`` for the current task."""
    _timing_request_id.set(request_id)
    _timing_enabled.set(enabled)


def clear_timing_context() -> None:
    _timing_request_id.set(None)
    _timing_enabled.set(False)


# -----------------------------------------------------------------------------
# Recording helpers
# -----------------------------------------------------------------------------

def timing_mark(label: str) -> None:
    """Record a single point-in-time event such as ``stream_first_line``."""
    if not _timing_enabled.get():
        return
    _write("mark", label, perf_ts=time.perf_counter())


@contextmanager
def timing_scope(label: str):
    """Record enter/exit events with elapsed milliseconds around a block."""
    if not _timing_enabled.get():
        yield
        return
    start = time.perf_counter()
    _write("enter", label, perf_ts=start)
    try:
        yield
    finally:
        end = time.perf_counter()
        _write("exit", label, perf_ts=end, elapsed_ms=(end - start) * 1000)


F = TypeVar("F", bound=Callable[..., Any])


def timed(func: F) -> F:
    """Decorate a sync or async callable with entrance/exit timing events.

    Async generator functions are timed from call to generator creation only;
    use :func:`timing_scope` inside them for the iteration itself.
    """
    module = getattr(func, "__module__", "") or ""
    if module.startswith(_PACKAGE_PREFIX):
        module = module[len(_PACKAGE_PREFIX):]
    qualname = getattr(func, "__qualname__", None) or getattr(func, "__name__", "unknown")
    label = f"{module}.{qualname}" if module else qualname

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _timing_enabled.get():
                return await func(*args, **kwargs)
            with timing_scope(label):
                return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        if not _timing_enabled.get():
            return func(*args, **kwargs)
        with timing_scope(label):
            return func(*args, **kwargs)

    return sync_wrapper  # type: ignore[return-value]
