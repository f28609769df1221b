"""Request handling subsystem.

This module provides the per-turn request logic:
- SessionController: one send operation from prompt to terminal state
- TitleGenerator: background conversation titles
- Debug utilities: Request/response logging helpers
"""

from __future__ import annotations

from .orchestrator import SessionController, SessionState, StreamSession, TurnResult
from .title_generator import TitleGenerator
from .debug import _debug_print_request, _read_error_body

__all__ = [
    "SessionController",
    "SessionState",
    "StreamSession",
    "TurnResult",
    "TitleGenerator",
    "_debug_print_request",
    "_read_error_body",
]
