"""Debug utilities for request/response logging.

These helpers log request/response data at DEBUG level. Callers pass the
per-turn logger (SessionLogger-backed) so records land in the turn's buffer.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from ..core.timing_logger import timed
from ..core.utils import _pretty_json, _truncate

_MESSAGE_PREVIEW_CHARS = 200


def _preview_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``payload`` with long message texts shortened."""
    preview = dict(payload)
    messages = preview.get("messages")
    if isinstance(messages, list):
        preview["messages"] = [
            {**message, "content": _truncate(str(message.get("content") or ""), _MESSAGE_PREVIEW_CHARS)}
            if isinstance(message, dict)
            else message
            for message in messages
        ]
    return preview


@timed
def _debug_print_request(
    url: str,
    headers: Dict[str, str],
    payload: Optional[Dict[str, Any]],
    *,
    logger: logging.Logger,
) -> None:
    """Log request metadata when DEBUG logging is enabled."""
    if not logger.isEnabledFor(logging.DEBUG):
        return

    try:
        logger.debug("LM Studio request: %s headers=%s", url, json.dumps(dict(headers or {})))
        if payload is not None:
            logger.debug(
                "LM Studio request payload: %s",
                _pretty_json(_preview_payload(payload)),
            )
    except (TypeError, ValueError):
        logger.debug("LM Studio request debug logging failed", exc_info=True)


@timed
async def _read_error_body(resp: Any, *, logger: logging.Logger) -> str:
    """Read the body of a failed response, logging it at DEBUG level.

    Args:
        resp: aiohttp.ClientResponse object

    Returns:
        str: Response body text, or a placeholder when it could not be read
    """
    try:
        text = await resp.text()
    except Exception as exc:
        text = f"<<failed to read body: {exc}>>"
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "LM Studio error response: %s",
            json.dumps(
                {
                    "status": getattr(resp, "status", None),
                    "reason": getattr(resp, "reason", None),
                    "url": str(getattr(resp, "url", "")),
                    "body": text,
                },
                indent=2,
                ensure_ascii=False,
            ),
        )
    return text
