"""Pure helper functions shared across the client.

Template rendering for user-facing error messages, tolerant JSON helpers and
small value normalizers. Nothing in here performs I/O.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_TEMPLATE_IF_TOKEN_RE = re.compile(r"\{\{\s*(#if\s+(\w+)|/if)\s*\}\}")


# -----------------------------------------------------------------------------
# Template Rendering
# -----------------------------------------------------------------------------

def _template_value_present(value: Any) -> bool:
    """Return True when a placeholder value should be rendered."""
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (list, tuple, set, dict)):
        return bool(value)
    if isinstance(value, (int, float)):
        return True
    return bool(value)


def _render_error_template(template: str, values: dict[str, Any]) -> str:
    """Render a message template, honoring ``{{#if name}} ... {{/if}}`` guards.

    A line that references a placeholder whose value is absent is dropped
    entirely, so optional details never leave dangling labels behind.
    """
    rendered_lines: list[str] = []
    condition_stack: list[bool] = []

    def _conditions_active() -> bool:
        return all(condition_stack) if condition_stack else True

    for raw_line in (template or "").splitlines():
        last_index = 0
        line_parts: list[str] = []

        for match in _TEMPLATE_IF_TOKEN_RE.finditer(raw_line):
            segment = raw_line[last_index:match.start()]
            if segment and _conditions_active():
                line_parts.append(segment)
            token = match.group(1) or ""
            if token.startswith("#if"):
                condition_stack.append(_template_value_present(values.get(match.group(2) or "")))
            elif condition_stack:
                condition_stack.pop()
            last_index = match.end()

        tail_segment = raw_line[last_index:]
        if tail_segment and _conditions_active():
            line_parts.append(tail_segment)

        if not line_parts:
            # Lines made only of guard tokens disappear; real blank lines stay.
            if raw_line.strip() or not _conditions_active():
                continue
            rendered_lines.append("")
            continue

        line = "".join(line_parts)
        drop_line = False
        for name, value in values.items():
            placeholder = f"{{{name}}}"
            if placeholder in line:
                if not _template_value_present(value):
                    drop_line = True
                line = line.replace(placeholder, "" if value is None else str(value))
        if not drop_line:
            rendered_lines.append(line)
    return "\n".join(rendered_lines).strip()


# -----------------------------------------------------------------------------
# JSON Helpers
# -----------------------------------------------------------------------------

def _safe_json_loads(payload: Optional[str | bytes]) -> Any:
    """Return parsed JSON or None without raising."""
    if not payload:
        return None
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return None


def _pretty_json(value: Any) -> str:
    """Return a human-readable JSON string or an empty string when not applicable."""
    if value is None:
        return ""
    if isinstance(value, (str, bytes)):
        text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        return text.strip()
    try:
        return json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _extract_server_error_message(body_text: Optional[str]) -> Optional[str]:
    """Pull ``error.message`` (or a bare ``error`` string) out of a server error body."""
    parsed = _safe_json_loads(body_text)
    if not isinstance(parsed, dict):
        return _normalize_optional_str(body_text)
    error_section = parsed.get("error")
    if isinstance(error_section, dict):
        return _normalize_optional_str(error_section.get("message"))
    if isinstance(error_section, str):
        return _normalize_optional_str(error_section)
    return _normalize_optional_str(parsed.get("message"))


# -----------------------------------------------------------------------------
# Normalizers
# -----------------------------------------------------------------------------

def _normalize_optional_str(value: Any) -> Optional[str]:
    """Convert arbitrary input into a trimmed string or None."""
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _normalize_string_list(value: Any) -> list[str]:
    """Accept a comma-separated string or an iterable and return trimmed, non-empty items."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        return []
    normalized: list[str] = []
    for item in items:
        text = _normalize_optional_str(item)
        if text:
            normalized.append(text)
    return normalized


def _truncate(text: str, max_chars: int = 200) -> str:
    """Shorten ``text`` for log lines."""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)] + "..."
