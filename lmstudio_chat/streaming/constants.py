"""Shared streaming constants to avoid duplication across modules."""

# SSE framing used by OpenAI-compatible servers.
# Field name of SSE data lines; the single space after the colon is optional.
SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"
SSE_CONTENT_TYPE = "text/event-stream"

# Prefix on the first reasoning emission of a turn; renderers detect reasoning
# messages by it.
REASONING_MARKER = "[Reasoning]: "
