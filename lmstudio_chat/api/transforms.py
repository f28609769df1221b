"""Request body construction for the chat-completions endpoint.

Maps stored conversation messages and a GenerationParameters snapshot onto
the OpenAI-compatible JSON body. Optional parameters are only present when
set; the server applies its own defaults for the rest.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from ..core.config import GenerationParameters
from ..core.timing_logger import timed


class ConversationTurn(Protocol):
    """Anything with the two attributes a chat message needs on the wire."""

    text: str
    is_user: bool


class ChatMessagePayload(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatCompletionsBody(BaseModel):
    """
    Represents the body of a request to the /v1/chat/completions endpoint.
    """

    model_config = ConfigDict(extra="forbid")

    model: str
    messages: List[ChatMessagePayload]
    stream: bool = False
    top_p: Optional[float] = None
    temperature: Optional[float] = None
    max_completion_tokens: Optional[int] = None
    stop: Optional[List[str]] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    logit_bias: Optional[Dict[str, float]] = None
    repeat_penalty: Optional[float] = None
    seed: Optional[Union[int, str]] = None

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-ready dict with unset optional keys omitted."""
        return self.model_dump(exclude_none=True)


_INTEGER_SEED = re.compile(r"-?[0-9]+")


def _coerce_seed(seed: Optional[str]) -> Optional[Union[int, str]]:
    """Numeric seeds go out as integers; anything else is passed through."""
    if seed is None:
        return None
    text = seed.strip()
    if _INTEGER_SEED.fullmatch(text):
        return int(text)
    return text or None


@timed
def messages_to_payload(messages: Iterable[ConversationTurn]) -> list[ChatMessagePayload]:
    """Map messages, in conversation order, to ``{role, content}`` pairs."""
    return [
        ChatMessagePayload(role="user" if message.is_user else "assistant", content=message.text)
        for message in messages
    ]


@timed
def build_chat_completions_body(
    messages: Iterable[ConversationTurn],
    model_id: str,
    params: Optional[GenerationParameters] = None,
    *,
    stream: bool,
) -> ChatCompletionsBody:
    """Build the request body for one completion call."""
    params = params or GenerationParameters()
    return ChatCompletionsBody(
        model=model_id,
        messages=messages_to_payload(messages),
        stream=stream,
        top_p=params.top_p,
        temperature=params.temperature,
        max_completion_tokens=params.max_tokens,
        stop=list(params.stop_sequences) if params.stop_sequences else None,
        presence_penalty=params.presence_penalty,
        frequency_penalty=params.frequency_penalty,
        logit_bias=dict(params.logit_bias) if params.logit_bias else None,
        repeat_penalty=params.repeat_penalty,
        seed=_coerce_seed(params.seed),
    )
