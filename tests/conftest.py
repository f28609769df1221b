"""Test configuration helpers for unit tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Iterable, Optional

import pytest
import pytest_asyncio
from aioresponses import aioresponses

from lmstudio_chat.api.gateway.lmstudio_client import LMStudioApiClient
from lmstudio_chat.core.config import ClientValves, GenerationParameters
from lmstudio_chat.core.logging_system import SessionLogger
from lmstudio_chat.models.registry import ModelRegistry
from lmstudio_chat.requests.orchestrator import SessionController
from lmstudio_chat.storage.persistence import ConversationStore

BASE_URL = "http://lmstudio.test:1234"
MODELS_URL = f"{BASE_URL}/v1/models"
CHAT_URL = f"{BASE_URL}/v1/chat/completions"
MODEL_ID = "qwen2.5-7b-instruct"


# -----------------------------------------------------------------------------
# SSE helpers
# -----------------------------------------------------------------------------

def sse(obj: dict[str, Any]) -> str:
    """Format object as SSE data line."""
    return f"data: {json.dumps(obj)}\n\n"


def content_frame(text: str, finish_reason: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1742300000,
        "model": MODEL_ID,
        "system_fingerprint": MODEL_ID,
        "choices": [{"index": 0, "delta": {"role": "assistant", "content": text}, "logprobs": None, "finish_reason": finish_reason}],
    }


def reasoning_frame(text: str) -> dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1742300000,
        "model": MODEL_ID,
        "choices": [{"index": 0, "delta": {"role": "assistant", "reasoning_content": text}, "logprobs": None, "finish_reason": None}],
    }


def sse_body(frames: Iterable[dict[str, Any]], *, done: bool = True) -> bytes:
    body = "".join(sse(frame) for frame in frames)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def completion_response(content: Optional[str]) -> dict[str, Any]:
    return {
        "id": "chatcmpl-2",
        "object": "chat.completion",
        "model": MODEL_ID,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }


def requests_for(mock_http: aioresponses, method: str, url: str) -> list[Any]:
    """Return the recorded calls for ``method url``."""
    calls: list[Any] = []
    for (req_method, req_url), recorded in mock_http.requests.items():
        if req_method == method and str(req_url) == url:
            calls.extend(recorded)
    return calls


async def wait_for(predicate: Callable[[], bool], *, attempts: int = 200) -> None:
    """Yield to the loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------

class FakeLineStream:
    """Line source fed by the test; stays open until finished or closed."""

    def __init__(self, lines: Iterable[str] = ()) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        for line in lines:
            self._queue.put_nowait(line)
        self.closed = False

    def feed(self, line: str) -> None:
        self._queue.put_nowait(line)

    def finish(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while not self.closed:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def aclose(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeClient:
    """Stand-in transport recording calls, for timing-sensitive controller tests."""

    def __init__(self, valves: ClientValves, stream: Optional[FakeLineStream] = None) -> None:
        self.valves = valves
        self.stream = stream or FakeLineStream()
        self.completion_text = "Answer"
        self.error: Optional[BaseException] = None
        self.headers_gate: Optional[asyncio.Event] = None
        self.streaming_calls: list[tuple[list[Any], str, Any]] = []
        self.nonstreaming_calls: list[tuple[list[Any], str, Any]] = []

    @property
    def base_url(self) -> str:
        return self.valves.BASE_URL

    async def send_streaming(self, messages, model_id, params=None):
        self.streaming_calls.append((list(messages), model_id, params))
        if self.headers_gate is not None:
            await self.headers_gate.wait()
        if self.error is not None:
            raise self.error
        return self.stream

    async def send_nonstreaming(self, messages, model_id, params=None):
        self.nonstreaming_calls.append((list(messages), model_id, params))
        if self.error is not None:
            raise self.error
        return self.completion_text


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_session_logs():
    SessionLogger.logs.clear()
    yield
    SessionLogger.logs.clear()


@pytest.fixture
def valves() -> ClientValves:
    return ClientValves(BASE_URL=BASE_URL, LOG_LEVEL="CRITICAL")


@pytest.fixture
def store():
    conversation_store = ConversationStore("sqlite://")
    yield conversation_store
    conversation_store.close()


@pytest.fixture
def mock_http():
    with aioresponses() as mocked:
        yield mocked


@pytest_asyncio.fixture
async def client(valves):
    """Return an LMStudioApiClient with proper cleanup."""
    api_client = LMStudioApiClient(valves)
    yield api_client
    await api_client.close()


@pytest.fixture
def registry(client, store) -> ModelRegistry:
    model_registry = ModelRegistry(client, store)
    model_registry.select_model(MODEL_ID)
    return model_registry


@pytest.fixture
def controller(client, store, registry, valves) -> SessionController:
    return SessionController(client, store, registry, valves=valves)


@pytest.fixture
def fake_client(valves) -> FakeClient:
    return FakeClient(valves)


@pytest.fixture
def fake_controller(fake_client, store, valves) -> SessionController:
    model_registry = ModelRegistry(fake_client, store)  # type: ignore[arg-type]
    model_registry.select_model(MODEL_ID)
    return SessionController(fake_client, store, model_registry, valves=valves)  # type: ignore[arg-type]


@pytest.fixture
def titled_conversation(store):
    return store.create_conversation(title="Existing chat")


@pytest.fixture
def streaming_params() -> GenerationParameters:
    return GenerationParameters(stream=True)


@pytest.fixture
def nonstreaming_params() -> GenerationParameters:
    return GenerationParameters(stream=False)
