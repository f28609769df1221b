"""Tests for the Session Controller state machine."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aioresponses import CallbackResult, aioresponses

from lmstudio_chat.core.config import TITLE_PROMPT, GenerationParameters
from lmstudio_chat.core.errors import (
    NoContentError,
    RequestValidationError,
    ServerConnectionError,
    ServerError,
)
from lmstudio_chat.core.logging_system import SessionLogger
from lmstudio_chat.models.registry import ModelRegistry
from lmstudio_chat.requests.orchestrator import (
    BUSY_MESSAGE,
    MISSING_MODEL_MESSAGE,
    SessionController,
    SessionState,
)
from lmstudio_chat.streaming.constants import REASONING_MARKER

from conftest import (
    CHAT_URL,
    MODEL_ID,
    FakeClient,
    completion_response,
    content_frame,
    reasoning_frame,
    requests_for,
    sse,
    sse_body,
    wait_for,
)


def _texts(conversation) -> list[tuple[bool, str]]:
    return [(message.is_user, message.text) for message in conversation.messages]


# ============================================================================
# Streaming path
# ============================================================================


@pytest.mark.asyncio
async def test_streaming_hello(controller, titled_conversation, mock_http, streaming_params) -> None:
    mock_http.post(
        CHAT_URL,
        body=(
            'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
            'data: {"choices":[{"delta":{"content":"lo"}}]}\n'
            "data: [DONE]\n"
        ),
        headers={"Content-Type": "text/event-stream"},
    )
    updates: list[str] = []
    controller.on_update = lambda message: updates.append(message.text)

    result = await controller.send(titled_conversation, "Say hello", streaming_params)

    assert result.state is SessionState.COMPLETED
    assert result.ok
    assert result.error_message is None
    assert result.content_message is not None
    assert result.content_message.text == "Hello"
    assert result.reasoning_message is None
    assert _texts(titled_conversation) == [(True, "Say hello"), (False, "Hello")]
    assert updates == ["Say hello", "Hel", "Hello"]
    assert controller.active_session is None


@pytest.mark.asyncio
async def test_streaming_reasoning_then_content(controller, titled_conversation, mock_http, streaming_params) -> None:
    mock_http.post(
        CHAT_URL,
        body=sse_body([reasoning_frame("Because X"), content_frame("Answer Y", finish_reason="stop")]),
        headers={"Content-Type": "text/event-stream"},
    )

    result = await controller.send(titled_conversation, "Why?", streaming_params)

    assert result.state is SessionState.COMPLETED
    assert result.reasoning_message is not None
    assert result.reasoning_message.text == REASONING_MARKER + "Because X"
    assert result.content_message is not None
    assert result.content_message.text == "Answer Y"
    assert _texts(titled_conversation) == [
        (True, "Why?"),
        (False, "[Reasoning]: Because X"),
        (False, "Answer Y"),
    ]


@pytest.mark.asyncio
async def test_streaming_reasoning_accumulates_in_one_message(
    controller, titled_conversation, mock_http, streaming_params
) -> None:
    mock_http.post(
        CHAT_URL,
        body=sse_body(
            [
                reasoning_frame("Step 1."),
                reasoning_frame(" Step 2."),
                content_frame("Done"),
                reasoning_frame(" Step 3."),
            ]
        ),
    )
    result = await controller.send(titled_conversation, "Plan it", streaming_params)

    assert result.reasoning_message is not None
    assert result.reasoning_message.text == "[Reasoning]: Step 1. Step 2. Step 3."
    assert result.reasoning_message.text.count(REASONING_MARKER) == 1
    assert len(titled_conversation.messages) == 3


@pytest.mark.asyncio
async def test_streaming_only_malformed_frames_completes(
    controller, titled_conversation, mock_http, streaming_params
) -> None:
    mock_http.post(CHAT_URL, body="data: {oops\n\ndata: [broken\n\ndata: [DONE]\n\n")

    result = await controller.send(titled_conversation, "Hi", streaming_params)

    assert result.state is SessionState.COMPLETED
    assert result.error_message is None
    assert result.content_message is None
    assert result.reasoning_message is None
    assert _texts(titled_conversation) == [(True, "Hi")]


@pytest.mark.asyncio
async def test_streaming_server_error_fails_turn(controller, titled_conversation, mock_http, streaming_params) -> None:
    mock_http.post(CHAT_URL, status=500, body='{"error": {"message": "Model crashed"}}')

    result = await controller.send(titled_conversation, "Hi", streaming_params)

    assert result.state is SessionState.FAILED
    assert isinstance(result.error, ServerError)
    assert result.error.status == 500
    assert "HTTP 500" in (result.error_message or "")
    assert "Model crashed" in (result.error_message or "")
    # The user message stays visible even though the request failed.
    assert _texts(titled_conversation) == [(True, "Hi")]


@pytest.mark.asyncio
async def test_connection_refused_fails_turn(controller, titled_conversation, mock_http, streaming_params) -> None:
    mock_http.post(CHAT_URL, exception=aiohttp.ClientConnectionError("Connection refused"))

    result = await controller.send(titled_conversation, "Hi", streaming_params)

    assert result.state is SessionState.FAILED
    assert isinstance(result.error, ServerConnectionError)
    assert "could not connect" in (result.error_message or "")


@pytest.mark.asyncio
async def test_history_sent_in_conversation_order(
    controller, store, titled_conversation, mock_http, streaming_params
) -> None:
    store.create_message(titled_conversation, "Earlier question", is_user=True)
    store.create_message(titled_conversation, "Earlier answer", is_user=False)
    store.save()
    mock_http.post(CHAT_URL, body=sse_body([content_frame("ok")]))

    await controller.send(titled_conversation, "  Follow-up  ", streaming_params)

    (call,) = requests_for(mock_http, "POST", CHAT_URL)
    assert call.kwargs["json"]["messages"] == [
        {"role": "user", "content": "Earlier question"},
        {"role": "assistant", "content": "Earlier answer"},
        {"role": "user", "content": "Follow-up"},
    ]
    assert call.kwargs["json"]["model"] == MODEL_ID


# ============================================================================
# Non-streaming path
# ============================================================================


@pytest.mark.asyncio
async def test_nonstreaming_completes_with_single_message(
    controller, titled_conversation, mock_http, nonstreaming_params
) -> None:
    mock_http.post(CHAT_URL, payload=completion_response("Full answer"))
    updates: list[str] = []
    controller.on_update = lambda message: updates.append(message.text)

    result = await controller.send(titled_conversation, "Question", nonstreaming_params)

    assert result.state is SessionState.COMPLETED
    assert result.content_message is not None
    assert result.content_message.text == "Full answer"
    assert updates == ["Question", "Full answer"]
    (call,) = requests_for(mock_http, "POST", CHAT_URL)
    assert call.kwargs["json"]["stream"] is False


@pytest.mark.asyncio
async def test_nonstreaming_empty_choices_fails_without_assistant_message(
    controller, titled_conversation, mock_http, nonstreaming_params
) -> None:
    mock_http.post(CHAT_URL, payload={"choices": []})

    result = await controller.send(titled_conversation, "Question", nonstreaming_params)

    assert result.state is SessionState.FAILED
    assert isinstance(result.error, NoContentError)
    assert result.content_message is None
    assert _texts(titled_conversation) == [(True, "Question")]


# ============================================================================
# Validation
# ============================================================================


@pytest.mark.asyncio
async def test_no_model_selected_makes_no_request(client, store, valves, titled_conversation, mock_http) -> None:
    controller = SessionController(client, store, ModelRegistry(client, store), valves=valves)

    result = await controller.send(titled_conversation, "Hello", GenerationParameters())

    assert result.state is SessionState.FAILED
    assert isinstance(result.error, RequestValidationError)
    assert result.error_message == MISSING_MODEL_MESSAGE
    assert mock_http.requests == {}
    assert titled_conversation.messages == []


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
async def test_empty_prompt_rejected(controller, titled_conversation, mock_http, prompt: str) -> None:
    result = await controller.send(titled_conversation, prompt)

    assert result.state is SessionState.FAILED
    assert isinstance(result.error, RequestValidationError)
    assert mock_http.requests == {}
    assert titled_conversation.messages == []


# ============================================================================
# Cancellation
# ============================================================================


@pytest.mark.asyncio
async def test_cancel_mid_stream(fake_controller, fake_client: FakeClient, titled_conversation) -> None:
    stream = fake_client.stream
    task = asyncio.create_task(fake_controller.send(titled_conversation, "Long story", GenerationParameters()))

    stream.feed(sse(reasoning_frame("Thinking")).strip())
    stream.feed(sse(content_frame("Once upon")).strip())
    await wait_for(lambda: len(titled_conversation.messages) == 3)
    assert fake_controller.active_session.state is SessionState.STREAMING

    assert fake_controller.cancel() is True
    result = await task

    assert result.state is SessionState.CANCELLED
    assert result.error is None
    assert result.error_message is None
    assert stream.closed
    assert result.content_message is not None
    assert result.content_message.text == "Once upon"
    assert fake_controller.active_session is None

    stream.feed(sse(content_frame(" a time")).strip())
    await asyncio.sleep(0)
    assert result.content_message.text == "Once upon"


@pytest.mark.asyncio
async def test_cancel_while_awaiting_response(fake_controller, fake_client: FakeClient, titled_conversation) -> None:
    fake_client.headers_gate = asyncio.Event()
    task = asyncio.create_task(fake_controller.send(titled_conversation, "Hi", GenerationParameters()))
    await wait_for(lambda: len(fake_client.streaming_calls) == 1)
    assert fake_controller.active_session.state is SessionState.AWAITING_RESPONSE

    fake_controller.cancel()
    result = await task

    assert result.state is SessionState.CANCELLED
    assert result.error_message is None
    assert _texts(titled_conversation) == [(True, "Hi")]


@pytest.mark.asyncio
async def test_cancel_without_active_turn(fake_controller) -> None:
    assert fake_controller.cancel() is False


@pytest.mark.asyncio
async def test_cancel_from_user_message_update_sends_nothing(
    fake_controller, fake_client: FakeClient, titled_conversation
) -> None:
    def _cancel_on_user_message(message) -> None:
        if message.is_user:
            assert fake_controller.cancel() is True

    fake_controller.on_update = _cancel_on_user_message

    result = await fake_controller.send(titled_conversation, "Never mind", GenerationParameters())

    assert result.state is SessionState.CANCELLED
    assert result.error is None
    assert result.error_message is None
    assert fake_client.streaming_calls == []
    assert fake_client.nonstreaming_calls == []
    assert _texts(titled_conversation) == [(True, "Never mind")]
    assert fake_controller.active_session is None


@pytest.mark.asyncio
async def test_outer_task_cancellation_propagates(
    fake_controller, fake_client: FakeClient, titled_conversation
) -> None:
    task = asyncio.create_task(fake_controller.send(titled_conversation, "Hi", GenerationParameters()))
    await wait_for(lambda: fake_controller.active_session is not None and fake_controller.active_session.state is SessionState.STREAMING)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert fake_client.stream.closed
    assert fake_controller.active_session is None


@pytest.mark.asyncio
async def test_second_send_while_busy_rejected(fake_controller, fake_client: FakeClient, titled_conversation) -> None:
    first = asyncio.create_task(fake_controller.send(titled_conversation, "One", GenerationParameters()))
    await wait_for(lambda: fake_controller.busy)

    second = await fake_controller.send(titled_conversation, "Two", GenerationParameters())
    assert second.state is SessionState.FAILED
    assert second.error_message == BUSY_MESSAGE

    fake_client.stream.finish()
    assert (await first).state is SessionState.COMPLETED
    assert _texts(titled_conversation) == [(True, "One")]


# ============================================================================
# Title generation
# ============================================================================


def _dispatch(stream_body: bytes, title_text: str):
    def _callback(url, **kwargs):
        payload = kwargs["json"]
        if payload.get("stream"):
            return CallbackResult(body=stream_body, headers={"Content-Type": "text/event-stream"})
        return CallbackResult(payload=completion_response(title_text))

    return _callback


@pytest.mark.asyncio
async def test_title_generated_for_untitled_conversation(
    controller, store, mock_http: aioresponses, streaming_params
) -> None:
    conversation = store.create_conversation()
    mock_http.post(CHAT_URL, callback=_dispatch(sse_body([content_frame("Sunny.")]), '  "Weather Today"\n'), repeat=True)

    result = await controller.send(conversation, "What's the weather like?", streaming_params)
    await controller.title_generator.wait_idle()

    assert result.state is SessionState.COMPLETED
    assert conversation.title == "Weather Today"
    title_calls = [c for c in requests_for(mock_http, "POST", CHAT_URL) if not c.kwargs["json"]["stream"]]
    assert len(title_calls) == 1
    body = title_calls[0].kwargs["json"]
    assert body["messages"] == [
        {"role": "assistant", "content": TITLE_PROMPT},
        {"role": "user", "content": "What's the weather like?"},
    ]
    assert body["max_completion_tokens"] == 15
    assert body["temperature"] == 0.2


@pytest.mark.asyncio
async def test_title_failure_does_not_affect_turn(
    controller, store, mock_http: aioresponses, streaming_params
) -> None:
    conversation = store.create_conversation()

    def _callback(url, **kwargs):
        if kwargs["json"].get("stream"):
            return CallbackResult(body=sse_body([content_frame("Fine")]))
        return CallbackResult(status=500, body="title model exploded")

    mock_http.post(CHAT_URL, callback=_callback, repeat=True)

    result = await controller.send(conversation, "Hello", streaming_params)
    await controller.title_generator.wait_idle()

    assert result.state is SessionState.COMPLETED
    assert result.content_message.text == "Fine"
    assert conversation.title is None


@pytest.mark.asyncio
async def test_titled_conversation_gets_no_title_request(
    controller, titled_conversation, mock_http, streaming_params
) -> None:
    mock_http.post(CHAT_URL, body=sse_body([content_frame("ok")]))
    await controller.send(titled_conversation, "Hi", streaming_params)
    assert controller.title_generator.pending == 0
    assert len(requests_for(mock_http, "POST", CHAT_URL)) == 1


@pytest.mark.asyncio
async def test_cancelling_turn_keeps_title_request(fake_controller, fake_client: FakeClient, store) -> None:
    conversation = store.create_conversation()
    fake_client.completion_text = "Bedtime Story"
    task = asyncio.create_task(fake_controller.send(conversation, "Tell me a story", GenerationParameters()))
    await wait_for(lambda: fake_controller.busy and fake_controller.active_session.state is SessionState.STREAMING)

    fake_controller.cancel()
    assert (await task).state is SessionState.CANCELLED
    await fake_controller.title_generator.wait_idle()
    assert conversation.title == "Bedtime Story"


# ============================================================================
# Logging
# ============================================================================


@pytest.mark.asyncio
async def test_turn_logs_captured_and_cleaned(controller, titled_conversation, mock_http, streaming_params) -> None:
    mock_http.post(CHAT_URL, body=sse_body([content_frame("ok")]))

    result = await controller.send(titled_conversation, "Hi", streaming_params)

    assert result.logs
    assert all(event["request_id"] == result.request_id for event in result.logs)
    assert any("completed" in event["message"] for event in result.logs)
    assert result.request_id not in SessionLogger.logs
    assert SessionLogger.request_id.get() is None

