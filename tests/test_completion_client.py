"""Tests for the completion client against a mocked transport."""
import asyncio
import json

import httpx
import pytest

from merkle_chat.completion_client import CompletionClient, category_for_status, parse_completion
from merkle_chat.errors import CompletionError, ErrorCategory
from merkle_chat.models import Message, Sender
from merkle_chat.prompts import QueryKind, classify_query
from merkle_chat.retry import RetryingExecutor


def ok_body(content="Hello from the service"):
    return {
        "id": "cmpl-1",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
    }


class Recorder:
    """Mock transport handler replaying (status, body) pairs; the last repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)


def make_client(settings, handler, sleep):
    return CompletionClient(
        settings,
        executor=RetryingExecutor(sleep=sleep),
        transport=httpx.MockTransport(handler),
    )


def test_status_mapping():
    assert category_for_status(401) == ErrorCategory.AUTH_ERROR
    assert category_for_status(403) == ErrorCategory.AUTH_ERROR
    assert category_for_status(429) == ErrorCategory.RATE_LIMITED
    assert category_for_status(500) == ErrorCategory.SERVICE_UNAVAILABLE
    assert category_for_status(503) == ErrorCategory.SERVICE_UNAVAILABLE
    assert category_for_status(404) == ErrorCategory.REQUEST_ERROR


def test_parse_completion_rejects_empty_content():
    assert parse_completion(ok_body("  trimmed  ")) == "trimmed"
    with pytest.raises(CompletionError) as exc_info:
        parse_completion({"choices": []})
    assert exc_info.value.category == ErrorCategory.MALFORMED_RESPONSE
    with pytest.raises(CompletionError):
        parse_completion(ok_body("   "))


def test_classifier():
    assert classify_query("how do I fix this component?") == QueryKind.DOMAIN_PLUS_CONTEXT
    assert classify_query("what is an NFT?") == QueryKind.DOMAIN_ONLY


def test_build_messages_caps_history(live_settings):
    client = CompletionClient(live_settings)
    history = [
        Message(text=f"h{i}", sender=Sender.USER if i % 2 == 0 else Sender.ASSISTANT)
        for i in range(15)
    ]

    messages = client.build_messages("new question", history)

    assert messages[0]["role"] == "system"
    assert [m["content"] for m in messages[1:-1]] == [f"h{i}" for i in range(5, 15)]
    assert messages[1]["role"] == "assistant"
    assert messages[-1] == {"role": "user", "content": "new question"}


def test_project_context_only_for_code_queries(live_settings):
    live_settings.project_context = "A FastAPI chat service."
    client = CompletionClient(live_settings)

    code_prompt = client.build_messages("refactor the dispatcher")[0]["content"]
    domain_prompt = client.build_messages("what is bitcoin")[0]["content"]

    assert "A FastAPI chat service." in code_prompt
    assert "A FastAPI chat service." not in domain_prompt


@pytest.mark.asyncio
async def test_send_posts_expected_request(live_settings, recording_sleep):
    handler = Recorder((200, ok_body()))

    async with make_client(live_settings, handler, recording_sleep) as client:
        reply = await client.send("hello")

    assert reply == "Hello from the service"
    request = handler.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://completions.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer test-key"
    body = json.loads(request.content)
    assert body["model"] == "grok-test"
    assert body["stream"] is False
    assert body["max_tokens"] == 2000
    assert body["messages"][-1] == {"role": "user", "content": "hello"}


@pytest.mark.asyncio
async def test_unauthorized_is_attempted_once(live_settings, recording_sleep):
    handler = Recorder((401, {"error": {"message": "bad key", "type": "auth"}}))

    async with make_client(live_settings, handler, recording_sleep) as client:
        with pytest.raises(CompletionError) as exc_info:
            await client.send("hello")

    assert exc_info.value.category == ErrorCategory.AUTH_ERROR
    assert exc_info.value.status_code == 401
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried(live_settings, recording_sleep):
    handler = Recorder(
        (503, None),
        (429, None),
        (200, ok_body("finally")),
    )

    async with make_client(live_settings, handler, recording_sleep) as client:
        reply = await client.send("hello")

    assert reply == "finally"
    assert len(handler.requests) == 3
    assert recording_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_permanent_server_error_uses_whole_budget(live_settings, recording_sleep):
    handler = Recorder((500, None))

    async with make_client(live_settings, handler, recording_sleep) as client:
        with pytest.raises(CompletionError) as exc_info:
            await client.send("hello")

    assert exc_info.value.category == ErrorCategory.SERVICE_UNAVAILABLE
    assert len(handler.requests) == 4
    assert recording_sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_request_error_uses_service_message(live_settings, recording_sleep):
    handler = Recorder((400, {"error": {"message": "model not found", "type": "invalid"}}))

    async with make_client(live_settings, handler, recording_sleep) as client:
        with pytest.raises(CompletionError) as exc_info:
            await client.send("hello")

    assert exc_info.value.category == ErrorCategory.REQUEST_ERROR
    assert exc_info.value.message == "model not found"
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_missing_choices_is_malformed(live_settings, recording_sleep):
    handler = Recorder((200, {"choices": []}))

    async with make_client(live_settings, handler, recording_sleep) as client:
        with pytest.raises(CompletionError) as exc_info:
            await client.send("hello")

    assert exc_info.value.category == ErrorCategory.MALFORMED_RESPONSE
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_connection_errors_are_service_unavailable(live_settings, recording_sleep):
    live_settings.max_retries = 1

    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    async with make_client(live_settings, refuse, recording_sleep) as client:
        with pytest.raises(CompletionError) as exc_info:
            await client.send("hello")

    assert exc_info.value.category == ErrorCategory.SERVICE_UNAVAILABLE
    assert recording_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_offline_mode_never_uses_network(offline_settings):
    def explode(request):
        raise AssertionError("network must not be used")

    client = CompletionClient(offline_settings, transport=httpx.MockTransport(explode))
    async with client:
        reply = await client.send("Tell me about blockchain")
        assert await client.health_check() is True

    assert "Blockchain" in reply


@pytest.mark.asyncio
async def test_missing_api_key_forces_offline(offline_settings):
    offline_settings.use_offline_responder = False
    client = CompletionClient(offline_settings)

    assert client.offline_mode is True
    assert "Thank you for your question" in await client.send("hi")


@pytest.mark.asyncio
async def test_health_check_does_not_retry(live_settings, recording_sleep):
    handler = Recorder((503, None))

    async with make_client(live_settings, handler, recording_sleep) as client:
        assert await client.health_check() is False

    assert len(handler.requests) == 1
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_concurrent_calls_never_overlap(live_settings, recording_sleep):
    active = []
    peak = []

    async def slow(request):
        active.append(request)
        peak.append(len(active))
        await asyncio.sleep(0.01)
        active.pop()
        return httpx.Response(200, json=ok_body())

    async with make_client(live_settings, slow, recording_sleep) as client:
        results = await asyncio.gather(client.send("first"), client.health_check(), client.send("second"))

    assert results == ["Hello from the service", True, "Hello from the service"]
    assert max(peak) == 1
