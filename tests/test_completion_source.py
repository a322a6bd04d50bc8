import asyncio
import json

import httpx
import pytest

from conftest import FakeProvider, openai_sse
from strive_api.prompts import CHATBOT_SYSTEM_PROMPT, TITLE_SYSTEM_PROMPT
from strive_api.schemas import ConversationTurn
from strive_api.services.completion_source import CompletionSource, DeltaStream, parse_delta
from strive_api.services.errors import (
    UpstreamError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from strive_api.services.http_client import create_client
from strive_api.services.title_generator import parse_title_response


TURNS = [
    ConversationTurn(role="user", content="How do I stay focused while studying?"),
    ConversationTurn(role="assistant", content="Try short sessions."),
    ConversationTurn(role="user", content="How short?"),
]


def _run_with_source(settings, handler, fn):
    async def main():
        client = create_client(settings, transport=httpx.MockTransport(handler))
        try:
            return await fn(CompletionSource(client, settings))
        finally:
            await client.aclose()

    return asyncio.run(main())


async def _drain(stream) -> list[str]:
    return [d async for d in stream]


# ----------------------------------------------------------------------------
# Payload parsing
# ----------------------------------------------------------------------------

def test_parse_delta_extracts_content_and_ignores_role_chunks():
    assert parse_delta(json.dumps({"choices": [{"delta": {"content": "Hi"}}]})) == "Hi"
    assert parse_delta(json.dumps({"choices": [{"delta": {"role": "assistant"}}]})) == ""
    assert parse_delta(json.dumps({"choices": []})) == ""


def test_parse_delta_rejects_malformed_and_error_chunks():
    with pytest.raises(UpstreamResponseError):
        parse_delta("{not json")
    with pytest.raises(UpstreamError):
        parse_delta(json.dumps({"error": {"message": "overloaded"}}))
    with pytest.raises(UpstreamResponseError):
        parse_delta(json.dumps({"choices": {"x": 1}}))
    with pytest.raises(UpstreamResponseError):
        parse_delta(json.dumps({"choices": ["text"]}))


def test_parse_title_response_cleans_quotes_and_falls_back_when_empty():
    assert parse_title_response({"choices": [{"message": {"content": ' "Focus Tips" '}}]}, "x") == "Focus Tips"
    assert (
        parse_title_response({"choices": [{"message": {"content": ""}}]}, "Plan my week for exams please now")
        == "Plan my week for exams"
    )
    with pytest.raises(UpstreamResponseError):
        parse_title_response({"nope": True}, "x")


# ----------------------------------------------------------------------------
# Streaming
# ----------------------------------------------------------------------------

def test_open_stream_yields_non_empty_deltas_and_sends_full_conversation(settings):
    provider = FakeProvider(["Five", " minutes", "."])

    async def fn(source):
        stream = await source.open_stream(TURNS, model="m-chat", system_prompt=CHATBOT_SYSTEM_PROMPT)
        deltas = await _drain(stream)
        return stream, deltas

    stream, deltas = _run_with_source(settings, provider, fn)

    assert deltas == ["Five", " minutes", "."]
    assert stream.closed
    sent = provider.stream_requests[0]
    assert sent["model"] == "m-chat"
    assert sent["messages"][0] == {"role": "system", "content": CHATBOT_SYSTEM_PROMPT}
    assert sent["messages"][1:] == [t.model_dump() for t in TURNS]
    assert sent["temperature"] > 0
    assert sent["_authorization"] == "Bearer sk-test"


def test_open_stream_rejected_status_raises_before_iteration(settings):
    provider = FakeProvider(stream_status=429)

    async def fn(source):
        with pytest.raises(UpstreamError) as excinfo:
            await source.open_stream(TURNS, model="m", system_prompt="p")
        return excinfo.value

    error = _run_with_source(settings, provider, fn)
    assert error.status_code == 429


def test_stream_can_only_be_iterated_once(settings):
    async def fn(source):
        stream = await source.open_stream(TURNS, model="m", system_prompt="p")
        await _drain(stream)
        with pytest.raises(RuntimeError):
            stream.__aiter__()

    _run_with_source(settings, FakeProvider(["a"]), fn)


def test_malformed_chunk_mid_stream_raises_upstream_error(settings):
    body = openai_sse(["Hello"], done=False) + b"data: {broken\n\n"
    provider = FakeProvider(stream_body=body)

    async def fn(source):
        stream = await source.open_stream(TURNS, model="m", system_prompt="p")
        seen = []
        with pytest.raises(UpstreamResponseError):
            async for delta in stream:
                seen.append(delta)
        return seen, stream

    seen, stream = _run_with_source(settings, provider, fn)
    assert seen == ["Hello"]
    assert stream.closed


def test_non_event_stream_answer_is_rejected_at_open(settings):
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    async def fn(source):
        with pytest.raises(UpstreamResponseError):
            await source.open_stream(TURNS, model="m", system_prompt="p")

    _run_with_source(settings, handler, fn)


def test_invalid_event_stream_maps_to_response_error():
    response = httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html>bad gateway</html>")
    stream = DeltaStream(response, timeout=5.0, model="m")

    async def main():
        with pytest.raises(UpstreamResponseError):
            await _drain(stream)

    asyncio.run(main())
    assert stream.closed


def test_malformed_choices_mid_stream_raises_response_error(settings):
    body = b'data: {"choices": {"x": 1}}\n\ndata: [DONE]\n\n'

    async def fn(source):
        stream = await source.open_stream(TURNS, model="m", system_prompt="p")
        with pytest.raises(UpstreamResponseError):
            await _drain(stream)

    _run_with_source(settings, FakeProvider(stream_body=body), fn)


def test_stream_exceeding_total_duration_times_out(make_settings):
    settings = make_settings(stream_timeout=0.05)

    async def slow_body():
        yield b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n'
        await asyncio.sleep(0.2)
        yield b'data: {"choices":[{"delta":{"content":" late"}}]}\n\n'
        yield b"data: [DONE]\n\n"

    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=slow_body())

    async def fn(source):
        stream = await source.open_stream(TURNS, model="m", system_prompt="p")
        seen = []
        with pytest.raises(UpstreamTimeoutError):
            async for delta in stream:
                seen.append(delta)
        return seen, stream

    seen, stream = _run_with_source(settings, handler, fn)
    assert seen == ["Hello"]
    assert stream.closed


def test_network_failure_on_open_is_upstream_error(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async def fn(source):
        with pytest.raises(UpstreamError):
            await source.open_stream(TURNS, model="m", system_prompt="p")

    _run_with_source(settings, handler, fn)


# ----------------------------------------------------------------------------
# Title
# ----------------------------------------------------------------------------

def test_open_new_conversation_fetches_title_from_first_message_first(make_settings):
    settings = make_settings(title_model="m-title")
    provider = FakeProvider(["Hi", "!"], title='"Focus Tips"')

    async def fn(source):
        completion = await source.open(TURNS, True, model="m-chat", system_prompt="p")
        return completion.title, await _drain(completion.stream)

    title, deltas = _run_with_source(settings, provider, fn)

    assert title == "Focus Tips"
    assert deltas == ["Hi", "!"]
    assert [r.get("stream") for r in provider.requests] == [False, True]
    title_request = provider.title_requests[0]
    assert title_request["model"] == "m-title"
    assert title_request["messages"] == [
        {"role": "system", "content": TITLE_SYSTEM_PROMPT},
        {"role": "user", "content": TURNS[0].content},
    ]


def test_open_existing_conversation_makes_no_title_call(settings):
    provider = FakeProvider(["ok"])

    async def fn(source):
        completion = await source.open(TURNS, False, model="m", system_prompt="p")
        await _drain(completion.stream)
        return completion.title

    assert _run_with_source(settings, provider, fn) is None
    assert provider.title_requests == []


def test_title_failure_aborts_open_before_streaming(settings):
    provider = FakeProvider(["never"], title_status=500)

    async def fn(source):
        with pytest.raises(UpstreamError):
            await source.open(TURNS, True, model="m", system_prompt="p")

    _run_with_source(settings, provider, fn)
    assert provider.stream_requests == []


def test_title_timeout_is_upstream_timeout(make_settings):
    settings = make_settings(title_timeout=0.01)

    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async def fn(source):
        with pytest.raises(UpstreamTimeoutError):
            await source.generate_title("hello")

    _run_with_source(settings, handler, fn)


def test_title_request_carries_long_first_message_in_full(settings):
    long_message = "I keep putting off my thesis chapter. " * 12
    provider = FakeProvider()

    async def fn(source):
        return await source.generate_title(long_message)

    assert _run_with_source(settings, provider, fn) == "Focus Tips"
    assert len(long_message) > 200
    assert provider.title_requests[0]["messages"][1] == {"role": "user", "content": long_message}
