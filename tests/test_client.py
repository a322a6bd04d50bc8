import asyncio
import json

import httpx
import pytest

from strive_api.client import StriveClient, StriveClientError
from strive_api.schemas import ConversationTurn


TURNS = [ConversationTurn(role="user", content="Help me plan my week")]


def _sse(*frames: str) -> bytes:
    return "".join(f"data: {f}\n\n" for f in frames).encode()


def _run(handler, fn):
    async def main():
        async with StriveClient("http://strive.test", transport=httpx.MockTransport(handler)) as client:
            return await fn(client)

    return asyncio.run(main())


def test_stream_chatbot_yields_events_until_done():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        body = _sse(
            '{"content":"Plan","title":"Week Plan"}',
            '{"content":" ahead.","title":"Week Plan"}',
            '{"done":true,"title":"Week Plan"}',
            '{"content":"ignored after done"}',
        )
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    async def fn(client):
        return [e async for e in client.stream_chatbot(TURNS, is_new_conversation=True)]

    events = _run(handler, fn)

    assert seen["path"] == "/api/chatbot"
    assert seen["body"] == {
        "messages": [{"role": "user", "content": "Help me plan my week"}],
        "isNewConversation": True,
    }
    assert [e.content for e in events[:-1]] == ["Plan", " ahead."]
    assert events[-1].is_terminal
    assert events[-1].title == "Week Plan"


def test_bad_frames_are_skipped():
    def handler(request):
        body = _sse('{"content":"One."}', "not json", '{"content":"Two."}', '{"done":true}')
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    async def fn(client):
        return [e async for e in client.stream_assistant(TURNS)]

    events = _run(handler, fn)
    assert [e.content for e in events if e.content] == ["One.", "Two."]
    assert events[-1].done


def test_server_error_raises_client_error_with_message():
    def handler(request):
        return httpx.Response(500, json={"error": "Failed to get AI response"})

    async def fn(client):
        with pytest.raises(StriveClientError) as excinfo:
            async for _ in client.stream_assistant(TURNS):
                pass
        return excinfo.value

    error = _run(handler, fn)
    assert error.status_code == 500
    assert error.message == "Failed to get AI response"
