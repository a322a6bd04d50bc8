import asyncio
import json
from typing import Any, Callable, Iterable, Optional

import httpx
import pytest

from strive_api.config import ServiceSettings, get_settings


def openai_sse(deltas: Iterable[str], *, done: bool = True) -> bytes:
    """Provider streaming body: one chunk per delta, then [DONE]."""
    frames = [
        {"choices": [{"index": 0, "delta": {"role": "assistant"}}]},
        *({"choices": [{"index": 0, "delta": {"content": d}}]} for d in deltas),
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
    ]
    body = "".join(f"data: {json.dumps(f)}\n\n" for f in frames)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode()


def title_body(title: str) -> dict:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": title}}]}


class FakeProvider:
    """Records provider calls and answers title and stream requests."""

    def __init__(
        self,
        deltas: Iterable[str] = (),
        *,
        title: str = "Focus Tips",
        stream_status: int = 200,
        title_status: int = 200,
        stream_body: Optional[Any] = None,
        title_delay: float = 0.0,
        stream_delay: float = 0.0,
    ):
        self.deltas = list(deltas)
        self.title = title
        self.stream_status = stream_status
        self.title_status = title_status
        self.stream_body = stream_body
        self.title_delay = title_delay
        self.stream_delay = stream_delay
        self.requests: list[dict] = []

    @property
    def title_requests(self) -> list[dict]:
        return [r for r in self.requests if not r.get("stream")]

    @property
    def stream_requests(self) -> list[dict]:
        return [r for r in self.requests if r.get("stream")]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        payload["_authorization"] = request.headers.get("Authorization")
        self.requests.append(payload)

        if not payload.get("stream"):
            if self.title_status != 200:
                return httpx.Response(self.title_status, json={"error": {"message": "nope"}})
            return httpx.Response(200, json=title_body(self.title))

        if self.stream_status != 200:
            return httpx.Response(self.stream_status, json={"error": {"message": "rate limited"}})
        body = self.stream_body if self.stream_body is not None else openai_sse(self.deltas)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    async def handle_async(self, request: httpx.Request) -> httpx.Response:
        delay = self.stream_delay if json.loads(request.content).get("stream") else self.title_delay
        if delay:
            await asyncio.sleep(delay)
        return self(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle_async)


def parse_frames(body: str) -> list[dict]:
    """Decode ``data: <json>\\n\\n`` frames from a response body."""
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block:
            assert block.startswith("data: "), block
            events.append(json.loads(block[len("data: "):]))
    return events


@pytest.fixture
def make_settings() -> Callable[..., ServiceSettings]:
    def _make(**overrides) -> ServiceSettings:
        values = {"openai_api_key": "sk-test", "flush_delay": 0.0, "http2": False}
        values.update(overrides)
        return ServiceSettings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> ServiceSettings:
    return make_settings()


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
