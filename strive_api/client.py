"""
Async Python client for the Strive streaming endpoints.

Consumes ``/api/assistant`` and ``/api/chatbot`` over SSE and yields parsed
OutboundEvent objects until the terminal ``done`` event:

    async with StriveClient("http://localhost:3000") as client:
        async for event in client.stream_chatbot(turns, is_new_conversation=True):
            if event.content:
                print(event.content, end="")

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
import json
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
import structlog
from httpx_sse import aconnect_sse
from pydantic import ValidationError

from strive_api.schemas import ConversationTurn, OutboundEvent

logger = structlog.get_logger(__name__)


class StriveClientError(Exception):
    """
    The server refused the request before streaming started.

    Attributes:
        status_code: HTTP status returned by the server
        message: ``error`` field of the response body, or the raw body

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class StriveClient:
    """
    Thin SSE consumer for a running Strive API.

    Args:
        base_url: Server root, e.g. ``http://localhost:3000``
        timeout: Read timeout per streamed chunk, in seconds
        transport: Optional transport override (tests)

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> "StriveClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def stream_assistant(self, messages: Sequence[ConversationTurn]) -> AsyncIterator[OutboundEvent]:
        """Stream a productivity coach reply."""
        return self._stream("/api/assistant", {"messages": _dump_turns(messages)})

    def stream_chatbot(
        self,
        messages: Sequence[ConversationTurn],
        is_new_conversation: bool = False,
    ) -> AsyncIterator[OutboundEvent]:
        """Stream a general assistant reply, titled when the conversation is new."""
        return self._stream(
            "/api/chatbot",
            {
                "messages": _dump_turns(messages),
                "isNewConversation": is_new_conversation,
            },
        )

    async def _stream(self, path: str, payload: dict[str, Any]) -> AsyncIterator[OutboundEvent]:
        async with aconnect_sse(self._client, "POST", path, json=payload) as event_source:
            response = event_source.response
            if response.status_code != 200:
                await response.aread()
                raise StriveClientError(response.status_code, _error_message(response))

            async for sse in event_source.aiter_sse():
                if not sse.data:
                    continue
                try:
                    event = OutboundEvent.model_validate_json(sse.data)
                except ValidationError:
                    logger.warning("strive_client.bad_event", path=path, data=sse.data[:200])
                    continue

                yield event
                if event.is_terminal:
                    return


def _dump_turns(messages: Sequence[ConversationTurn]) -> list[dict[str, str]]:
    return [turn.model_dump() for turn in messages]


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except json.JSONDecodeError:
        return response.text
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return response.text
