"""
Upstream completion source for the chat endpoints.

Wraps the provider's OpenAI-compatible chat completions endpoint:
    - One optional, blocking title request (see title_generator)
    - One streaming request with the full conversation and a persona prompt

The streaming request is opened and its status and content type checked
before the caller receives a DeltaStream. A rejected stream therefore fails
before any bytes are written to the client, while failures while reading
the stream surface as UpstreamError from the iteration itself.

Provider streaming format:
    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"choices": [{"delta": {"content": "lo"}}]}
    data: [DONE]

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
import structlog
from httpx_sse import EventSource, SSEError

from strive_api.config import ServiceSettings
from strive_api.schemas import ConversationTurn
from strive_api.services.errors import (
    UpstreamError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from strive_api.services.title_generator import generate_title

logger = structlog.get_logger(__name__)

# Provider end-of-stream sentinel
DONE_SENTINEL: str = "[DONE]"

# Max characters of a rejected response body kept in logs
MAX_ERROR_BODY_LOG_LENGTH: int = 500


def parse_delta(data: str) -> str:
    """
    Extract the text delta from one provider stream payload.

    Args:
        data: JSON payload of a single ``data:`` frame

    Returns:
        str: The delta text; empty for role-only, usage or finish chunks

    Raises:
        UpstreamResponseError: If the payload is not JSON or has no usable shape
        UpstreamError: If the provider reports an error inside the stream

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as e:
        raise UpstreamResponseError(f"Malformed stream chunk: {data[:100]!r}") from e

    if not isinstance(chunk, dict):
        raise UpstreamResponseError("Stream chunk is not an object")

    if chunk.get("error"):
        error = chunk["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise UpstreamError(f"Provider stream error: {message}")

    choices = chunk.get("choices") or []
    if not isinstance(choices, list):
        raise UpstreamResponseError("Stream chunk choices is not a list")
    if not choices:
        return ""
    if not isinstance(choices[0], dict):
        raise UpstreamResponseError("Stream chunk choice is not an object")

    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""

    content = delta.get("content")
    return content if isinstance(content, str) else ""


def build_stream_payload(
    turns: Sequence[ConversationTurn],
    *,
    model: str,
    system_prompt: str,
    settings: ServiceSettings,
) -> dict[str, Any]:
    """Request body for the streaming reply: persona prompt followed by the conversation."""
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            *({"role": t.role, "content": t.content} for t in turns),
        ],
        "temperature": settings.completion_temperature,
        "max_tokens": settings.completion_max_tokens,
        "stream": True,
    }


class DeltaStream:
    """
    Lazy, finite, forward-only sequence of reply deltas.

    Wraps an open streaming response. It can be iterated exactly once and
    yields only non-empty deltas. The response is released when iteration
    ends, fails, or ``aclose()`` is called, whichever comes first.

    Attributes:
        model: Model that produces the stream

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    def __init__(self, response: httpx.Response, *, timeout: float, model: str):
        self._response = response
        self._timeout = timeout
        self._consumed = False
        self.model = model

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("DeltaStream can only be iterated once")
        self._consumed = True
        return self._iter_deltas()

    async def _iter_deltas(self) -> AsyncIterator[str]:
        deadline = time.monotonic() + self._timeout
        event_source = EventSource(self._response)
        try:
            async for sse in event_source.aiter_sse():
                if time.monotonic() > deadline:
                    raise UpstreamTimeoutError(
                        f"Stream exceeded {self._timeout:g}s budget"
                    )
                if sse.data == DONE_SENTINEL:
                    return
                if not sse.data:
                    continue
                delta = parse_delta(sse.data)
                if delta:
                    yield delta
        except SSEError as e:
            # SSEError subclasses httpx.TransportError
            raise UpstreamResponseError(f"Invalid event stream: {e}") from e
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Stream read timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Stream connection failed: {e}") from e
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the underlying response. Safe to call more than once."""
        if not self._response.is_closed:
            await self._response.aclose()


@dataclass(frozen=True)
class Completion:
    """Result of CompletionSource.open: optional title and the reply stream."""
    title: Optional[str]
    stream: DeltaStream


class CompletionSource:
    """
    Provider-facing side of a chat request.

    Holds no per-request state; one instance serves all requests.

    Args:
        client: Pooled provider HTTP client
        settings: Service settings (URL, models, budgets, timeouts)

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    def __init__(self, client: httpx.AsyncClient, settings: ServiceSettings):
        self._client = client
        self._settings = settings

    @property
    def settings(self) -> ServiceSettings:
        return self._settings

    async def generate_title(self, first_message: str) -> str:
        """
        Generate a conversation title, bounded by TITLE_TIMEOUT overall.

        Raises:
            UpstreamError: On any provider failure, including timeout

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        try:
            return await asyncio.wait_for(
                generate_title(self._client, self._settings, first_message),
                timeout=self._settings.title_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("completion.title.timeout", timeout=self._settings.title_timeout)
            raise UpstreamTimeoutError("Title request timed out") from e

    async def open_stream(
        self,
        turns: Sequence[ConversationTurn],
        *,
        model: str,
        system_prompt: str,
    ) -> DeltaStream:
        """
        Open the streaming reply request and verify it was accepted.

        Args:
            turns: Conversation, oldest first
            model: Provider model ID
            system_prompt: Persona/formatting instruction prepended to the turns

        Returns:
            DeltaStream: Unconsumed stream of reply deltas

        Raises:
            UpstreamTimeoutError: If connecting or waiting for headers timed out
            UpstreamError: On network failure or non-2xx response
            UpstreamResponseError: If the accepted response is not an event stream

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        payload = build_stream_payload(
            turns, model=model, system_prompt=system_prompt, settings=self._settings
        )
        request = self._client.build_request(
            "POST",
            self._settings.get_chat_completions_url(),
            json=payload,
            headers={"Accept": "text/event-stream"},
        )

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning("completion.stream.timeout", model=model)
            raise UpstreamTimeoutError("Stream request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("completion.stream.connect_error", model=model, error=str(e))
            raise UpstreamError(f"Stream request failed: {e}") from e

        if response.status_code != 200:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            logger.warning(
                "completion.stream.backend_error",
                model=model,
                status_code=response.status_code,
                body=body[:MAX_ERROR_BODY_LOG_LENGTH],
            )
            raise UpstreamError(
                f"Stream request returned {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            await response.aclose()
            logger.warning(
                "completion.stream.not_event_stream",
                model=model,
                content_type=content_type,
            )
            raise UpstreamResponseError(
                f"Stream request answered with {content_type or 'no content type'}"
            )

        logger.debug("completion.stream.opened", model=model, message_count=len(turns))
        return DeltaStream(response, timeout=self._settings.stream_timeout, model=model)

    async def open(
        self,
        turns: Sequence[ConversationTurn],
        is_new_conversation: bool,
        *,
        model: str,
        system_prompt: str,
    ) -> Completion:
        """
        Fetch the title (new conversations only), then open the reply stream.

        The title request completes before the stream request is sent and
        uses only the first turn's content.

        Raises:
            UpstreamError: If either request fails

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        title: Optional[str] = None
        if is_new_conversation and turns:
            title = await self.generate_title(turns[0].content)

        stream = await self.open_stream(turns, model=model, system_prompt=system_prompt)
        return Completion(title=title, stream=stream)
