"""
Streaming chat endpoints.

Implements the two persona endpoints consumed by the Strive web client:
    - POST /api/assistant - "Bob" productivity coach, sentence-buffered stream
    - POST /api/chatbot   - "StriveBot" general assistant, word-buffered stream
                            with an optional conversation title

Both endpoints answer with ``text/event-stream``. Failures detected before
the first byte is written (provider rejected the stream, title request
failed in inline mode) return HTTP 500 with ``{"error": "..."}`` instead.

Request Schema (chatbot):
{
    "messages": [{"role": "user", "content": "How do I focus?"}],
    "isNewConversation": true
}

Stream Schema:
    data: {"content":"Try short","title":"Focus Tips"}

    data: {"done":true,"title":"Focus Tips"}

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from strive_api.config import ServiceSettings
from strive_api.prompts import ASSISTANT_SYSTEM_PROMPT, CHATBOT_SYSTEM_PROMPT
from strive_api.schemas import AssistantRequest, ChatbotRequest, ErrorResponse
from strive_api.services.completion_source import CompletionSource
from strive_api.services.errors import UpstreamError, upstream_failure_error
from strive_api.services.forwarder import StreamForwarder, event_stream_response
from strive_api.services.rechunker import SentenceBufferingPolicy, WordBufferingPolicy

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")

_ERROR_RESPONSES = {500: {"model": ErrorResponse, "description": "Provider failure before streaming"}}


# ============================================================================
# Dependencies
# ============================================================================

def get_completion_source(request: Request) -> CompletionSource:
    """Process-wide CompletionSource created in the application lifespan."""
    return request.app.state.completion_source


def get_service_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/assistant", responses=_ERROR_RESPONSES)
async def stream_assistant(
    body: AssistantRequest,
    source: CompletionSource = Depends(get_completion_source),
    settings: ServiceSettings = Depends(get_service_settings),
):
    """
    Stream a reply from the productivity coach persona.

    Deltas are grouped into sentence-sized, whitespace-normalized events.
    No title is ever generated for this endpoint.

    Args:
        body: Conversation so far

    Returns:
        StreamingResponse of SSE frames, or a 500 JSON error

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    logger.info("chat.assistant.request", message_count=len(body.messages))

    try:
        stream = await source.open_stream(
            body.messages,
            model=settings.assistant_model,
            system_prompt=ASSISTANT_SYSTEM_PROMPT,
        )
    except UpstreamError as e:
        logger.error(
            "chat.assistant.upstream_error",
            error=str(e),
            error_type=type(e).__name__,
            status_code=e.status_code,
        )
        return upstream_failure_error()

    forwarder = StreamForwarder(
        stream,
        SentenceBufferingPolicy(),
        flush_delay=settings.flush_delay,
        endpoint="assistant",
    )
    return event_stream_response(forwarder.frames())


@router.post("/chatbot", responses=_ERROR_RESPONSES)
async def stream_chatbot(
    body: ChatbotRequest,
    source: CompletionSource = Depends(get_completion_source),
    settings: ServiceSettings = Depends(get_service_settings),
):
    """
    Stream a reply from the general assistant persona.

    For a new conversation with at least one message, a title is generated
    from the first message. With TITLE_DELIVERY=inline the title is fetched
    before streaming and carried on every event; with TITLE_DELIVERY=event
    it is fetched concurrently and announced in its own event.

    Args:
        body: Conversation so far and the new-conversation flag

    Returns:
        StreamingResponse of SSE frames, or a 500 JSON error

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    wants_title = body.is_new_conversation and bool(body.messages)

    logger.info(
        "chat.chatbot.request",
        message_count=len(body.messages),
        is_new_conversation=body.is_new_conversation,
        title_delivery=settings.title_delivery if wants_title else None,
    )

    if wants_title and settings.title_delivery == "event":
        return await _stream_with_title_event(body, source, settings)

    try:
        completion = await source.open(
            body.messages,
            body.is_new_conversation,
            model=settings.chatbot_model,
            system_prompt=CHATBOT_SYSTEM_PROMPT,
        )
    except UpstreamError as e:
        logger.error(
            "chat.chatbot.upstream_error",
            error=str(e),
            error_type=type(e).__name__,
            status_code=e.status_code,
        )
        return upstream_failure_error()

    forwarder = StreamForwarder(
        completion.stream,
        WordBufferingPolicy(),
        title=completion.title,
        flush_delay=settings.flush_delay,
        endpoint="chatbot",
    )
    return event_stream_response(forwarder.frames())


async def _stream_with_title_event(
    body: ChatbotRequest,
    source: CompletionSource,
    settings: ServiceSettings,
) -> StreamingResponse | JSONResponse:
    """Start the title concurrently, open the stream, hand both to the forwarder."""
    title_task: "asyncio.Task[str]" = asyncio.create_task(
        source.generate_title(body.messages[0].content)
    )

    try:
        stream = await source.open_stream(
            body.messages,
            model=settings.chatbot_model,
            system_prompt=CHATBOT_SYSTEM_PROMPT,
        )
    except UpstreamError as e:
        title_task.cancel()
        logger.error(
            "chat.chatbot.upstream_error",
            error=str(e),
            error_type=type(e).__name__,
            status_code=e.status_code,
        )
        return upstream_failure_error()

    # Nothing has been written yet, so an early title failure is still a 500
    title_error = _failed_title(title_task)
    if title_error is not None:
        await stream.aclose()
        logger.error(
            "chat.chatbot.title_error",
            error=str(title_error),
            error_type=type(title_error).__name__,
        )
        return upstream_failure_error()

    forwarder = StreamForwarder(
        stream,
        WordBufferingPolicy(),
        title_task=title_task,
        flush_delay=settings.flush_delay,
        endpoint="chatbot",
    )
    return event_stream_response(forwarder.frames())


def _failed_title(task: "asyncio.Task[str]") -> Optional[BaseException]:
    if not task.done() or task.cancelled():
        return None
    return task.exception()
