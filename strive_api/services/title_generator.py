"""Generate conversation titles from the first user message.

This module provides functionality to generate concise, descriptive titles
for new conversations. It issues one non-streaming chat completion request
with a small token budget and only the first message as context.

Provider failures are raised as UpstreamError; an empty but otherwise valid
answer falls back to the first words of the message.

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
import json
from typing import Any

import httpx
import structlog

from strive_api.config import ServiceSettings
from strive_api.prompts import TITLE_SYSTEM_PROMPT
from strive_api.services.errors import (
    UpstreamError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)

logger = structlog.get_logger(__name__)

# Maximum length for generated title
MAX_TITLE_LENGTH: int = 50

FALLBACK_TITLE: str = "New Chat"


def _create_fallback_title(message: str) -> str:
    """
    Create a fallback title from the first few words of a message.

    Args:
        message: The user message

    Returns:
        str: Fallback title (first 5 words, max 50 chars)

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    if not message:
        return FALLBACK_TITLE

    words = message.split()[:5]
    fallback = " ".join(words)[:MAX_TITLE_LENGTH]
    return fallback if fallback.strip() else FALLBACK_TITLE


def _clean_title(title: str) -> str:
    """
    Clean and normalize a generated title.

    Removes surrounding whitespace and quotes, and truncates to max length.

    Args:
        title: Raw title from LLM

    Returns:
        str: Cleaned title

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    title = title.strip()

    # Remove surrounding quotes
    if (title.startswith('"') and title.endswith('"')) or \
       (title.startswith("'") and title.endswith("'")):
        title = title[1:-1]

    # Also strip any remaining quote characters from edges
    title = title.strip('"\'').strip()

    return title[:MAX_TITLE_LENGTH].rstrip()


def _extract_text_content(value: Any) -> str:
    """Normalize model message content payloads to plain text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: list[str] = []
        for item in value:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return str(value)


def build_title_payload(first_message: str, settings: ServiceSettings) -> dict[str, Any]:
    """Request body for the title completion: title instruction plus the first message only."""
    return {
        "model": settings.title_model,
        "messages": [
            {"role": "system", "content": TITLE_SYSTEM_PROMPT},
            {"role": "user", "content": first_message},
        ],
        "temperature": settings.title_temperature,
        "max_tokens": settings.title_max_tokens,
        "stream": False,
    }


def parse_title_response(data: Any, first_message: str) -> str:
    """
    Extract and clean the title from a chat completion response body.

    Args:
        data: Decoded JSON response
        first_message: Message the title was generated from (for fallback)

    Returns:
        str: Cleaned title, or the fallback title if the model answered empty

    Raises:
        UpstreamResponseError: If the body has no choices/message structure

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise UpstreamResponseError(f"Title response missing choices: {e!r}") from e

    if not isinstance(message, dict):
        raise UpstreamResponseError("Title response message is not an object")

    title = _clean_title(_extract_text_content(message.get("content")))
    if not title:
        logger.warning("title_generation.empty_response")
        return _create_fallback_title(first_message)
    return title


async def generate_title(
    client: httpx.AsyncClient,
    settings: ServiceSettings,
    first_message: str,
) -> str:
    """
    Generate a concise title from the first user message.

    Args:
        client: Provider HTTP client
        settings: Service settings (model, budget, timeout, URL)
        first_message: The first message of the conversation

    Returns:
        str: Generated title (never empty)

    Raises:
        UpstreamTimeoutError: If the request exceeds TITLE_TIMEOUT
        UpstreamError: On network failure or non-2xx response
        UpstreamResponseError: On a malformed response body

    Example:
        >>> title = await generate_title(client, settings, "How do I focus better?")
        >>> print(title)
        "Improving Focus Techniques"

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    model = settings.title_model

    try:
        response = await client.post(
            settings.get_chat_completions_url(),
            json=build_title_payload(first_message, settings),
            timeout=httpx.Timeout(settings.title_timeout),
        )
    except httpx.TimeoutException as e:
        logger.warning("title_generation.timeout", timeout=settings.title_timeout, model=model)
        raise UpstreamTimeoutError("Title request timed out") from e
    except httpx.HTTPError as e:
        logger.warning("title_generation.error", error=str(e), model=model)
        raise UpstreamError(f"Title request failed: {e}") from e

    if response.status_code != 200:
        logger.warning(
            "title_generation.backend_error",
            status_code=response.status_code,
            model=model
        )
        raise UpstreamError(
            f"Title request returned {response.status_code}",
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except json.JSONDecodeError as e:
        raise UpstreamResponseError("Title response is not JSON") from e

    title = parse_title_response(data, first_message)
    logger.debug("title_generation.success", model=model, title=title)
    return title
