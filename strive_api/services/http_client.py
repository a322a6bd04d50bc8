"""
HTTP client with connection pooling for completion provider communication.

Provides a long-lived httpx AsyncClient with proper connection pooling,
timeouts, and resource management. One client is created per process in
the application lifespan and closed on shutdown; it is passed explicitly
to the services that need it instead of living in a module global.

Configuration (see ServiceSettings):
    HTTP_MAX_CONNECTIONS: Maximum total connections in pool (default 100)
    HTTP_MAX_KEEPALIVE: Maximum keep-alive connections (default 20)
    HTTP_TIMEOUT_CONNECT: Connection timeout in seconds (default 5.0)
    HTTP_TIMEOUT_READ: Read timeout in seconds (default 60.0)
    HTTP_TIMEOUT_WRITE: Write timeout in seconds (default 30.0)
    HTTP_TIMEOUT_POOL: Pool timeout in seconds (default 10.0)
    HTTP2: Enable HTTP/2 (default true)

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
from typing import Optional

import httpx
import structlog

from strive_api.config import ServiceSettings

logger = structlog.get_logger(__name__)


# ============================================================================
# Client Configuration
# ============================================================================

def _create_limits(settings: ServiceSettings) -> httpx.Limits:
    """
    Create connection pool limits configuration.

    Args:
        settings: Service settings

    Returns:
        httpx.Limits: Configured connection limits

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    return httpx.Limits(
        max_connections=settings.http_max_connections,
        max_keepalive_connections=settings.http_max_keepalive,
        keepalive_expiry=5.0,  # Close idle connections after 5 seconds
    )


def _create_timeout(settings: ServiceSettings) -> httpx.Timeout:
    """
    Create timeout configuration for HTTP requests.

    The read timeout bounds the wait for each streamed chunk, not the whole
    stream; the total stream duration is bounded separately.

    Args:
        settings: Service settings

    Returns:
        httpx.Timeout: Configured timeout settings

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    return httpx.Timeout(
        connect=settings.http_timeout_connect,
        read=settings.http_timeout_read,
        write=settings.http_timeout_write,
        pool=settings.http_timeout_pool,
    )


def create_client(
    settings: ServiceSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create the provider HTTP client.

    The provider credential is attached as a default Authorization header.

    Args:
        settings: Service settings
        transport: Optional transport override (tests use httpx.MockTransport)

    Returns:
        httpx.AsyncClient: Pooled client instance

    Note:
        Call close_client() during application shutdown to properly
        release all connections.

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    logger.info(
        "http_client.init",
        max_connections=settings.http_max_connections,
        max_keepalive=settings.http_max_keepalive,
        http2=settings.http2,
    )
    return httpx.AsyncClient(
        limits=_create_limits(settings),
        timeout=_create_timeout(settings),
        http2=settings.http2 and transport is None,
        transport=transport,
        headers={
            "Authorization": f"Bearer {settings.openai_api_key.get_secret_value()}",
        },
    )


async def close_client(client: Optional[httpx.AsyncClient]) -> None:
    """
    Close the HTTP client and release all connections.

    Args:
        client: Client to close; None is ignored

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    if client is not None and not client.is_closed:
        logger.info("http_client.close")
        await client.aclose()
        logger.info("http_client.closed")
