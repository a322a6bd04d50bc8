"""Strive API Service Configuration using Pydantic Settings.

Provides centralized configuration for the service including:
- Provider settings (API key, base URL, models, token budgets)
- Streaming settings (flush pacing, title delivery, timeouts)
- HTTP client pool settings
- Server bind settings

Configuration is loaded from environment variables and .env files using
Pydantic Settings. ``get_settings()`` caches a single instance which the
application builds once at startup and passes explicitly to the services
that need it.

The provider credential (``OPENAI_API_KEY``) has no default. Loading the
settings without it raises, and the application refuses to start.

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    """Core service configuration for strive-api.

    Settings are grouped by category:
    - Provider: credential, base URL, per-endpoint models
    - Generation: temperatures and token budgets
    - Streaming: pacing delay, title delivery mode, timeouts
    - HTTP: connection pool limits and timeouts
    - Server: bind address

    Example:
        >>> settings = get_settings()
        >>> settings.chatbot_model
        'gpt-3.5-turbo'

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore"
    )

    # Provider settings
    openai_api_key: SecretStr = Field(..., description="Provider API key (required)")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible base URL")
    assistant_model: str = Field(default="gpt-4", description="Model for /api/assistant")
    chatbot_model: str = Field(default="gpt-3.5-turbo", description="Model for /api/chatbot")
    title_model: str = Field(default="gpt-3.5-turbo", description="Model for title generation")

    # Generation settings
    completion_temperature: float = Field(default=0.7, gt=0.0, le=2.0, description="Reply sampling temperature")
    completion_max_tokens: int = Field(default=500, ge=1, description="Reply token budget")
    title_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Title sampling temperature")
    title_max_tokens: int = Field(default=50, ge=1, description="Title token budget")

    # Streaming settings
    flush_delay: float = Field(default=0.01, ge=0.0, description="Pause after each flushed event (seconds)")
    title_delivery: Literal["inline", "event"] = Field(
        default="inline",
        description="inline: title fetched before streaming; event: standalone title event",
    )
    title_timeout: float = Field(default=10.0, gt=0.0, description="Title request timeout (seconds)")
    stream_timeout: float = Field(default=120.0, gt=0.0, description="Total streaming duration bound (seconds)")

    # HTTP client settings
    http_max_connections: int = Field(default=100, ge=1)
    http_max_keepalive: int = Field(default=20, ge=0)
    http_timeout_connect: float = Field(default=5.0, gt=0.0)
    http_timeout_read: float = Field(default=60.0, gt=0.0)
    http_timeout_write: float = Field(default=30.0, gt=0.0)
    http_timeout_pool: float = Field(default=10.0, gt=0.0)
    http2: bool = Field(default=True, description="Use HTTP/2 towards the provider")

    # Server settings
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    def get_chat_completions_url(self) -> str:
        """Full URL of the provider's chat completions endpoint."""
        return f"{self.openai_base_url.rstrip('/')}/chat/completions"


@lru_cache()
def get_settings() -> ServiceSettings:
    """Get cached singleton settings instance.

    Returns:
        ServiceSettings: Configuration loaded from the environment.

    Raises:
        pydantic.ValidationError: If OPENAI_API_KEY is missing or a value
            fails validation.

    Note:
        To reload settings (e.g., after env changes), call
        get_settings.cache_clear() before calling get_settings() again.

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    return ServiceSettings()
