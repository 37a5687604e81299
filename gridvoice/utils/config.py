"""
Configuration management using pydantic-settings.

Loads settings from environment variables and .env files.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_GREETING = (
    "Hello, this is Emma with Smalltown Gas and Electric. How I can help you today?"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI Configuration
    openai_api_key: str = Field(
        default="",
        description="OpenAI API key for the Realtime API",
    )
    openai_realtime_model: str = Field(
        default="gpt-4o-realtime-preview-2024-12-17",
        description="Model to use for OpenAI Realtime API",
    )
    openai_realtime_voice: str = Field(
        default="alloy",
        description="Voice to use for OpenAI Realtime (alloy, echo, shimmer, ...)",
    )
    openai_temperature: float = Field(
        default=0.8,
        description="Sampling temperature for Realtime responses",
    )
    openai_realtime_base_url: str = Field(
        default="wss://api.openai.com/v1/realtime",
        description="Realtime API WebSocket endpoint (without query string)",
    )

    # Public hostname Twilio connects the Media Stream to
    hostname: str = Field(
        default="localhost:8080",
        description="Public host (no scheme) used in the TwiML <Stream> URL",
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Voice Agent Configuration
    greeting: str = Field(
        default=DEFAULT_GREETING,
        description="Introduction the agent speaks verbatim once the media stream starts",
    )
    session_ready_timeout_seconds: float = Field(
        default=10.0,
        description="How long call setup waits for the Realtime session.created event",
    )
    tool_response_delay_ms: int = Field(
        default=100,
        description="Pause between submitting a tool result and requesting the next response (ms)",
    )
    tool_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound on a single tool handler; expiry is treated as a handler failure",
    )

    @property
    def openai_realtime_url(self) -> str:
        """Get the OpenAI Realtime WebSocket URL."""
        return f"{self.openai_realtime_base_url}?model={self.openai_realtime_model}"

    def media_stream_url(self, call_sid: str) -> str:
        """Get the Twilio Media Stream WebSocket URL for one call."""
        host = self.hostname.rstrip("/")
        return f"wss://{host}/media-stream/{call_sid}"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-reading environment on every call.
    """
    return Settings()


# Convenience access
settings = get_settings()
