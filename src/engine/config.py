"""Engine configuration with environment variable loading.

Pydantic-based configuration for the streaming session engine: where
streams and citation batches are fetched from, connection timeouts, and
where in-flight sessions are persisted between runs.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file
load_dotenv()


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


class EngineConfig(BaseModel):
    """Configuration for the session engine.

    Attributes:
        api_base_url: Base URL of the server issuing streams.
        api_token: Optional bearer token sent with stream and fetch requests.
        task_stream_path: Path template for task streams, ``{ref}`` is the stream ref.
        chat_stream_path: Path template for exchange streams.
        sources_path: Path template for out-of-band citation batches.
        connect_timeout: Seconds allowed to establish a connection.
        idle_timeout: Seconds a stream may stay silent before it is failed.
            None disables the liveness check.
        store_namespace: Key under which in-flight sessions are persisted.
        store_path: JSON file for persisted sessions; None keeps them in memory.
    """

    api_base_url: str = Field(
        default_factory=lambda: os.getenv("API_BASE_URL", "http://localhost:8000"),
        description="Base URL of the streaming server",
    )
    api_token: str | None = Field(
        default_factory=lambda: os.getenv("API_TOKEN") or None,
        description="Bearer token for stream requests",
    )
    task_stream_path: str = Field(
        default_factory=lambda: os.getenv("TASK_STREAM_PATH", "/tasks/{ref}/stream"),
        description="Path template for task progress streams",
    )
    chat_stream_path: str = Field(
        default_factory=lambda: os.getenv("CHAT_STREAM_PATH", "/chat/{ref}/stream"),
        description="Path template for chat answer streams",
    )
    sources_path: str = Field(
        default_factory=lambda: os.getenv("SOURCES_PATH", "/sources/{ref}"),
        description="Path template for citation batches delivered by reference",
    )
    connect_timeout: float = Field(
        default_factory=lambda: float(os.getenv("STREAM_CONNECT_TIMEOUT", "10.0")),
        gt=0.0,
        description="Seconds to wait for a stream connection",
    )
    idle_timeout: float | None = Field(
        default_factory=lambda: _optional_float("STREAM_IDLE_TIMEOUT"),
        description="Seconds of silence before a stream is failed (None disables)",
    )
    store_namespace: str = Field(
        default_factory=lambda: os.getenv("SESSION_STORE_NAMESPACE", "activeSessions"),
        min_length=1,
        description="Persistence key for in-flight sessions",
    )
    store_path: Path | None = Field(
        default_factory=lambda: Path(p) if (p := os.getenv("SESSION_STORE_PATH")) else None,
        description="JSON file holding persisted sessions",
    )

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so path templates can be appended."""
        v = v.strip()
        if not v:
            raise ValueError("API base URL required. Set API_BASE_URL in .env")
        return v.rstrip("/")

    @field_validator("task_stream_path", "chat_stream_path", "sources_path")
    @classmethod
    def validate_template(cls, v: str) -> str:
        """Path templates must contain the ``{ref}`` placeholder."""
        if "{ref}" not in v:
            raise ValueError("path template must contain '{ref}'")
        return v

    @field_validator("idle_timeout")
    @classmethod
    def validate_idle_timeout(cls, v: float | None) -> float | None:
        """Treat non-positive idle timeouts as disabled."""
        if v is not None and v <= 0:
            return None
        return v


def get_engine_config() -> EngineConfig:
    """Create engine configuration from environment.

    Returns:
        Configured EngineConfig instance.

    Raises:
        ValueError: If a setting is invalid.
    """
    return EngineConfig()
