"""Unit tests for EngineConfig.

Tests environment loading and validation of engine settings.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.engine.config import EngineConfig, get_engine_config

ENV_VARS = [
    "API_BASE_URL",
    "API_TOKEN",
    "TASK_STREAM_PATH",
    "CHAT_STREAM_PATH",
    "SOURCES_PATH",
    "STREAM_CONNECT_TIMEOUT",
    "STREAM_IDLE_TIMEOUT",
    "SESSION_STORE_NAMESPACE",
    "SESSION_STORE_PATH",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove engine settings from the environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestEngineConfig:
    """Tests for EngineConfig defaults and validation."""

    def test_defaults(self, clean_env: pytest.MonkeyPatch) -> None:
        """Config falls back to local defaults when nothing is set."""
        config = get_engine_config()

        assert config.api_base_url == "http://localhost:8000"
        assert config.api_token is None
        assert config.task_stream_path == "/tasks/{ref}/stream"
        assert config.connect_timeout == 10.0
        assert config.idle_timeout is None
        assert config.store_namespace == "activeSessions"
        assert config.store_path is None

    def test_reads_environment(self, clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Config picks up every setting from environment variables."""
        clean_env.setenv("API_BASE_URL", "https://api.example.com/")
        clean_env.setenv("API_TOKEN", "tok")
        clean_env.setenv("STREAM_CONNECT_TIMEOUT", "2.5")
        clean_env.setenv("STREAM_IDLE_TIMEOUT", "30")
        clean_env.setenv("SESSION_STORE_PATH", str(tmp_path / "sessions.json"))

        config = EngineConfig()

        assert config.api_base_url == "https://api.example.com"
        assert config.api_token == "tok"
        assert config.connect_timeout == 2.5
        assert config.idle_timeout == 30.0
        assert config.store_path == tmp_path / "sessions.json"

    def test_empty_token_is_none(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("API_TOKEN", "")

        assert EngineConfig().api_token is None

    def test_fails_with_blank_base_url(self) -> None:
        """Config rejects a whitespace-only base URL."""
        with pytest.raises(ValidationError) as exc_info:
            EngineConfig(api_base_url="   ")

        assert "API_BASE_URL" in str(exc_info.value)

    def test_fails_with_template_missing_placeholder(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            EngineConfig(chat_stream_path="/chat/stream")

        assert "{ref}" in str(exc_info.value)

    def test_fails_with_non_positive_connect_timeout(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(connect_timeout=0)

    def test_non_positive_idle_timeout_disables_check(self) -> None:
        """Zero or negative idle timeouts turn the liveness check off."""
        assert EngineConfig(idle_timeout=0).idle_timeout is None
        assert EngineConfig(idle_timeout=-5).idle_timeout is None
