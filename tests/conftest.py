"""Pytest configuration and shared fixtures."""

import pytest
import structlog

_PROVIDER_ENV_VARS = (
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "ANTHROPIC_API_KEY",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Keep real keys, .env files and the user cache out of tests."""
    for name in _PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("simple_assistant.config._config", None)
    monkeypatch.setattr("simple_assistant.logging._system_log_sink", None)
    yield
    structlog.reset_defaults()
