from __future__ import annotations

from pathlib import Path

import pytest

from agent_lifecycle.settings import RuntimeSettings

_ENV_VARS = (
    "AGENT_MODEL",
    "AGENT_CRITIC_MODEL",
    "AGENT_TIME_BUDGET_SECONDS",
    "AGENT_STATE_TTL_SECONDS",
    "AGENT_MAX_RESUME_COUNT",
    "AGENT_CRITIQUE_CONCURRENCY",
    "AGENT_PROGRESS_STALE_SECONDS",
    "AGENT_STATE_BACKEND",
    "AGENT_STATE_STORE_ROOT",
    "AGENT_REDIS_URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()

    assert settings.time_budget_seconds == 270
    assert settings.state_ttl_seconds == 7_200
    assert settings.max_resume_count == 5
    assert settings.critique_concurrency == 2
    assert settings.progress_stale_seconds == 300
    assert settings.state_backend == "file"


def test_env_overrides_are_normalized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_MODEL", "  gpt-4.1  ")
    monkeypatch.setenv("AGENT_STATE_BACKEND", "Redis")
    monkeypatch.setenv("AGENT_CRITIQUE_CONCURRENCY", "4")

    settings = RuntimeSettings.from_env()

    assert settings.model == "gpt-4.1"
    assert settings.state_backend == "redis"
    assert settings.critique_concurrency == 4


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_TIME_BUDGET_SECONDS", "abc", "must be an integer"),
        ("AGENT_TIME_BUDGET_SECONDS", "0", "must be >= 1"),
        ("AGENT_CRITIQUE_CONCURRENCY", "64", "must be <= 32"),
        ("AGENT_STATE_BACKEND", "sqlite", "AGENT_STATE_BACKEND must be one of"),
        ("AGENT_MODEL", "   ", "AGENT_MODEL must be non-empty"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_state_ttl_must_outlive_time_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_TIME_BUDGET_SECONDS", "600")
    monkeypatch.setenv("AGENT_STATE_TTL_SECONDS", "600")

    with pytest.raises(ValueError, match="must be greater than AGENT_TIME_BUDGET_SECONDS"):
        RuntimeSettings.from_env()


def test_state_store_path_resolves_relative_to_repo(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/ignored")) == absolute
