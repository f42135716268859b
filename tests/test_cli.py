from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_lifecycle.__main__ import main
from agent_lifecycle.pipelines import ProgressTracker
from agent_lifecycle.settings import RuntimeSettings
from agent_lifecycle.state_store import build_state_store


@pytest.fixture
def file_backend(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    root = tmp_path / "state"
    monkeypatch.setenv("AGENT_STATE_BACKEND", "file")
    monkeypatch.setenv("AGENT_STATE_STORE_ROOT", str(root))
    return root


def test_progress_prints_not_started_for_unknown_run(file_backend: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["progress", "--run-id", "nope"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "not_started"
    assert payload["run_id"] == "nope"


def test_progress_reads_latest_run_for_entity(file_backend: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = build_state_store(RuntimeSettings(state_store_root=str(file_backend)))
    ProgressTracker(store).start("foundation-idea-1-5", "foundation", "idea-1", ["strategy"], current_step="Starting")

    assert main(["progress", "--agent-id", "foundation", "--entity-id", "idea-1"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["run_id"] == "foundation-idea-1-5"
    assert payload["steps"] == [{"name": "strategy", "status": "pending", "detail": None}]


def test_progress_without_selector_fails(file_backend: Path) -> None:
    assert main(["progress"]) == 1


def test_invalid_settings_exit_non_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_STATE_BACKEND", "sqlite")

    assert main(["progress", "--run-id", "x"]) == 1
