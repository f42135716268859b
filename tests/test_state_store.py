from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_lifecycle.models import AgentState, AgentStateSchemaError, AgentStatus
from agent_lifecycle.settings import RuntimeSettings
from agent_lifecycle.state_store import (
    AgentStateRepository,
    FileStateStore,
    InMemoryStateStore,
    active_run_key,
    agent_state_key,
    build_state_store,
)
from conftest import FakeClock


@pytest.fixture(params=["memory", "file"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path, clock: FakeClock):
    if request.param == "memory":
        return InMemoryStateStore(clock=clock)
    return FileStateStore(tmp_path / "state", clock=clock)


def test_set_get_delete(any_store) -> None:
    assert any_store.get("k") is None
    any_store.set("k", "v1")
    any_store.set("k", "v2")
    assert any_store.get("k") == "v2"
    any_store.delete("k")
    any_store.delete("k")
    assert any_store.get("k") is None


def test_ttl_expiry_reads_as_absent(any_store, clock: FakeClock) -> None:
    any_store.set("short", "x", ttl_seconds=10)
    any_store.set("forever", "y")

    clock.advance(9)
    assert any_store.get("short") == "x"
    clock.advance(1)
    assert any_store.get("short") is None
    assert any_store.get("forever") == "y"


def test_compare_and_set_against_absent_and_present(any_store) -> None:
    assert any_store.compare_and_set("ptr", None, "run-1") is True
    assert any_store.compare_and_set("ptr", None, "run-2") is False
    assert any_store.compare_and_set("ptr", "run-0", "run-2") is False
    assert any_store.get("ptr") == "run-1"
    assert any_store.compare_and_set("ptr", "run-1", "run-2") is True
    assert any_store.get("ptr") == "run-2"


def test_compare_and_set_treats_expired_key_as_absent(any_store, clock: FakeClock) -> None:
    any_store.set("ptr", "old", ttl_seconds=5)
    clock.advance(6)

    assert any_store.compare_and_set("ptr", None, "new") is True
    assert any_store.get("ptr") == "new"


def test_file_store_survives_reopen(tmp_path: Path, clock: FakeClock) -> None:
    FileStateStore(tmp_path, clock=clock).set("agent_state:run/1", "payload", ttl_seconds=60)

    reopened = FileStateStore(tmp_path, clock=clock)

    assert reopened.get("agent_state:run/1") == "payload"


def test_file_store_rejects_corrupt_entry(tmp_path: Path, clock: FakeClock) -> None:
    store = FileStateStore(tmp_path, clock=clock)
    store.set("k", "v")
    (path,) = (tmp_path / "keys").glob("*.json")
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValueError, match="corrupt"):
        store.get("k")


def test_in_memory_keys_skip_expired(clock: FakeClock) -> None:
    store = InMemoryStateStore(clock=clock)
    store.set("b", "1")
    store.set("a", "2", ttl_seconds=1)
    clock.advance(2)

    assert store.keys() == ["b"]


def test_build_state_store_honours_backend(tmp_path: Path) -> None:
    memory = build_state_store(RuntimeSettings(state_backend="memory"))
    file_store = build_state_store(RuntimeSettings(state_store_root="runs"), repo_root=tmp_path)

    assert isinstance(memory, InMemoryStateStore)
    assert isinstance(file_store, FileStateStore)
    assert file_store.root == tmp_path / "runs"


def test_repository_round_trips_state_with_ttl(store, clock: FakeClock) -> None:
    repository = AgentStateRepository(store, ttl_seconds=100)
    state = AgentState(run_id="writer-idea-1-1", agent_id="writer", entity_id="idea-1", status=AgentStatus.PAUSED)

    repository.save_state(state)
    loaded = repository.get_state(state.run_id)

    assert loaded == state
    clock.advance(100)
    assert repository.get_state(state.run_id) is None


def test_repository_pointer_acquire_and_clear(repository, store) -> None:
    assert repository.acquire_active_run("writer", "idea-1", None, "run-1") is True
    assert repository.acquire_active_run("writer", "idea-1", None, "run-2") is False
    assert repository.get_active_run_id("writer", "idea-1") == "run-1"
    assert store.get(active_run_key("writer", "idea-1")) == "run-1"

    repository.clear_active_run("writer", "idea-1")

    assert repository.get_active_run_id("writer", "idea-1") is None


def test_legacy_camel_case_state_is_migrated(store, repository) -> None:
    store.set(
        agent_state_key("run-legacy"),
        json.dumps(
            {
                "runId": "run-legacy",
                "agentId": "writer",
                "entityId": "idea-1",
                "messages": [{"role": "user", "content": "hello"}],
                "turnCount": 3,
                "status": "paused",
                "plan": [],
                "startedAt": "2024-05-01T12:00:00Z",
                "resumeCount": 1,
                "error": None,
            }
        ),
    )

    state = repository.get_state("run-legacy")

    assert state is not None
    assert state.schema_version == 1
    assert state.agent_id == "writer"
    assert state.turn_count == 3
    assert state.resume_count == 1
    assert state.status == AgentStatus.PAUSED


def test_unknown_schema_version_is_rejected(store, repository) -> None:
    store.set(agent_state_key("run-future"), json.dumps({"schema_version": 99, "run_id": "run-future"}))

    with pytest.raises(AgentStateSchemaError, match="unsupported agent state schema_version: 99"):
        repository.get_state("run-future")


def test_error_field_requires_error_status() -> None:
    with pytest.raises(ValueError, match="error is only allowed"):
        AgentState(run_id="r", agent_id="a", status=AgentStatus.PAUSED, error="boom")


def test_terminal_states_cannot_transition() -> None:
    state = AgentState(run_id="r", agent_id="a")
    state.transition(AgentStatus.COMPLETE)

    with pytest.raises(ValueError, match="complete -> running"):
        state.transition(AgentStatus.RUNNING)
