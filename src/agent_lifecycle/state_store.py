from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol
from urllib.parse import quote

import redis

from .models import AgentState
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key conventions
# ---------------------------------------------------------------------------


def active_run_key(agent_id: str, entity_id: str) -> str:
    return f"active_run:{agent_id}:{entity_id}"


def agent_state_key(run_id: str) -> str:
    return f"agent_state:{run_id}"


def pipeline_progress_key(run_id: str) -> str:
    return f"pipeline_progress:{run_id}"


def latest_progress_key(agent_id: str, entity_id: str) -> str:
    return f"pipeline_progress_latest:{agent_id}:{entity_id}"


def draft_key(run_id: str) -> str:
    return f"draft:{run_id}"


def approved_content_key(run_id: str) -> str:
    return f"approved_content:{run_id}"


def critique_round_key(run_id: str, round_number: int) -> str:
    return f"critique_round:{run_id}:{round_number}"


def critique_session_key(run_id: str) -> str:
    return f"critique_session:{run_id}"


def foundation_doc_key(entity_id: str, doc_type: str) -> str:
    return f"foundation_doc:{entity_id}:{doc_type}"


def scratchpad_key(entity_id: str, key: str) -> str:
    return f"scratchpad:{entity_id}:{key}"


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class StateStore(Protocol):
    """Key-value store holding run state, active-run pointers and progress records.

    Every write is a whole-value overwrite. ``compare_and_set`` is the only
    conditional write; ``expected=None`` means "key is absent".
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        *,
        ttl_seconds: int | None = None,
    ) -> bool: ...


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class FileStateStore:
    """Filesystem store: one JSON envelope per key under ``root/keys``.

    Envelopes carry an absolute ``expires_at`` so TTLs survive process
    restarts; expired entries read as absent and are removed lazily.
    Writes and compare-and-set run under an ``fcntl`` lock on the key's file.
    """

    def __init__(self, root: Path, *, clock: Callable[[], float] = time.time) -> None:
        self.root = root
        self.keys_dir = root / "keys"
        self.clock = clock
        self.keys_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key:
            raise ValueError("state store key must be non-empty")
        return self.keys_dir / f"{quote(key, safe='')}.json"

    def _read_live(self, path: Path) -> str | None:
        if not path.is_file():
            return None
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"state store entry at {path} is corrupt") from exc
        expires_at = envelope.get("expires_at")
        if expires_at is not None and expires_at <= self.clock():
            path.unlink(missing_ok=True)
            return None
        value = envelope.get("value")
        return value if isinstance(value, str) else None

    def _write(self, path: Path, key: str, value: str, ttl_seconds: int | None) -> None:
        expires_at = self.clock() + ttl_seconds if ttl_seconds is not None else None
        envelope = {"key": key, "value": value, "expires_at": expires_at}
        _atomic_write_text(path, json.dumps(envelope))

    def get(self, key: str) -> str | None:
        return self._read_live(self._path(key))

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        path = self._path(key)
        with _locked_file(path):
            self._write(path, key, value, ttl_seconds)

    def delete(self, key: str) -> None:
        path = self._path(key)
        with _locked_file(path):
            path.unlink(missing_ok=True)

    def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        *,
        ttl_seconds: int | None = None,
    ) -> bool:
        path = self._path(key)
        with _locked_file(path):
            if self._read_live(path) != expected:
                return False
            self._write(path, key, value, ttl_seconds)
            return True


class InMemoryStateStore:
    """Thread-safe in-process store with TTL support."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._entries[key]
            return None
        return value

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        return self.clock() + ttl_seconds if ttl_seconds is not None else None

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._expiry(ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        *,
        ttl_seconds: int | None = None,
    ) -> bool:
        with self._lock:
            if self._live(key) != expected:
                return False
            self._entries[key] = (value, self._expiry(ttl_seconds))
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(key for key in list(self._entries) if self._live(key) is not None)


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisStateStore:
    """Redis-backed store; compare-and-set uses WATCH/MULTI optimistic locking."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStateStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        return _decode(self.client.get(key))

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        self.client.set(key, value, ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        *,
        ttl_seconds: int | None = None,
    ) -> bool:
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if _decode(pipe.get(key)) != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, value, ex=ttl_seconds)
                pipe.execute()
                return True
            except redis.WatchError:
                logger.info("compare_and_set lost race on %s", key)
                return False


def build_state_store(settings: RuntimeSettings, *, repo_root: Path | None = None) -> StateStore:
    """Construct the configured store backend."""
    if settings.state_backend == "memory":
        return InMemoryStateStore()
    if settings.state_backend == "redis":
        return RedisStateStore.from_url(settings.redis_url)
    root = settings.state_store_path(repo_root if repo_root is not None else Path.cwd())
    return FileStateStore(root)


# ---------------------------------------------------------------------------
# Agent state repository
# ---------------------------------------------------------------------------


class AgentStateRepository:
    """Persists ``AgentState`` snapshots and active-run pointers."""

    def __init__(self, store: StateStore, *, ttl_seconds: int = 7_200) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def save_state(self, state: AgentState) -> None:
        self.store.set(agent_state_key(state.run_id), state.model_dump_json(), ttl_seconds=self.ttl_seconds)

    def get_state(self, run_id: str) -> AgentState | None:
        """Load a persisted state.

        Raises:
            AgentStateSchemaError: If the stored blob has an unknown shape.
        """
        raw = self.store.get(agent_state_key(run_id))
        if raw is None:
            return None
        return AgentState.from_json(raw)

    def delete_state(self, run_id: str) -> None:
        self.store.delete(agent_state_key(run_id))

    def get_active_run_id(self, agent_id: str, entity_id: str) -> str | None:
        return self.store.get(active_run_key(agent_id, entity_id))

    def save_active_run(self, agent_id: str, entity_id: str, run_id: str) -> None:
        self.store.set(active_run_key(agent_id, entity_id), run_id, ttl_seconds=self.ttl_seconds)

    def acquire_active_run(self, agent_id: str, entity_id: str, expected: str | None, run_id: str) -> bool:
        """Point ``(agent_id, entity_id)`` at ``run_id`` if the pointer still equals ``expected``."""
        return self.store.compare_and_set(
            active_run_key(agent_id, entity_id),
            expected,
            run_id,
            ttl_seconds=self.ttl_seconds,
        )

    def clear_active_run(self, agent_id: str, entity_id: str) -> None:
        self.store.delete(active_run_key(agent_id, entity_id))
