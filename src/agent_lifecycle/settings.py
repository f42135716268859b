from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

VALID_STATE_BACKENDS: frozenset[str] = frozenset({"file", "redis", "memory"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    model: str = "gpt-4o"
    critic_model: str = "gpt-4o-mini"
    time_budget_seconds: int = 270
    state_ttl_seconds: int = 7_200
    max_resume_count: int = 5
    critique_concurrency: int = 2
    progress_stale_seconds: int = 300
    state_backend: str = "file"
    state_store_root: str = "state_store"
    redis_url: str = "redis://localhost:6379/0"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            model=os.getenv("AGENT_MODEL", "gpt-4o"),
            critic_model=os.getenv("AGENT_CRITIC_MODEL", "gpt-4o-mini"),
            time_budget_seconds=_get_env_int("AGENT_TIME_BUDGET_SECONDS", default=270, minimum=1, maximum=3_600),
            state_ttl_seconds=_get_env_int("AGENT_STATE_TTL_SECONDS", default=7_200, minimum=60),
            max_resume_count=_get_env_int("AGENT_MAX_RESUME_COUNT", default=5, minimum=0, maximum=100),
            critique_concurrency=_get_env_int("AGENT_CRITIQUE_CONCURRENCY", default=2, minimum=1, maximum=32),
            progress_stale_seconds=_get_env_int("AGENT_PROGRESS_STALE_SECONDS", default=300, minimum=1),
            state_backend=os.getenv("AGENT_STATE_BACKEND", "file"),
            state_store_root=os.getenv("AGENT_STATE_STORE_ROOT", "state_store"),
            redis_url=os.getenv("AGENT_REDIS_URL", "redis://localhost:6379/0"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model = self.model.strip()
        if not model:
            raise ValueError("AGENT_MODEL must be non-empty")
        critic_model = self.critic_model.strip()
        if not critic_model:
            raise ValueError("AGENT_CRITIC_MODEL must be non-empty")

        # Paused state must outlive one full time budget.
        if self.state_ttl_seconds <= self.time_budget_seconds:
            raise ValueError(
                "AGENT_STATE_TTL_SECONDS must be greater than AGENT_TIME_BUDGET_SECONDS, "
                f"got: {self.state_ttl_seconds} <= {self.time_budget_seconds}"
            )

        state_backend = self.state_backend.strip().lower()
        if state_backend not in VALID_STATE_BACKENDS:
            raise ValueError(
                f"AGENT_STATE_BACKEND must be one of: {', '.join(sorted(VALID_STATE_BACKENDS))}"
            )
        if state_backend == "file" and not self.state_store_root.strip():
            raise ValueError("AGENT_STATE_STORE_ROOT must be non-empty")
        if state_backend == "redis" and not self.redis_url.strip():
            raise ValueError("AGENT_REDIS_URL must be non-empty")

        return RuntimeSettings(
            model=model,
            critic_model=critic_model,
            time_budget_seconds=self.time_budget_seconds,
            state_ttl_seconds=self.state_ttl_seconds,
            max_resume_count=self.max_resume_count,
            critique_concurrency=self.critique_concurrency,
            progress_stale_seconds=self.progress_stale_seconds,
            state_backend=state_backend,
            state_store_root=self.state_store_root,
            redis_url=self.redis_url.strip(),
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
