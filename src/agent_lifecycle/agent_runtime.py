from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Union

from .agent_tools import PlanBook
from .llm import LangChainReasoningProvider, ReasoningProvider
from .models import (
    AgentMessage,
    AgentState,
    AgentStateSchemaError,
    AgentStatus,
    ProviderRequest,
)
from .settings import RuntimeSettings
from .state_store import AgentStateRepository, build_state_store
from .tools import ToolDefinition, ToolDispatcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Union[str, None]], None]


class AgentPaused(Exception):
    """Control-flow signal: the run stopped at its time budget and is resumable.

    Not a failure. Callers report "in progress" and let a later invocation
    resume the run from persisted state.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"AGENT_PAUSED: run {run_id} paused for continuation")


class MaxTurnsExceeded(RuntimeError):
    def __init__(self, max_turns: int) -> None:
        self.max_turns = max_turns
        super().__init__(f"Exceeded max turns ({max_turns})")


class MaxResumesExceeded(RuntimeError):
    def __init__(self, max_resumes: int) -> None:
        self.max_resumes = max_resumes
        super().__init__(f"Max resume count ({max_resumes}) exceeded")


class AgentRunConflict(RuntimeError):
    """Another invocation acquired the active-run pointer first."""


@dataclass(frozen=True)
class AgentConfig:
    """Per-invocation parameters for one run. Never persisted."""

    agent_id: str
    run_id: str
    model: str
    max_tokens: int
    max_turns: int
    system_prompt: str
    tools: list[ToolDefinition] = field(default_factory=list)
    on_progress: ProgressCallback | None = None
    checkpoint_every_turn: bool = False
    plan_book: PlanBook | None = None


MakeConfig = Callable[[str, bool, Union[AgentState, None]], AgentConfig]
MakeInitialMessage = Callable[[], str]


@dataclass(frozen=True)
class Completed:
    state: AgentState

    def unwrap(self) -> AgentState:
        return self.state


@dataclass(frozen=True)
class Paused:
    state: AgentState

    def unwrap(self) -> AgentState:
        raise AgentPaused(self.state.run_id)


@dataclass(frozen=True)
class Errored:
    state: AgentState
    error: Exception

    def unwrap(self) -> AgentState:
        raise self.error


LifecycleOutcome = Union[Completed, Paused, Errored]


class AgentLifecycleManager:
    """Drives one agent run per ``(agent_id, entity_id)``: fresh start or resume,
    a bounded sequential turn loop, pause at the time budget, and symmetric
    cleanup on both terminal outcomes.

    The time budget is checked between turns only; a single slow provider
    call can overrun it.
    """

    def __init__(
        self,
        repository: AgentStateRepository,
        provider: ReasoningProvider,
        *,
        time_budget_seconds: float = 270,
        max_resume_count: int = 5,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.time_budget_seconds = time_budget_seconds
        self.max_resume_count = max_resume_count
        self.clock = clock
        self.wall_clock = wall_clock

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        repository: AgentStateRepository | None = None,
        provider: ReasoningProvider | None = None,
    ) -> "AgentLifecycleManager":
        if repository is None:
            repository = AgentStateRepository(build_state_store(settings), ttl_seconds=settings.state_ttl_seconds)
        return cls(
            repository,
            provider if provider is not None else LangChainReasoningProvider(),
            time_budget_seconds=settings.time_budget_seconds,
            max_resume_count=settings.max_resume_count,
        )

    def make_run_id(self, agent_id: str, entity_id: str) -> str:
        return f"{agent_id}-{entity_id}-{int(self.wall_clock() * 1000)}"

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def run(
        self,
        agent_id: str,
        entity_id: str,
        make_config: MakeConfig,
        make_initial_message: MakeInitialMessage,
    ) -> AgentState:
        """Run or resume to a terminal state.

        Returns:
            The completed ``AgentState``.

        Raises:
            AgentPaused: The run hit its time budget and was persisted for resume.
            MaxTurnsExceeded: The run used up ``max_turns``.
            Exception: Any provider or tool error, unchanged.
        """
        return self.execute(agent_id, entity_id, make_config, make_initial_message).unwrap()

    def execute(
        self,
        agent_id: str,
        entity_id: str,
        make_config: MakeConfig,
        make_initial_message: MakeInitialMessage,
    ) -> LifecycleOutcome:
        """Run or resume and return the outcome without raising for pause or run errors."""
        active_run_id = self.repository.get_active_run_id(agent_id, entity_id)
        paused_state = self._load_paused_state(agent_id, active_run_id)

        if paused_state is None:
            run_id = self.make_run_id(agent_id, entity_id)
            # The pointer is held before make_config runs; a losing caller has no side effects.
            if not self.repository.acquire_active_run(agent_id, entity_id, active_run_id, run_id):
                raise AgentRunConflict(
                    f"Active run pointer for {agent_id}:{entity_id} changed while starting {run_id}"
                )
            if active_run_id is not None:
                logger.info("Replacing non-resumable run %s for %s:%s", active_run_id, agent_id, entity_id)
                self.repository.delete_state(active_run_id)
            try:
                config = make_config(run_id, False, None)
                self._check_config(config, agent_id, run_id)
                state = AgentState(
                    run_id=run_id,
                    agent_id=agent_id,
                    entity_id=entity_id,
                    started_at=datetime.fromtimestamp(self.wall_clock(), UTC),
                )
                state.append_message(AgentMessage(role="user", content=make_initial_message()))
            except Exception:
                self.repository.clear_active_run(agent_id, entity_id)
                raise
            logger.info("Starting agent run %s for %s:%s", run_id, agent_id, entity_id)
            return self._loop(config, state, entity_id)

        config = make_config(paused_state.run_id, True, paused_state)
        self._check_config(config, agent_id, paused_state.run_id)
        state = paused_state
        state.transition(AgentStatus.RUNNING)
        if state.resume_count >= self.max_resume_count:
            return self._fail(config, state, entity_id, MaxResumesExceeded(self.max_resume_count))
        state.resume_count += 1
        logger.info(
            "Resuming paused agent run %s for %s:%s (resume #%d)",
            state.run_id,
            agent_id,
            entity_id,
            state.resume_count,
        )
        return self._loop(config, state, entity_id)

    def find_paused_state(self, agent_id: str, entity_id: str) -> AgentState | None:
        """The paused state a call to ``execute`` would resume, if any."""
        return self._load_paused_state(agent_id, self.repository.get_active_run_id(agent_id, entity_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_paused_state(self, agent_id: str, active_run_id: str | None) -> AgentState | None:
        if active_run_id is None:
            return None
        try:
            state = self.repository.get_state(active_run_id)
        except AgentStateSchemaError as exc:
            logger.warning("Discarding unreadable state for run %s: %s", active_run_id, exc)
            return None
        if state is None or state.status != AgentStatus.PAUSED:
            return None
        if state.agent_id != agent_id:
            logger.warning(
                "Active run %s belongs to agent %s, not %s; starting fresh",
                active_run_id,
                state.agent_id,
                agent_id,
            )
            return None
        return state

    @staticmethod
    def _check_config(config: AgentConfig, agent_id: str, run_id: str) -> None:
        if config.run_id != run_id:
            raise ValueError(f"make_config returned run_id {config.run_id!r}, expected {run_id!r}")
        if config.agent_id != agent_id:
            raise ValueError(f"make_config returned agent_id {config.agent_id!r}, expected {agent_id!r}")
        if config.max_turns < 1:
            raise ValueError(f"max_turns must be >= 1, got: {config.max_turns}")

    @staticmethod
    def _notify(config: AgentConfig, step: str, detail: str | None = None) -> None:
        if config.on_progress is not None:
            config.on_progress(step, detail)

    def _loop(self, config: AgentConfig, state: AgentState, entity_id: str) -> LifecycleOutcome:
        dispatcher = ToolDispatcher(config.tools)
        tool_schemas = dispatcher.schemas()
        loop_start = self.clock()
        out_of_time = False

        try:
            while True:
                if self.clock() - loop_start > self.time_budget_seconds:
                    out_of_time = True
                    break
                if state.turn_count >= config.max_turns:
                    raise MaxTurnsExceeded(config.max_turns)

                response = self.provider.create(
                    ProviderRequest(
                        model=config.model,
                        max_tokens=config.max_tokens,
                        system_prompt=config.system_prompt,
                        messages=list(state.messages),
                        tools=tool_schemas,
                    )
                )
                state.turn_count += 1
                state.append_message(AgentMessage(role="assistant", content=list(response.content)))

                tool_uses = response.tool_uses()
                if not tool_uses:
                    state.final_output = response.text() or None
                    state.transition(AgentStatus.COMPLETE)
                    break

                state.last_tool_call = ", ".join(block.name for block in tool_uses)
                self._notify(config, "tool_call", state.last_tool_call)
                results = dispatcher.dispatch_all(tool_uses)
                state.append_message(AgentMessage(role="user", content=list(results)))
                if config.plan_book is not None:
                    state.plan = config.plan_book.steps

                if config.checkpoint_every_turn:
                    self.repository.save_state(state)
        except Exception as exc:  # noqa: BLE001 - recorded on state, returned as Errored
            return self._fail(config, state, entity_id, exc)

        if out_of_time:
            return self._pause(config, state, entity_id)

        self._cleanup(state, entity_id)
        logger.info("Agent run %s complete after %d turns", state.run_id, state.turn_count)
        self._notify(config, "complete", (state.final_output or "")[:200])
        return Completed(state)

    def _pause(self, config: AgentConfig, state: AgentState, entity_id: str) -> Paused:
        state.transition(AgentStatus.PAUSED)
        self.repository.save_state(state)
        self.repository.save_active_run(state.agent_id, entity_id, state.run_id)
        logger.info(
            "Agent run %s paused at time budget after %d turns; will resume",
            state.run_id,
            state.turn_count,
        )
        self._notify(config, "paused", "Time budget reached, will resume")
        return Paused(state)

    def _fail(self, config: AgentConfig, state: AgentState, entity_id: str, error: Exception) -> Errored:
        message = str(error) or type(error).__name__
        state.transition(AgentStatus.ERROR, error=message)
        self._cleanup(state, entity_id)
        logger.warning("Agent run %s failed: %s", state.run_id, message)
        self._notify(config, "error", message)
        return Errored(state, error)

    def _cleanup(self, state: AgentState, entity_id: str) -> None:
        self.repository.clear_active_run(state.agent_id, entity_id)
        self.repository.delete_state(state.run_id)


def run_agent_lifecycle(
    agent_id: str,
    entity_id: str,
    make_config: MakeConfig,
    make_initial_message: MakeInitialMessage,
    *,
    manager: AgentLifecycleManager | None = None,
) -> AgentState:
    """Module-level entry point; builds a manager from environment settings when none is given."""
    if manager is None:
        manager = AgentLifecycleManager.from_settings(RuntimeSettings.from_env())
    return manager.run(agent_id, entity_id, make_config, make_initial_message)
