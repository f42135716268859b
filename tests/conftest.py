from __future__ import annotations

import threading
import time
from typing import Any, Callable

import pytest

from agent_lifecycle.advisors import Advisor
from agent_lifecycle.models import (
    CritiqueIssue,
    CritiqueSubmission,
    ProviderRequest,
    ProviderResponse,
    Severity,
    StopReason,
    TextBlock,
    ToolUseBlock,
)
from agent_lifecycle.state_store import AgentStateRepository, InMemoryStateStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def text_response(text: str) -> ProviderResponse:
    return ProviderResponse(content=[TextBlock(text=text)], stop_reason=StopReason.END_TURN)


def tool_response(*calls: tuple[str, dict[str, Any]], text: str = "") -> ProviderResponse:
    blocks: list[Any] = [TextBlock(text=text)] if text else []
    for index, (name, tool_input) in enumerate(calls):
        blocks.append(ToolUseBlock(id=f"call_{name}_{index}", name=name, input=tool_input))
    return ProviderResponse(content=blocks, stop_reason=StopReason.TOOL_USE)


class ScriptedProvider:
    """Returns queued responses in order; an exception in the queue is raised instead."""

    def __init__(
        self,
        responses: list[ProviderResponse | Exception] | None = None,
        *,
        on_call: Callable[[ProviderRequest], None] | None = None,
        default: ProviderResponse | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.on_call = on_call
        self.default = default
        self.requests: list[ProviderRequest] = []

    def create(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request.model_copy(deep=True))
        if self.on_call is not None:
            self.on_call(request)
        if self.responses:
            item = self.responses.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("ScriptedProvider ran out of responses")
        if isinstance(item, Exception):
            raise item
        return item


class FakeCriticClient:
    """Scores by advisor id; records prompts and the peak number of concurrent calls."""

    def __init__(
        self,
        outcomes: dict[str, CritiqueSubmission | Exception] | None = None,
        *,
        default: CritiqueSubmission | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.outcomes = outcomes or {}
        self.default = default or CritiqueSubmission(score=8, passed=True, issues=[])
        self.delay_seconds = delay_seconds
        self.prompts: dict[str, str] = {}
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def evaluate(self, advisor: Advisor, prompt: str) -> CritiqueSubmission:
        with self._lock:
            self.calls.append(advisor.id)
            self.prompts[advisor.id] = prompt
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            outcome = self.outcomes.get(advisor.id, self.default)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            with self._lock:
                self.active -= 1


def submission(score: float, *issues: tuple[str, str]) -> CritiqueSubmission:
    return CritiqueSubmission(
        score=score,
        passed=score >= 7,
        issues=[CritiqueIssue(severity=Severity(severity), description=text) for severity, text in issues],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def repository(store: InMemoryStateStore) -> AgentStateRepository:
    return AgentStateRepository(store, ttl_seconds=7_200)
