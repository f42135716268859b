from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

AGENT_STATE_SCHEMA_VERSION = 1


class AgentStateSchemaError(ValueError):
    """Persisted agent state does not match any known schema version."""


class AgentStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"


AGENT_STATUS_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.RUNNING: frozenset(
        {AgentStatus.RUNNING, AgentStatus.PAUSED, AgentStatus.COMPLETE, AgentStatus.ERROR}
    ),
    AgentStatus.PAUSED: frozenset({AgentStatus.RUNNING}),
    AgentStatus.COMPLETE: frozenset(),
    AgentStatus.ERROR: frozenset(),
}

TERMINAL_STATUSES: frozenset[AgentStatus] = frozenset({AgentStatus.COMPLETE, AgentStatus.ERROR})


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Decision(str, Enum):
    APPROVE = "approve"
    REVISE = "revise"


class PlanStepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"


class ProgressStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Conversation content
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")]


class AgentMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def tool_uses(self) -> list[ToolUseBlock]:
        if isinstance(self.content, str):
            return []
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))


class PlanStep(BaseModel):
    description: str
    rationale: str
    status: PlanStepStatus = PlanStepStatus.PENDING


# ---------------------------------------------------------------------------
# Agent state
# ---------------------------------------------------------------------------


class AgentState(BaseModel):
    """Durable, serializable snapshot of one agent run."""

    schema_version: Literal[1] = AGENT_STATE_SCHEMA_VERSION
    run_id: str
    agent_id: str
    entity_id: str = ""
    messages: list[AgentMessage] = Field(default_factory=list)
    turn_count: int = Field(default=0, ge=0)
    status: AgentStatus = AgentStatus.RUNNING
    plan: list[PlanStep] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resume_count: int = Field(default=0, ge=0)
    error: str | None = None
    final_output: str | None = None
    last_tool_call: str | None = None

    @model_validator(mode="after")
    def _error_only_when_errored(self) -> "AgentState":
        if self.error is not None and self.status != AgentStatus.ERROR:
            raise ValueError(f"error is only allowed when status is 'error', got status '{self.status.value}'")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def append_message(self, message: AgentMessage) -> None:
        self.messages.append(message)

    def transition(self, new_status: AgentStatus, *, error: str | None = None) -> None:
        """Move to ``new_status``. Raises ValueError on an illegal transition."""
        allowed = AGENT_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise ValueError(
                f"Illegal agent status transition for run {self.run_id}: "
                f"{self.status.value} -> {new_status.value}"
            )
        if new_status == AgentStatus.ERROR:
            self.error = error or "Unknown error"
        self.status = new_status

    @classmethod
    def from_json(cls, text: str) -> "AgentState":
        """Parse persisted state, migrating legacy blobs and rejecting unknown shapes."""
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise AgentStateSchemaError(f"agent state is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise AgentStateSchemaError(f"agent state must be a JSON object, got {type(payload).__name__}")

        version = payload.get("schema_version")
        if version is None and "runId" in payload:
            payload = _migrate_v0_state(payload)
            version = AGENT_STATE_SCHEMA_VERSION
        if version != AGENT_STATE_SCHEMA_VERSION:
            raise AgentStateSchemaError(f"unsupported agent state schema_version: {version!r}")

        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise AgentStateSchemaError(f"agent state failed validation: {exc}") from exc


_V0_KEY_MAP = {
    "runId": "run_id",
    "agentId": "agent_id",
    "entityId": "entity_id",
    "turnCount": "turn_count",
    "startedAt": "started_at",
    "resumeCount": "resume_count",
    "finalOutput": "final_output",
    "lastToolCall": "last_tool_call",
}


def _migrate_v0_state(payload: dict[str, Any]) -> dict[str, Any]:
    migrated: dict[str, Any] = {"schema_version": AGENT_STATE_SCHEMA_VERSION}
    for key, value in payload.items():
        migrated[_V0_KEY_MAP.get(key, key)] = value
    if migrated.get("status") != AgentStatus.ERROR.value:
        migrated.pop("error", None)
    return migrated


# ---------------------------------------------------------------------------
# Reasoning provider wire shapes
# ---------------------------------------------------------------------------


class ToolSchema(BaseModel):
    name: str
    description: str
    input_schema: dict[str, Any]


class ProviderRequest(BaseModel):
    model: str
    max_tokens: int
    system_prompt: str
    messages: list[AgentMessage]
    tools: list[ToolSchema] = Field(default_factory=list)


class ProviderResponse(BaseModel):
    content: list[ContentBlock]
    stop_reason: StopReason

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def text(self) -> str:
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))


# ---------------------------------------------------------------------------
# Critiques
# ---------------------------------------------------------------------------


class CritiqueIssue(BaseModel):
    severity: Severity
    description: str
    suggestion: str = ""


class CritiqueSubmission(BaseModel):
    """Structured output requested from every evaluator call."""

    model_config = ConfigDict(populate_by_name=True)

    score: float = Field(description="Overall score from 1 (unusable) to 10 (excellent)")
    passed: bool = Field(alias="pass", description="Whether the content is good enough to ship as-is")
    issues: list[CritiqueIssue] = Field(description="Concrete problems found, most severe first")


class AdvisorCritique(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    advisor_id: str
    name: str
    score: float
    passed: bool = Field(alias="pass")
    issues: list[CritiqueIssue] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def failed(cls, advisor_id: str, name: str, error: str) -> "AdvisorCritique":
        return cls(advisor_id=advisor_id, name=name, score=0, passed=False, issues=[], error=error)


class EditorDecision(BaseModel):
    avg_score: float
    decision: Decision
    brief: str
    high_issue_count: int = 0


class CritiqueRoundResult(BaseModel):
    critiques: list[AdvisorCritique]
    avg_score: float
    decision: Decision
    brief: str


class RoundRecord(BaseModel):
    round: int
    critiques: list[AdvisorCritique]
    editor_decision: Decision
    revision_brief: str | None = None
    fixed_items: list[str] = Field(default_factory=list)
    well_scored_aspects: list[str] = Field(default_factory=list)


class RoundDigest(BaseModel):
    round: int
    avg_score: float
    high_issue_count: int
    editor_decision: Decision
    brief: str
    fixed_items: list[str] = Field(default_factory=list)
    well_scored_aspects: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Progress records polled by the UI
# ---------------------------------------------------------------------------


class ProgressStep(BaseModel):
    name: str
    status: ProgressStatus = ProgressStatus.PENDING
    detail: str | None = None


class SelectedCritic(BaseModel):
    advisor_id: str
    name: str


class PipelineProgress(BaseModel):
    status: ProgressStatus
    current_step: str = ""
    steps: list[ProgressStep] = Field(default_factory=list)
    error: str | None = None
    run_id: str | None = None
    content_type: str | None = None
    round: int = 0
    max_rounds: int = 0
    quality: str | None = None
    selected_critics: list[SelectedCritic] = Field(default_factory=list)
    critique_history: list[RoundDigest] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def mark_step(self, name: str, status: ProgressStatus, detail: str | None = None) -> None:
        for step in self.steps:
            if step.name == name:
                step.status = status
                if detail is not None:
                    step.detail = detail
                return
