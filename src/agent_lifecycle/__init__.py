from importlib.metadata import version

from .advisors import ADVISOR_REGISTRY, Advisor, get_advisor
from .agent_runtime import (
    AgentConfig,
    AgentLifecycleManager,
    AgentPaused,
    AgentRunConflict,
    Completed,
    Errored,
    MaxResumesExceeded,
    MaxTurnsExceeded,
    Paused,
    run_agent_lifecycle,
)
from .critique import CritiqueService, LangChainCriticClient, LangChainCriticSelector, run_critique_round
from .editor import apply_editor_rubric
from .models import (
    AdvisorCritique,
    AgentMessage,
    AgentState,
    AgentStateSchemaError,
    AgentStatus,
    CritiqueIssue,
    CritiqueRoundResult,
    Decision,
    EditorDecision,
    PipelineProgress,
    Severity,
)
from .pipelines import (
    ContentCritiquePipeline,
    FoundationPipeline,
    PipelineAlreadyRunning,
    PipelineRunResult,
    ProgressTracker,
)
from .recipes import RECIPES, ContentRecipe, UnknownRecipeError
from .revision_graph import RevisionGraph, RevisionResult
from .settings import RuntimeSettings
from .state_store import AgentStateRepository, FileStateStore, InMemoryStateStore, RedisStateStore
from .tools import ToolDefinition, ToolDispatcher, UnknownToolError


def get_version() -> str:
    try:
        return version("agent-lifecycle")
    except Exception:
        return "0.0.0"


__all__ = [
    "ADVISOR_REGISTRY",
    "Advisor",
    "AdvisorCritique",
    "AgentConfig",
    "AgentLifecycleManager",
    "AgentMessage",
    "AgentPaused",
    "AgentRunConflict",
    "AgentState",
    "AgentStateRepository",
    "AgentStateSchemaError",
    "AgentStatus",
    "Completed",
    "ContentCritiquePipeline",
    "ContentRecipe",
    "CritiqueIssue",
    "CritiqueRoundResult",
    "CritiqueService",
    "Decision",
    "EditorDecision",
    "Errored",
    "FileStateStore",
    "FoundationPipeline",
    "InMemoryStateStore",
    "LangChainCriticClient",
    "LangChainCriticSelector",
    "MaxResumesExceeded",
    "MaxTurnsExceeded",
    "Paused",
    "PipelineAlreadyRunning",
    "PipelineProgress",
    "PipelineRunResult",
    "ProgressTracker",
    "RECIPES",
    "RedisStateStore",
    "RevisionGraph",
    "RevisionResult",
    "RuntimeSettings",
    "Severity",
    "ToolDefinition",
    "ToolDispatcher",
    "UnknownRecipeError",
    "UnknownToolError",
    "apply_editor_rubric",
    "get_advisor",
    "get_version",
    "run_agent_lifecycle",
    "run_critique_round",
]
