from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, ClassVar, Literal

from .agent_runtime import AgentConfig, AgentLifecycleManager, AgentPaused, AgentRunConflict
from .agent_tools import (
    PRODUCT_CONTEXT_KEY,
    FoundationTools,
    PlanBook,
    create_plan_tools,
    create_scratchpad_tools,
)
from .critique import CritiqueService
from .critique_tools import ApprovedContent, CritiqueTools
from .documents import FOUNDATION_DOC_TYPES, StrategicInputs
from .llm import ReasoningProvider
from .models import (
    AgentState,
    PipelineProgress,
    ProgressStatus,
    ProgressStep,
    RoundDigest,
    SelectedCritic,
)
from .recipes import ContentRecipe, get_recipe
from .settings import RuntimeSettings
from .state_store import (
    AgentStateRepository,
    StateStore,
    approved_content_key,
    latest_progress_key,
    pipeline_progress_key,
    scratchpad_key,
)
from .tools import ToolDefinition

logger = logging.getLogger(__name__)


class PipelineAlreadyRunning(RuntimeError):
    def __init__(self, agent_id: str, entity_id: str, run_id: str) -> None:
        self.agent_id = agent_id
        self.entity_id = entity_id
        self.run_id = run_id
        super().__init__(f"{agent_id} is already running for {entity_id} (run {run_id})")


@dataclass(frozen=True)
class PipelineRunResult:
    run_id: str
    status: Literal["complete", "in_progress"]
    final_output: str | None = None


# ---------------------------------------------------------------------------
# Progress records
# ---------------------------------------------------------------------------


class ProgressTracker:
    """Reads and writes the per-run progress record a UI polls.

    A ``running`` record untouched for ``stale_after_seconds`` is treated as
    abandoned; there is no heartbeat.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        ttl_seconds: int = 7_200,
        stale_after_seconds: int = 300,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.stale_after_seconds = stale_after_seconds
        self.wall_clock = wall_clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.wall_clock(), UTC)

    def start(
        self,
        run_id: str,
        agent_id: str,
        entity_id: str,
        step_names: list[str],
        *,
        current_step: str,
        content_type: str | None = None,
        max_rounds: int = 0,
    ) -> PipelineProgress:
        progress = PipelineProgress(
            status=ProgressStatus.RUNNING,
            current_step=current_step,
            steps=[ProgressStep(name=name) for name in step_names],
            run_id=run_id,
            content_type=content_type,
            max_rounds=max_rounds,
        )
        self.save(run_id, progress)
        self.store.set(latest_progress_key(agent_id, entity_id), run_id, ttl_seconds=self.ttl_seconds)
        return progress

    def load(self, run_id: str) -> PipelineProgress | None:
        raw = self.store.get(pipeline_progress_key(run_id))
        if raw is None:
            return None
        return PipelineProgress.model_validate(json.loads(raw))

    def save(self, run_id: str, progress: PipelineProgress) -> None:
        progress.updated_at = self._now()
        self.store.set(pipeline_progress_key(run_id), progress.model_dump_json(), ttl_seconds=self.ttl_seconds)

    def update(self, run_id: str, mutate: Callable[[PipelineProgress], None]) -> PipelineProgress | None:
        progress = self.load(run_id)
        if progress is None:
            return None
        mutate(progress)
        self.save(run_id, progress)
        return progress

    def poll(self, run_id: str) -> PipelineProgress:
        progress = self.load(run_id)
        if progress is None:
            return PipelineProgress(status=ProgressStatus.NOT_STARTED, run_id=run_id)
        return progress

    def latest_for(self, agent_id: str, entity_id: str) -> PipelineProgress | None:
        run_id = self.store.get(latest_progress_key(agent_id, entity_id))
        if run_id is None:
            return None
        return self.load(run_id)

    def is_stale(self, progress: PipelineProgress) -> bool:
        if progress.status != ProgressStatus.RUNNING:
            return False
        return self.wall_clock() - progress.updated_at.timestamp() > self.stale_after_seconds

    def apply_event(
        self,
        run_id: str,
        step: str,
        detail: str | None,
        *,
        tool_steps: dict[str, str] | None = None,
    ) -> PipelineProgress | None:
        """Fold one lifecycle progress event into the record."""

        def mutate(progress: PipelineProgress) -> None:
            if step == "tool_call" and detail:
                progress.current_step = detail
                for tool_name in detail.split(", "):
                    step_name = (tool_steps or {}).get(tool_name)
                    if step_name is not None:
                        progress.mark_step(step_name, ProgressStatus.RUNNING)
            elif step == "complete":
                progress.status = ProgressStatus.COMPLETE
                progress.current_step = "Pipeline complete"
                for progress_step in progress.steps:
                    if progress_step.status != ProgressStatus.ERROR:
                        progress_step.status = ProgressStatus.COMPLETE
            elif step == "error":
                progress.status = ProgressStatus.ERROR
                progress.error = detail or "Pipeline failed"
                progress.current_step = "Pipeline failed"
            elif step == "paused":
                progress.current_step = detail or "Paused, will resume"

        return self.update(run_id, mutate)


# ---------------------------------------------------------------------------
# Orchestrators
# ---------------------------------------------------------------------------


class AgentPipeline:
    """Shared run/resume plumbing for orchestrators built on the lifecycle manager."""

    agent_id: ClassVar[str]
    max_turns: ClassVar[int]
    max_tokens: ClassVar[int] = 4_096
    tool_steps: ClassVar[dict[str, str]] = {}

    def __init__(
        self,
        manager: AgentLifecycleManager,
        store: StateStore,
        provider: ReasoningProvider,
        *,
        model: str,
        tracker: ProgressTracker | None = None,
        state_ttl_seconds: int = 7_200,
        checkpoint_every_turn: bool = False,
    ) -> None:
        self.manager = manager
        self.store = store
        self.provider = provider
        self.model = model
        self.tracker = tracker if tracker is not None else ProgressTracker(store, ttl_seconds=state_ttl_seconds)
        self.state_ttl_seconds = state_ttl_seconds
        self.checkpoint_every_turn = checkpoint_every_turn

    def ensure_not_running(self, entity_id: str) -> bool:
        """Return True when a paused run will be resumed.

        Raises:
            PipelineAlreadyRunning: A fresh ``running`` record exists and nothing is paused.
        """
        if self.manager.find_paused_state(self.agent_id, entity_id) is not None:
            return True
        latest = self.tracker.latest_for(self.agent_id, entity_id)
        if latest is not None and latest.status == ProgressStatus.RUNNING:
            if not self.tracker.is_stale(latest):
                raise PipelineAlreadyRunning(self.agent_id, entity_id, latest.run_id or "unknown")
            logger.info(
                "Treating stale %s run %s for %s as abandoned; starting fresh",
                self.agent_id,
                latest.run_id,
                entity_id,
            )
        return False

    def _config(self, run_id: str, system_prompt: str, tools: list[ToolDefinition], plan_book: PlanBook) -> AgentConfig:
        def on_progress(step: str, detail: str | None) -> None:
            logger.debug("[%s] %s: %s", self.agent_id, step, detail or "")
            self.tracker.apply_event(run_id, step, detail, tool_steps=self.tool_steps)

        return AgentConfig(
            agent_id=self.agent_id,
            run_id=run_id,
            model=self.model,
            max_tokens=self.max_tokens,
            max_turns=self.max_turns,
            system_prompt=system_prompt,
            tools=tools,
            on_progress=on_progress,
            checkpoint_every_turn=self.checkpoint_every_turn,
            plan_book=plan_book,
        )

    def _execute(
        self,
        entity_id: str,
        make_config: Callable[[str, bool, AgentState | None], AgentConfig],
        initial_message: str,
    ) -> PipelineRunResult:
        run_ids: list[str] = []

        def tracked_make_config(run_id: str, is_resume: bool, state: AgentState | None) -> AgentConfig:
            run_ids.append(run_id)
            return make_config(run_id, is_resume, state)

        try:
            state = self.manager.run(self.agent_id, entity_id, tracked_make_config, lambda: initial_message)
        except AgentPaused as paused:
            logger.info("%s run %s paused; reporting in progress", self.agent_id, paused.run_id)
            return PipelineRunResult(run_id=paused.run_id, status="in_progress")
        except AgentRunConflict:
            logger.info("%s run for %s was claimed by another caller", self.agent_id, entity_id)
            raise
        except Exception as exc:
            if run_ids:
                self._mark_failed(run_ids[-1], exc)
            raise
        return PipelineRunResult(run_id=state.run_id, status="complete", final_output=state.final_output)

    def _mark_failed(self, run_id: str, error: Exception) -> None:
        def mutate(progress: PipelineProgress) -> None:
            if progress.status != ProgressStatus.ERROR:
                progress.status = ProgressStatus.ERROR
                progress.error = str(error) or type(error).__name__
                progress.current_step = "Pipeline failed"

        self.tracker.update(run_id, mutate)


def content_critique_system_prompt(recipe: ContentRecipe) -> str:
    return f"""You are a content pipeline orchestrator. You execute a write-critique-revise cycle.

Content type: {recipe.content_type}
Max revision rounds: {recipe.max_revision_rounds}

Procedure:
1. Call generate_draft with the content context.
2. Call run_critiques.
3. Call editor_decision with the critiques.
4. Call summarize_round with the round number, critiques, decision and brief.
5. If the decision is revise: call revise_draft with the brief, then go back to step 2.
6. If the decision is approve: call save_content with quality='approved'.
7. After {recipe.max_revision_rounds} rounds without approval: call save_content with quality='max-rounds-reached'.

Use load_foundation_docs if you need reference documents.
Do NOT narrate your reasoning. Call the tools."""


class ContentCritiquePipeline(AgentPipeline):
    agent_id = "content-critique"
    max_turns = 30
    step_names: ClassVar[list[str]] = ["Generate Draft", "Run Critiques", "Editor Review", "Save Content"]
    tool_steps = {
        "generate_draft": "Generate Draft",
        "run_critiques": "Run Critiques",
        "editor_decision": "Editor Review",
        "save_content": "Save Content",
    }

    def __init__(
        self,
        manager: AgentLifecycleManager,
        store: StateStore,
        provider: ReasoningProvider,
        critique_service: CritiqueService,
        *,
        model: str,
        tracker: ProgressTracker | None = None,
        state_ttl_seconds: int = 7_200,
        checkpoint_every_turn: bool = False,
    ) -> None:
        super().__init__(
            manager,
            store,
            provider,
            model=model,
            tracker=tracker,
            state_ttl_seconds=state_ttl_seconds,
            checkpoint_every_turn=checkpoint_every_turn,
        )
        self.critique_service = critique_service

    def run(self, entity_id: str, content_type: str, content_context: str) -> PipelineRunResult:
        """Write, critique and revise one piece of content until approved or out of rounds.

        Raises:
            UnknownRecipeError: ``content_type`` has no recipe.
            PipelineAlreadyRunning: Another live run holds this entity.
        """
        recipe = get_recipe(content_type, self.critique_service.recipes)
        self.ensure_not_running(entity_id)

        def make_config(run_id: str, is_resume: bool, state: AgentState | None) -> AgentConfig:
            if is_resume:
                logger.info("Resuming content critique run %s", run_id)
                self.tracker.apply_event(run_id, "paused", "Resuming content generation...")
            else:
                self.tracker.start(
                    run_id,
                    self.agent_id,
                    entity_id,
                    self.step_names,
                    current_step="Starting content generation...",
                    content_type=content_type,
                    max_rounds=recipe.max_revision_rounds,
                )
            plan_book = PlanBook(state.plan if state is not None else None)
            critique_tools = CritiqueTools(
                self.store,
                self.provider,
                self.critique_service,
                recipe,
                run_id=run_id,
                entity_id=entity_id,
                model=self.model,
                max_tokens=self.max_tokens,
                ttl_seconds=self.state_ttl_seconds,
                on_critics_selected=lambda critics: self._record_critics(run_id, critics),
                on_round=lambda digest: self._record_round(run_id, digest),
            )
            foundation_tools = FoundationTools(self.store, self.provider, entity_id, model=self.model)
            tools = [
                *create_plan_tools(plan_book),
                *create_scratchpad_tools(self.store),
                *foundation_tools.definitions(),
                *critique_tools.definitions(),
            ]
            return self._config(run_id, content_critique_system_prompt(recipe), tools, plan_book)

        initial_message = f"Generate {content_type} content for {entity_id}.\n\nContent context:\n{content_context}"
        result = self._execute(entity_id, make_config, initial_message)
        if result.status == "complete":
            self._record_quality(result.run_id)
        return result

    def _record_critics(self, run_id: str, critics: list[SelectedCritic]) -> None:
        def mutate(progress: PipelineProgress) -> None:
            progress.selected_critics = list(critics)

        self.tracker.update(run_id, mutate)

    def _record_round(self, run_id: str, digest: RoundDigest) -> None:
        def mutate(progress: PipelineProgress) -> None:
            progress.round = digest.round
            progress.critique_history.append(digest)
            progress.mark_step("Editor Review", ProgressStatus.COMPLETE, f"Round {digest.round}: {digest.editor_decision.value}")

        self.tracker.update(run_id, mutate)

    def _record_quality(self, run_id: str) -> None:
        raw = self.store.get(approved_content_key(run_id))
        if raw is None:
            return
        content = ApprovedContent.model_validate(json.loads(raw))

        def mutate(progress: PipelineProgress) -> None:
            progress.quality = content.quality

        self.tracker.update(run_id, mutate)


FOUNDATION_SYSTEM_PROMPT = """You are a foundation document generation orchestrator. Generate strategic foundation documents for a product by calling tools in the correct order.

GENERATION ORDER (strict):
1. generate_foundation_doc with doc_type="strategy"
2. generate_foundation_doc with doc_type="positioning"
3. Then, each depending on positioning:
   a. doc_type="brand-voice"
   b. doc_type="design-principles"
   c. doc_type="seo-strategy"
   d. doc_type="social-media-strategy"

RULES:
- If a tool returns an error about a missing upstream document, skip that doc and move to the next.
- Do NOT narrate or explain. Just call the tools.
- After all documents are generated, end your turn.

If you are resuming from a pause, first call load_foundation_docs to see which documents already exist, then only generate the missing ones."""


class FoundationPipeline(AgentPipeline):
    agent_id = "foundation"
    max_turns = 20

    def run(
        self,
        entity_id: str,
        strategic_inputs: StrategicInputs | None = None,
        *,
        product_context: str | None = None,
    ) -> PipelineRunResult:
        """Generate every foundation document for ``entity_id`` in dependency order.

        ``product_context``, when given, is written to the entity's scratchpad
        where the generation tool reads it.
        """
        self.ensure_not_running(entity_id)
        if product_context:
            self.store.set(scratchpad_key(entity_id, PRODUCT_CONTEXT_KEY), product_context)

        def make_config(run_id: str, is_resume: bool, state: AgentState | None) -> AgentConfig:
            if is_resume:
                logger.info("Resuming foundation run %s", run_id)
                self.tracker.apply_event(run_id, "paused", "Resuming foundation generation...")
            else:
                self.tracker.start(
                    run_id,
                    self.agent_id,
                    entity_id,
                    list(FOUNDATION_DOC_TYPES),
                    current_step="Starting foundation generation...",
                )
            plan_book = PlanBook(state.plan if state is not None else None)
            foundation_tools = FoundationTools(
                self.store,
                self.provider,
                entity_id,
                model=self.model,
                max_tokens=self.max_tokens,
                on_doc_progress=lambda doc_type, status: self._record_doc(run_id, doc_type, status),
            )
            tools = [
                *create_plan_tools(plan_book),
                *create_scratchpad_tools(self.store),
                *foundation_tools.definitions(),
            ]
            return self._config(run_id, FOUNDATION_SYSTEM_PROMPT, tools, plan_book)

        initial_message = f"Generate all foundation documents for {entity_id}."
        if strategic_inputs is not None and strategic_inputs.lines():
            initial_message += "\n\nStrategic inputs from the user:\n" + "\n".join(strategic_inputs.lines())
        return self._execute(entity_id, make_config, initial_message)

    def _record_doc(self, run_id: str, doc_type: str, status: str) -> None:
        def mutate(progress: PipelineProgress) -> None:
            progress.mark_step(doc_type, ProgressStatus(status))
            if status == "running":
                progress.current_step = f"Generating {doc_type}..."

        self.tracker.update(run_id, mutate)


def build_pipelines(
    settings: RuntimeSettings,
    *,
    store: StateStore,
    provider: ReasoningProvider,
    critique_service: CritiqueService | None = None,
) -> tuple[ContentCritiquePipeline, FoundationPipeline]:
    """Wire both orchestrators onto one store, provider and progress tracker."""
    manager = AgentLifecycleManager.from_settings(
        settings,
        repository=AgentStateRepository(store, ttl_seconds=settings.state_ttl_seconds),
        provider=provider,
    )
    tracker = ProgressTracker(
        store,
        ttl_seconds=settings.state_ttl_seconds,
        stale_after_seconds=settings.progress_stale_seconds,
    )
    if critique_service is None:
        critique_service = CritiqueService.from_settings(settings, store=store)
    content = ContentCritiquePipeline(
        manager,
        store,
        provider,
        critique_service,
        model=settings.model,
        tracker=tracker,
        state_ttl_seconds=settings.state_ttl_seconds,
    )
    foundation = FoundationPipeline(
        manager,
        store,
        provider,
        model=settings.model,
        tracker=tracker,
        state_ttl_seconds=settings.state_ttl_seconds,
    )
    return content, foundation
