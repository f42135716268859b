from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from .advisors import ADVISOR_REGISTRY, Advisor, advisor_system_prompt, get_advisor
from .critique import CritiqueService
from .documents import FoundationDocStore
from .editor import apply_editor_rubric
from .llm import ReasoningProvider, complete_text
from .models import AdvisorCritique, CritiqueIssue, Decision, RoundDigest, RoundRecord, SelectedCritic, Severity
from .recipes import ContentRecipe
from .state_store import (
    StateStore,
    approved_content_key,
    critique_round_key,
    critique_session_key,
    draft_key,
)
from .tools import ToolDefinition, object_schema

logger = logging.getLogger(__name__)

ContentQuality = Literal["approved", "max-rounds-reached"]


class CritiqueSession(BaseModel):
    """Cross-tool bookkeeping for one critique run, persisted so it survives a pause."""

    run_id: str
    selected_critics: list[SelectedCritic] = Field(default_factory=list)
    round_critiques: list[AdvisorCritique] = Field(default_factory=list)
    previous_round_critiques: list[AdvisorCritique] = Field(default_factory=list)
    previous_avg_score: float | None = None
    fixed_items: list[str] = Field(default_factory=list)
    well_scored_aspects: list[str] = Field(default_factory=list)

    @classmethod
    def load(cls, store: StateStore, run_id: str) -> "CritiqueSession":
        raw = store.get(critique_session_key(run_id))
        if raw is None:
            return cls(run_id=run_id)
        return cls.model_validate(json.loads(raw))

    def save(self, store: StateStore, *, ttl_seconds: int) -> None:
        store.set(critique_session_key(self.run_id), self.model_dump_json(), ttl_seconds=ttl_seconds)

    def do_not_regress(self) -> list[str]:
        return [*self.fixed_items, *self.well_scored_aspects]


class ApprovedContent(BaseModel):
    content: str
    quality: ContentQuality
    content_type: str
    saved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def find_fixed_items(previous: list[AdvisorCritique], current: list[AdvisorCritique]) -> list[str]:
    """Non-low issues from ``previous`` that the same critic no longer raises.

    An issue still counts as present when a current non-low issue contains the
    first three words of its description (case-insensitive).
    """
    fixed: list[str] = []
    current_by_advisor = {critique.advisor_id: critique for critique in current}
    for prev_critique in previous:
        current_critique = current_by_advisor.get(prev_critique.advisor_id)
        if current_critique is None:
            continue
        for prev_issue in prev_critique.issues:
            if prev_issue.severity == Severity.LOW:
                continue
            lead = " ".join(prev_issue.description.lower().split(" ")[:3])
            still_present = any(
                issue.severity != Severity.LOW and lead in issue.description.lower()
                for issue in current_critique.issues
            )
            if not still_present:
                fixed.append(prev_issue.description)
    return fixed


def find_well_scored_aspects(critiques: list[AdvisorCritique]) -> list[str]:
    aspects: list[str] = []
    for critique in critiques:
        if not any(issue.severity in (Severity.HIGH, Severity.MEDIUM) for issue in critique.issues):
            aspects.append(f"{critique.name}'s evaluation domain")
    return aspects


def build_draft_prompt(recipe: ContentRecipe, content_context: str, context_parts: list[str]) -> str:
    prompt = f"Write {recipe.content_type} content for this product.\n\n"
    prompt += f"CONTEXT:\n{content_context}\n\n"
    if context_parts:
        prompt += "REFERENCE DOCUMENTS:\n" + "\n\n".join(context_parts) + "\n\n"
    return prompt + "Write the complete content now."


def build_revision_prompt(brief: str, draft: str, do_not_regress: list[str]) -> str:
    prompt = f"REVISION BRIEF:\nAddress these issues:\n{brief}\n\n"
    if do_not_regress:
        prompt += (
            "DO NOT REGRESS. These aspects scored well or were fixed in previous rounds:\n"
            + "\n".join(f"- {item}" for item in do_not_regress)
            + "\n\nAddress only the listed issues. Do not change aspects on the do-not-regress list.\n\n"
        )
    return prompt + f"CURRENT DRAFT:\n{draft}\n\nRevise the draft now."


def author_system_prompt(recipe: ContentRecipe, registry: tuple[Advisor, ...] = ADVISOR_REGISTRY) -> str:
    prompt = advisor_system_prompt(recipe.author_advisor, registry)
    if recipe.author_framework:
        prompt += "\n\n## FRAMEWORK\n" + recipe.author_framework
    return prompt


def _coerce_severity(value: Any) -> Severity:
    if isinstance(value, Severity):
        return value
    try:
        return Severity(str(value).strip().lower())
    except ValueError:
        return Severity.MEDIUM


def _coerce_score(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _coerce_critiques(raw: Any) -> list[AdvisorCritique]:
    """Best-effort read of critiques echoed back by the model.

    Entries that are not objects are dropped. Missing names fall back to the
    advisor id, unreadable scores to 0 and unknown severities to medium.
    """
    if not isinstance(raw, list):
        return []
    critiques: list[AdvisorCritique] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        advisor_id = str(item.get("advisor_id") or item.get("advisorId") or "unknown")
        issues = [
            CritiqueIssue(
                severity=_coerce_severity(issue.get("severity")),
                description=str(issue.get("description") or ""),
                suggestion=str(issue.get("suggestion") or ""),
            )
            for issue in item.get("issues") or []
            if isinstance(issue, dict)
        ]
        passed = item.get("pass", item.get("passed", False))
        critiques.append(
            AdvisorCritique(
                advisor_id=advisor_id,
                name=str(item.get("name") or advisor_id),
                score=_coerce_score(item.get("score")),
                passed=bool(passed),
                issues=issues,
                error=str(item["error"]) if item.get("error") else None,
            )
        )
    return critiques


class CritiqueTools:
    """Tools driving the write, critique, decide, revise cycle for one run.

    Drafts, round records and approved content live in the store under the
    run id with the state TTL.
    """

    def __init__(
        self,
        store: StateStore,
        provider: ReasoningProvider,
        service: CritiqueService,
        recipe: ContentRecipe,
        *,
        run_id: str,
        entity_id: str,
        model: str,
        max_tokens: int = 4_096,
        ttl_seconds: int = 7_200,
        on_critics_selected: Callable[[list[SelectedCritic]], None] | None = None,
        on_round: Callable[[RoundDigest], None] | None = None,
    ) -> None:
        self.store = store
        self.docs = FoundationDocStore(store)
        self.provider = provider
        self.service = service
        self.recipe = recipe
        self.run_id = run_id
        self.entity_id = entity_id
        self.model = model
        self.max_tokens = max_tokens
        self.ttl_seconds = ttl_seconds
        self.on_critics_selected = on_critics_selected
        self.on_round = on_round

    # -- persistence helpers ---------------------------------------------

    def _session(self) -> CritiqueSession:
        return CritiqueSession.load(self.store, self.run_id)

    def _save_session(self, session: CritiqueSession) -> None:
        session.save(self.store, ttl_seconds=self.ttl_seconds)

    def _draft(self) -> str | None:
        return self.store.get(draft_key(self.run_id))

    def _save_draft(self, draft: str) -> None:
        self.store.set(draft_key(self.run_id), draft, ttl_seconds=self.ttl_seconds)

    def _round_critiques(self, session: CritiqueSession, tool_input: dict[str, Any]) -> list[AdvisorCritique]:
        if session.round_critiques:
            return list(session.round_critiques)
        return _coerce_critiques(tool_input.get("critiques"))

    def _critics(self, session: CritiqueSession) -> list[Advisor]:
        if not session.selected_critics:
            return self.service.select_critics(self.recipe)
        critics: list[Advisor] = []
        for selected in session.selected_critics:
            advisor = get_advisor(selected.advisor_id, self.service.registry)
            if advisor is None:
                logger.warning("Selected critic %s is no longer registered", selected.advisor_id)
                continue
            critics.append(advisor)
        return critics

    # -- tools -------------------------------------------------------------

    def generate_draft(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        context_parts = self.docs.render_sections(self.entity_id, self.recipe.author_context_docs)
        draft = complete_text(
            self.provider,
            model=self.model,
            system_prompt=author_system_prompt(self.recipe, self.service.registry),
            user_prompt=build_draft_prompt(self.recipe, tool_input["content_context"], context_parts),
            max_tokens=self.max_tokens,
        )
        self._save_draft(draft)
        return {"success": True, "draft_length": len(draft), "draft": draft}

    def run_critiques(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        draft = self._draft()
        if draft is None:
            return {"error": "No draft found. Call generate_draft first."}

        session = self._session()
        critics = self._critics(session)
        if not session.selected_critics and critics:
            session.selected_critics = [SelectedCritic(advisor_id=a.id, name=a.name) for a in critics]
            self._save_session(session)
            if self.on_critics_selected is not None:
                self.on_critics_selected(session.selected_critics)
        if not critics:
            session.round_critiques = []
            self._save_session(session)
            return {"critiques": [], "message": "No matching critics found"}

        critiques = self.service.run_critics(critics, draft, self.recipe, self.entity_id)
        session.round_critiques = critiques
        self._save_session(session)
        return {"critiques": critiques}

    def editor_decision(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        session = self._session()
        critiques = self._round_critiques(session, tool_input)
        result = apply_editor_rubric(critiques, self.recipe.min_aggregate_score, session.previous_avg_score)
        session.previous_avg_score = result.avg_score
        self._save_session(session)
        return {
            "decision": result.decision.value,
            "brief": result.brief,
            "avg_score": result.avg_score,
            "high_issue_count": result.high_issue_count,
        }

    def revise_draft(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        draft = self._draft()
        if draft is None:
            return {"error": "No draft found. Call generate_draft first."}

        revised = complete_text(
            self.provider,
            model=self.model,
            system_prompt=advisor_system_prompt(self.recipe.author_advisor, self.service.registry),
            user_prompt=build_revision_prompt(tool_input["brief"], draft, self._session().do_not_regress()),
            max_tokens=self.max_tokens,
        )
        self._save_draft(revised)
        return {"success": True, "revised_draft_length": len(revised), "revised_draft": revised}

    def summarize_round(self, tool_input: dict[str, Any]) -> RoundDigest:
        round_number = int(tool_input["round"])
        decision = Decision(tool_input["editor_decision"])
        brief = tool_input.get("brief") or ""

        session = self._session()
        critiques = self._round_critiques(session, tool_input)
        session.fixed_items.extend(find_fixed_items(session.previous_round_critiques, critiques))
        for aspect in find_well_scored_aspects(critiques):
            if aspect not in session.well_scored_aspects:
                session.well_scored_aspects.append(aspect)
        session.previous_round_critiques = critiques
        session.round_critiques = []
        self._save_session(session)

        record = RoundRecord(
            round=round_number,
            critiques=critiques,
            editor_decision=decision,
            revision_brief=brief or None,
            fixed_items=list(session.fixed_items),
            well_scored_aspects=list(session.well_scored_aspects),
        )
        self.store.set(
            critique_round_key(self.run_id, round_number),
            record.model_dump_json(by_alias=True),
            ttl_seconds=self.ttl_seconds,
        )

        avg_score = sum(c.score for c in critiques) / len(critiques) if critiques else 0
        digest = RoundDigest(
            round=round_number,
            avg_score=avg_score,
            high_issue_count=sum(1 for c in critiques for i in c.issues if i.severity == Severity.HIGH),
            editor_decision=decision,
            brief=brief,
            fixed_items=list(session.fixed_items),
            well_scored_aspects=list(session.well_scored_aspects),
        )
        if self.on_round is not None:
            self.on_round(digest)
        return digest

    def save_content(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        draft = self._draft()
        if draft is None:
            return {"error": "No draft found. Call generate_draft first."}
        content = ApprovedContent(content=draft, quality=tool_input["quality"], content_type=self.recipe.content_type)
        self.store.set(approved_content_key(self.run_id), content.model_dump_json(), ttl_seconds=self.ttl_seconds)
        logger.info("Saved %s content for run %s (%s)", self.recipe.content_type, self.run_id, content.quality)
        return {"success": True, "quality": content.quality, "content_length": len(draft)}

    def definitions(self) -> list[ToolDefinition]:
        critiques_schema = {"type": "array", "items": {"type": "object"}}
        return [
            ToolDefinition(
                name="generate_draft",
                description="Generate the initial content draft with the recipe's author advisor. Call this first.",
                input_schema=object_schema(
                    {
                        "content_context": {
                            "type": "string",
                            "description": "Content-specific context (research data, keywords, etc.)",
                        }
                    },
                    ["content_context"],
                ),
                execute=self.generate_draft,
            ),
            ToolDefinition(
                name="run_critiques",
                description="Run the critique cycle on the current draft with the recipe's critics.",
                input_schema=object_schema(),
                execute=self.run_critiques,
            ),
            ToolDefinition(
                name="editor_decision",
                description="Apply the mechanical editor rubric to critique results. Returns approve or revise with a brief.",
                input_schema=object_schema({"critiques": critiques_schema}),
                execute=self.editor_decision,
            ),
            ToolDefinition(
                name="revise_draft",
                description="Revise the current draft from the editor brief, keeping the do-not-regress list intact.",
                input_schema=object_schema(
                    {"brief": {"type": "string", "description": "Editor revision brief"}},
                    ["brief"],
                ),
                execute=self.revise_draft,
            ),
            ToolDefinition(
                name="summarize_round",
                description="Save the full round and return a compressed summary that tracks fixed items across rounds.",
                input_schema=object_schema(
                    {
                        "round": {"type": "integer"},
                        "critiques": critiques_schema,
                        "editor_decision": {"type": "string", "enum": ["approve", "revise"]},
                        "brief": {"type": "string"},
                    },
                    ["round", "editor_decision"],
                ),
                execute=self.summarize_round,
            ),
            ToolDefinition(
                name="save_content",
                description="Save the current draft with its quality status. Call after the editor approves.",
                input_schema=object_schema(
                    {"quality": {"type": "string", "enum": ["approved", "max-rounds-reached"]}},
                    ["quality"],
                ),
                execute=self.save_content,
            ),
        ]
