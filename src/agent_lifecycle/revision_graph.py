from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .advisors import advisor_system_prompt
from .critique import CritiqueService
from .critique_tools import (
    ApprovedContent,
    author_system_prompt,
    build_draft_prompt,
    build_revision_prompt,
    find_fixed_items,
    find_well_scored_aspects,
)
from .documents import FoundationDocStore
from .llm import ReasoningProvider, complete_text
from .models import AdvisorCritique, CritiqueRoundResult, Decision, RoundDigest, Severity
from .recipes import get_recipe
from .state_store import StateStore, approved_content_key


class RevisionState(TypedDict, total=False):
    run_id: str
    entity_id: str
    content_type: str
    content_context: str
    draft: str
    round: int
    max_rounds: int
    previous_avg_score: float | None
    result: CritiqueRoundResult
    previous_critiques: list[AdvisorCritique]
    fixed_items: list[str]
    well_scored_aspects: list[str]
    history: list[RoundDigest]
    shipped: bool
    halted: bool


@dataclass
class RevisionResult:
    approved: bool
    draft: str
    rounds: int
    quality: str
    history: list[RoundDigest] = field(default_factory=list)


class RevisionGraph:
    """Fixed write-critique-revise loop: draft -> critique -> decide -> (revise -> critique)* -> ship/halt.

    The same flow the content critique agent runs through tools, with routing
    decided by the editor rubric instead of a model. Capped at the recipe's
    ``max_revision_rounds`` critique rounds.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        provider: ReasoningProvider,
        critique_service: CritiqueService,
        model_name: str,
        max_tokens: int = 4_096,
        ttl_seconds: int = 7_200,
    ) -> None:
        self.store = store
        self.docs = FoundationDocStore(store)
        self.provider = provider
        self.critique_service = critique_service
        self.model_name = model_name
        self.max_tokens = max_tokens
        self.ttl_seconds = ttl_seconds
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RevisionState)
        graph.add_node("draft", self._draft)
        graph.add_node("critique", self._critique)
        graph.add_node("decide", self._decide)
        graph.add_node("revise", self._revise)
        graph.add_node("ship", self._ship)
        graph.add_node("halt", self._halt)

        graph.add_edge(START, "draft")
        graph.add_edge("draft", "critique")
        graph.add_edge("critique", "decide")
        graph.add_edge("revise", "critique")
        graph.add_edge("ship", END)
        graph.add_edge("halt", END)
        return graph

    def _draft(self, state: RevisionState) -> dict[str, Any]:
        if state.get("draft"):
            return {"draft": state["draft"]}
        recipe = get_recipe(state["content_type"], self.critique_service.recipes)
        context_parts = self.docs.render_sections(state["entity_id"], recipe.author_context_docs)
        draft = complete_text(
            self.provider,
            model=self.model_name,
            system_prompt=author_system_prompt(recipe, self.critique_service.registry),
            user_prompt=build_draft_prompt(recipe, state.get("content_context", ""), context_parts),
            max_tokens=self.max_tokens,
        )
        return {"draft": draft}

    def _critique(self, state: RevisionState) -> dict[str, Any]:
        round_number = int(state.get("round", 0)) + 1
        result = self.critique_service.run_critique_round(
            state["draft"],
            state["content_type"],
            state["entity_id"],
            previous_avg_score=state.get("previous_avg_score"),
        )
        fixed_items = list(state.get("fixed_items", []))
        fixed_items.extend(find_fixed_items(state.get("previous_critiques", []), result.critiques))
        well_scored = list(state.get("well_scored_aspects", []))
        for aspect in find_well_scored_aspects(result.critiques):
            if aspect not in well_scored:
                well_scored.append(aspect)

        digest = RoundDigest(
            round=round_number,
            avg_score=result.avg_score,
            high_issue_count=sum(
                1 for critique in result.critiques for issue in critique.issues if issue.severity == Severity.HIGH
            ),
            editor_decision=result.decision,
            brief=result.brief,
            fixed_items=fixed_items,
            well_scored_aspects=well_scored,
        )
        return {
            "round": round_number,
            "result": result,
            "previous_avg_score": result.avg_score,
            "previous_critiques": result.critiques,
            "fixed_items": fixed_items,
            "well_scored_aspects": well_scored,
            "history": [*state.get("history", []), digest],
        }

    def _decide(self, state: RevisionState) -> Command[Literal["ship", "halt", "revise"]]:
        if state["result"].decision == Decision.APPROVE:
            return Command(goto="ship")
        if int(state["round"]) >= int(state["max_rounds"]):
            return Command(goto="halt")
        return Command(goto="revise")

    def _revise(self, state: RevisionState) -> dict[str, Any]:
        recipe = get_recipe(state["content_type"], self.critique_service.recipes)
        do_not_regress = [*state.get("fixed_items", []), *state.get("well_scored_aspects", [])]
        revised = complete_text(
            self.provider,
            model=self.model_name,
            system_prompt=advisor_system_prompt(recipe.author_advisor, self.critique_service.registry),
            user_prompt=build_revision_prompt(state["result"].brief, state["draft"], do_not_regress),
            max_tokens=self.max_tokens,
        )
        return {"draft": revised}

    def _persist(self, state: RevisionState, quality: str) -> None:
        content = ApprovedContent(content=state["draft"], quality=quality, content_type=state["content_type"])
        self.store.set(approved_content_key(state["run_id"]), content.model_dump_json(), ttl_seconds=self.ttl_seconds)

    def _ship(self, state: RevisionState) -> dict[str, Any]:
        self._persist(state, "approved")
        return {"shipped": True, "halted": False}

    def _halt(self, state: RevisionState) -> dict[str, Any]:
        self._persist(state, "max-rounds-reached")
        return {"halted": True, "shipped": False}

    def run(
        self,
        *,
        run_id: str,
        entity_id: str,
        content_type: str,
        content_context: str = "",
        draft: str | None = None,
    ) -> RevisionResult:
        """Run the loop to ship or halt. Pass ``draft`` to skip authoring.

        Raises:
            UnknownRecipeError: ``content_type`` has no recipe.
        """
        recipe = get_recipe(content_type, self.critique_service.recipes)
        initial: RevisionState = {
            "run_id": run_id,
            "entity_id": entity_id,
            "content_type": content_type,
            "content_context": content_context,
            "round": 0,
            "max_rounds": recipe.max_revision_rounds,
            "previous_avg_score": None,
            "history": [],
        }
        if draft:
            initial["draft"] = draft
        # Each round takes three steps: critique, decide, revise.
        result = self.graph.invoke(initial, config={"recursion_limit": 3 * recipe.max_revision_rounds + 5})
        shipped = bool(result.get("shipped"))
        return RevisionResult(
            approved=shipped,
            draft=result["draft"],
            rounds=int(result.get("round", 0)),
            quality="approved" if shipped else "max-rounds-reached",
            history=list(result.get("history", [])),
        )
