from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from .advisors import ADVISOR_REGISTRY, Advisor
from .documents import FoundationDocStore
from .editor import apply_editor_rubric
from .llm import get_structured_chat_model
from .models import AdvisorCritique, CritiqueRoundResult, CritiqueSubmission, Decision
from .recipes import ContentRecipe, get_recipe, resolve_critics
from .settings import RuntimeSettings
from .state_store import StateStore, build_state_store

logger = logging.getLogger(__name__)

NO_CRITICS_BRIEF = "No critics configured for this recipe."

SELECTION_SYSTEM_PROMPT = "You select which advisors should review content. Return only advisor ids."


class CriticClient(Protocol):
    def evaluate(self, advisor: Advisor, prompt: str) -> CritiqueSubmission: ...


class CriticSelector(Protocol):
    def select(self, prompt: str) -> list[str]: ...


class CriticSelection(BaseModel):
    advisor_ids: list[str] = Field(description="Ids of the advisors who should review the content")


class LangChainCriticClient:
    """Evaluator calls with schema-constrained output, so scores never need re-parsing."""

    def __init__(self, *, model_name: str, max_tokens: int = 1_024, temperature: float = 0.0) -> None:
        self.model_name = model_name
        self.max_tokens = max_tokens
        self.temperature = temperature

    def evaluate(self, advisor: Advisor, prompt: str) -> CritiqueSubmission:
        adapter = get_structured_chat_model(
            model_name=self.model_name,
            schema=CritiqueSubmission,
            temperature=self.temperature,
            max_completion_tokens=self.max_tokens,
            method="function_calling",
            strict=True,
            include_raw=False,
        )
        return adapter.invoke([SystemMessage(content=advisor.system_prompt), HumanMessage(content=prompt)])


class LangChainCriticSelector:
    """Picks critics for a recipe by matching its evaluation needs against advisor expertise."""

    def __init__(self, *, model_name: str, max_tokens: int = 256) -> None:
        self.model_name = model_name
        self.max_tokens = max_tokens

    def select(self, prompt: str) -> list[str]:
        adapter = get_structured_chat_model(
            model_name=self.model_name,
            schema=CriticSelection,
            temperature=0.0,
            max_completion_tokens=self.max_tokens,
            method="function_calling",
            strict=True,
            include_raw=False,
        )
        selection = adapter.invoke([SystemMessage(content=SELECTION_SYSTEM_PROMPT), HumanMessage(content=prompt)])
        return list(selection.advisor_ids)


def selection_candidates(recipe: ContentRecipe, registry: tuple[Advisor, ...] = ADVISOR_REGISTRY) -> list[Advisor]:
    """Advisors able to evaluate, excluding the recipe's author."""
    return [advisor for advisor in registry if advisor.evaluation_expertise and advisor.id != recipe.author_advisor]


def build_selection_prompt(recipe: ContentRecipe, candidates: list[Advisor]) -> str:
    descriptions = "\n".join(
        f"- {advisor.id}: EVALUATES: {advisor.evaluation_expertise} "
        f"DOES NOT EVALUATE: {advisor.does_not_evaluate or 'N/A'}"
        for advisor in candidates
    )
    return (
        f"Content type: {recipe.content_type}\n"
        f"Evaluation needs: {recipe.evaluation_needs}\n\n"
        f"Available advisors:\n{descriptions}\n\n"
        "Select the advisors whose expertise matches these evaluation needs. "
        'Exclude advisors whose "does not evaluate" conflicts with the needs.'
    )


class CritiqueService:
    """Fans a draft out to a recipe's critics and aggregates their verdicts.

    Critic calls run on a fixed-size thread pool. Every call settles
    independently: a failing critic becomes a zero-scored, errored critique
    and never aborts the round.
    """

    def __init__(
        self,
        store: StateStore,
        critic_client: CriticClient,
        *,
        concurrency: int = 2,
        recipes: dict[str, ContentRecipe] | None = None,
        registry: tuple[Advisor, ...] = ADVISOR_REGISTRY,
        selector: CriticSelector | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got: {concurrency}")
        self.docs = FoundationDocStore(store)
        self.critic_client = critic_client
        self.concurrency = concurrency
        self.recipes = recipes
        self.registry = registry
        self.selector = selector

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, store: StateStore | None = None) -> "CritiqueService":
        return cls(
            store if store is not None else build_state_store(settings),
            LangChainCriticClient(model_name=settings.critic_model),
            concurrency=settings.critique_concurrency,
            selector=LangChainCriticSelector(model_name=settings.critic_model),
        )

    def select_critics(self, recipe: ContentRecipe) -> list[Advisor]:
        """Critics for one run, chosen by the selector from the recipe's evaluation needs.

        Without a selector, or when selection fails, the recipe's named critics
        are used. A selection matching no candidate yields no critics.
        """
        if self.selector is None:
            return resolve_critics(recipe, self.registry)
        candidates = selection_candidates(recipe, self.registry)
        try:
            selected_ids = set(self.selector.select(build_selection_prompt(recipe, candidates)))
        except Exception as exc:  # noqa: BLE001 - named critics are the fallback
            logger.warning("Critic selection for %s failed, using named critics: %s", recipe.content_type, exc)
            return resolve_critics(recipe, self.registry)
        critics = [advisor for advisor in candidates if advisor.id in selected_ids]
        logger.info("Selected critics for %s: %s", recipe.content_type, ", ".join(a.id for a in critics) or "none")
        return critics

    def build_critic_prompt(self, advisor: Advisor, recipe: ContentRecipe, draft: str, entity_id: str) -> str:
        prompt = (
            f"You are evaluating this content as {advisor.name}.\n\n"
            f"Your evaluation focus:\n{advisor.evaluation_expertise}\n\n"
        )
        if recipe.evaluation_emphasis:
            prompt += f"EMPHASIS FOR THIS CONTENT TYPE:\n{recipe.evaluation_emphasis}\n\n"
        context_parts = self.docs.render_sections(entity_id, advisor.context_docs)
        if context_parts:
            prompt += "REFERENCE DOCUMENTS:\n" + "\n\n".join(context_parts) + "\n\n"
        prompt += (
            f"CONTENT TO EVALUATE:\n{draft}\n\n"
            "Score from 1 to 10, decide pass or fail, and list concrete issues with severity "
            "(high, medium, low), a description and a suggested fix."
        )
        return prompt

    def run_single_critic(self, advisor: Advisor, draft: str, recipe: ContentRecipe, entity_id: str) -> AdvisorCritique:
        prompt = self.build_critic_prompt(advisor, recipe, draft, entity_id)
        submission = self.critic_client.evaluate(advisor, prompt)
        return AdvisorCritique(
            advisor_id=advisor.id,
            name=advisor.name,
            score=submission.score,
            passed=submission.passed,
            issues=list(submission.issues),
        )

    def run_critics(
        self,
        critics: list[Advisor],
        draft: str,
        recipe: ContentRecipe,
        entity_id: str,
    ) -> list[AdvisorCritique]:
        """Run every critic, at most ``concurrency`` at once; results keep critic order."""
        if not critics:
            return []
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="critic") as executor:
            futures = [
                executor.submit(self.run_single_critic, advisor, draft, recipe, entity_id)
                for advisor in critics
            ]
            critiques: list[AdvisorCritique] = []
            for advisor, future in zip(critics, futures):
                try:
                    critiques.append(future.result())
                except Exception as exc:  # noqa: BLE001 - one critic failing must not sink the round
                    message = str(exc) or "Critic call failed"
                    logger.warning("Critic %s failed: %s", advisor.id, message)
                    critiques.append(AdvisorCritique.failed(advisor.id, advisor.name, message))
        return critiques

    def run_critique_round(
        self,
        draft: str,
        recipe_key: str,
        entity_id: str,
        previous_avg_score: float | None = None,
    ) -> CritiqueRoundResult:
        """Critique ``draft`` with the recipe's named critics and apply the editor rubric.

        Raises:
            UnknownRecipeError: If ``recipe_key`` is not a known recipe.
        """
        recipe = get_recipe(recipe_key, self.recipes)
        critics = resolve_critics(recipe, self.registry)
        if not critics:
            return CritiqueRoundResult(critiques=[], avg_score=0, decision=Decision.APPROVE, brief=NO_CRITICS_BRIEF)

        critiques = self.run_critics(critics, draft, recipe, entity_id)
        editor = apply_editor_rubric(critiques, recipe.min_aggregate_score, previous_avg_score)
        logger.info(
            "Critique round for %s (%s): avg=%.2f decision=%s",
            entity_id,
            recipe_key,
            editor.avg_score,
            editor.decision.value,
        )
        return CritiqueRoundResult(
            critiques=critiques,
            avg_score=editor.avg_score,
            decision=editor.decision,
            brief=editor.brief,
        )


def run_critique_round(
    draft: str,
    recipe_key: str,
    entity_id: str,
    previous_avg_score: float | None = None,
    *,
    service: CritiqueService | None = None,
) -> CritiqueRoundResult:
    if service is None:
        service = CritiqueService.from_settings(RuntimeSettings.from_env())
    return service.run_critique_round(draft, recipe_key, entity_id, previous_avg_score)
