from __future__ import annotations

import logging

import pytest

from agent_lifecycle import critique as critique_module
from agent_lifecycle.critique import (
    NO_CRITICS_BRIEF,
    SELECTION_SYSTEM_PROMPT,
    CriticSelection,
    CritiqueService,
    LangChainCriticSelector,
    build_selection_prompt,
    run_critique_round,
    selection_candidates,
)
from agent_lifecycle.documents import FoundationDocStore, FoundationDocument
from agent_lifecycle.models import Decision
from agent_lifecycle.recipes import RECIPES, ContentRecipe, UnknownRecipeError
from conftest import FakeCriticClient, submission

WEBSITE_CRITICS = ["conversion-designer", "conversion-copywriter", "behavioral-scientist", "brand-copywriter"]


def test_one_failing_critic_does_not_sink_the_round(store, caplog: pytest.LogCaptureFixture) -> None:
    client = FakeCriticClient({"behavioral-scientist": RuntimeError("rate limited")}, default=submission(8))
    service = CritiqueService(store, client)

    with caplog.at_level(logging.WARNING, logger="agent_lifecycle.critique"):
        result = service.run_critique_round("Draft copy", "website", "idea-1")

    assert [critique.advisor_id for critique in result.critiques] == WEBSITE_CRITICS
    failed = [critique for critique in result.critiques if critique.error is not None]
    assert len(failed) == 1
    assert failed[0].advisor_id == "behavioral-scientist"
    assert failed[0].error == "rate limited"
    assert failed[0].score == 0
    assert failed[0].passed is False
    assert result.avg_score == 6.0
    assert result.decision == Decision.APPROVE
    assert "Critic behavioral-scientist failed: rate limited" in caplog.text


def test_unknown_recipe_raises(store) -> None:
    service = CritiqueService(store, FakeCriticClient())

    with pytest.raises(UnknownRecipeError, match="Recipe not found: 'press-release'"):
        service.run_critique_round("Draft", "press-release", "idea-1")


def test_recipe_without_resolvable_critics_approves_without_calls(store) -> None:
    recipes = {
        "memo": ContentRecipe(
            content_type="memo",
            author_advisor="brand-copywriter",
            author_context_docs=(),
            evaluation_needs="Internal memo.",
            min_aggregate_score=4,
            max_revision_rounds=1,
            named_critics=("nobody-here",),
        )
    }
    client = FakeCriticClient()
    service = CritiqueService(store, client, recipes=recipes)

    result = service.run_critique_round("Draft", "memo", "idea-1")

    assert result.critiques == []
    assert result.decision == Decision.APPROVE
    assert result.brief == NO_CRITICS_BRIEF
    assert client.calls == []


def test_critic_calls_respect_concurrency_limit(store) -> None:
    client = FakeCriticClient(delay_seconds=0.05)
    service = CritiqueService(store, client, concurrency=2)

    service.run_critique_round("Draft", "website", "idea-1")

    assert sorted(client.calls) == sorted(WEBSITE_CRITICS)
    assert client.peak <= 2


def test_concurrency_must_be_positive(store) -> None:
    with pytest.raises(ValueError, match="concurrency must be >= 1"):
        CritiqueService(store, FakeCriticClient(), concurrency=0)


def test_critic_prompt_includes_emphasis_and_reference_docs(store) -> None:
    FoundationDocStore(store).save(
        FoundationDocument(doc_type="design-principles", entity_id="idea-1", content="One CTA per screen.")
    )
    client = FakeCriticClient()
    service = CritiqueService(store, client)

    service.run_critique_round("Hero: Ship faster.", "website", "idea-1")

    prompt = client.prompts["conversion-designer"]
    assert prompt.startswith("You are evaluating this content as Conversion Designer.")
    assert "EMPHASIS FOR THIS CONTENT TYPE:\n" + RECIPES["website"].evaluation_emphasis in prompt
    assert "REFERENCE DOCUMENTS:\n## DESIGN PRINCIPLES\nOne CTA per screen." in prompt
    assert "CONTENT TO EVALUATE:\nHero: Ship faster." in prompt
    assert "REFERENCE DOCUMENTS" not in client.prompts["behavioral-scientist"]


def test_previous_average_feeds_oscillation_guard(store) -> None:
    client = FakeCriticClient(default=submission(3, ("medium", "Vague claims")))
    service = CritiqueService(store, client)

    first = run_critique_round("Draft", "social-post", "idea-1", service=service)
    second = run_critique_round("Draft", "social-post", "idea-1", previous_avg_score=3.5, service=service)

    assert first.decision == Decision.REVISE
    assert second.decision == Decision.APPROVE
    assert second.brief.splitlines() == [
        "[MEDIUM] (Positioning Strategist) Vague claims",
        "[MEDIUM] (Social Strategist) Vague claims",
    ]


def test_selection_candidates_exclude_author_and_non_evaluators() -> None:
    candidates = [advisor.id for advisor in selection_candidates(RECIPES["website"])]

    assert "landing-page-architect" not in candidates
    assert "brand-copywriter" in candidates
    assert [advisor.id for advisor in selection_candidates(RECIPES["blog-post"])].count("brand-copywriter") == 0


def test_langchain_selector_returns_structured_ids(store, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []

    class FakeAdapter:
        def invoke(self, messages):
            calls.append({"system": messages[0].content, "prompt": messages[1].content})
            return CriticSelection(advisor_ids=["conversion-designer", "behavioral-scientist"])

    def fake_structured_chat_model(**kwargs):
        assert kwargs["schema"] is CriticSelection
        return FakeAdapter()

    monkeypatch.setattr(critique_module, "get_structured_chat_model", fake_structured_chat_model)
    service = CritiqueService(store, FakeCriticClient(), selector=LangChainCriticSelector(model_name="test-model"))

    critics = service.select_critics(RECIPES["website"])

    assert [advisor.id for advisor in critics] == ["conversion-designer", "behavioral-scientist"]
    assert calls[0]["system"] == SELECTION_SYSTEM_PROMPT
    assert build_selection_prompt(RECIPES["website"], selection_candidates(RECIPES["website"])) == calls[0]["prompt"]
