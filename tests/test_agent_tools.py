from __future__ import annotations

import pytest

from agent_lifecycle.agent_tools import (
    PRODUCT_CONTEXT_KEY,
    FoundationTools,
    PlanBook,
    create_plan_tools,
    create_scratchpad_tools,
)
from agent_lifecycle.models import PlanStep, PlanStepStatus
from agent_lifecycle.state_store import scratchpad_key
from conftest import ScriptedProvider, text_response


def _by_name(tools):
    return {tool.name: tool for tool in tools}


def test_plan_tools_create_and_update() -> None:
    book = PlanBook()
    tools = _by_name(create_plan_tools(book))

    created = tools["create_plan"].execute(
        {"steps": [{"description": "Draft", "rationale": "Start"}, {"description": "Review", "rationale": "Check"}]}
    )
    updated = tools["update_plan"].execute(
        {"step_index": 0, "status": "complete", "new_steps": [{"description": "Polish", "rationale": "Tighten"}]}
    )

    assert created == {"success": True, "step_count": 2}
    assert [step.description for step in updated["plan"]] == ["Draft", "Polish", "Review"]
    assert book.steps[0].status == PlanStepStatus.COMPLETE


def test_update_plan_reports_out_of_range_index() -> None:
    tools = _by_name(create_plan_tools(PlanBook([PlanStep(description="Only", rationale="One")])))

    result = tools["update_plan"].execute({"step_index": 3, "status": "skipped"})

    assert result == {"error": "Step index 3 out of range (0-0)"}


def test_plan_book_steps_are_copies() -> None:
    book = PlanBook([PlanStep(description="Draft", rationale="Start")])

    book.steps[0].status = PlanStepStatus.SKIPPED

    assert book.steps[0].status == PlanStepStatus.PENDING
    with pytest.raises(IndexError):
        book.update(-1, PlanStepStatus.COMPLETE)


def test_scratchpad_round_trip_is_scoped_per_entity(store) -> None:
    tools = _by_name(create_scratchpad_tools(store))

    tools["write_scratchpad"].execute({"entity_id": "idea-1", "key": "angle", "value": "speed"})

    assert tools["read_scratchpad"].execute({"entity_id": "idea-1", "key": "angle"}) == {"key": "angle", "value": "speed"}
    assert tools["read_scratchpad"].execute({"entity_id": "idea-2", "key": "angle"})["value"] is None


def test_regenerating_a_doc_bumps_its_version(store) -> None:
    store.set(scratchpad_key("idea-1", PRODUCT_CONTEXT_KEY), "A budgeting app.")
    events: list[tuple[str, str]] = []
    provider = ScriptedProvider([text_response("Strategy v1"), text_response("Strategy v2")])
    tools = FoundationTools(
        store, provider, "idea-1", model="test-model", on_doc_progress=lambda doc, status: events.append((doc, status))
    )

    first = tools.generate_foundation_doc({"doc_type": "strategy", "strategic_inputs": {"anti_target": "Banks"}})
    second = tools.generate_foundation_doc({"doc_type": "strategy"})

    assert (first["version"], second["version"]) == (1, 2)
    assert second["content"] == "Strategy v2"
    assert "STRATEGIC INPUTS (from user):\nNot targeting: Banks" in provider.requests[0].messages[0].content
    assert events == [("strategy", "running"), ("strategy", "complete")] * 2
    loaded = tools.load_foundation_docs({"doc_types": ["strategy", "positioning"]})
    assert loaded["missing"] == ["positioning"]
    assert loaded["docs"]["strategy"].content == "Strategy v2"


def test_empty_generation_is_reported_as_error(store) -> None:
    store.set(scratchpad_key("idea-1", PRODUCT_CONTEXT_KEY), "A budgeting app.")
    events: list[tuple[str, str]] = []
    tools = FoundationTools(
        store,
        ScriptedProvider([text_response("   ")]),
        "idea-1",
        model="test-model",
        on_doc_progress=lambda doc, status: events.append((doc, status)),
    )

    result = tools.generate_foundation_doc({"doc_type": "strategy"})

    assert result == {"error": "Generation returned empty content for strategy. Please retry."}
    assert events[-1] == ("strategy", "error")
    assert tools.load_foundation_docs({})["docs"] == {}


def test_unknown_doc_type_is_an_error(store) -> None:
    tools = FoundationTools(store, ScriptedProvider([]), "idea-1", model="test-model")

    assert tools.generate_foundation_doc({"doc_type": "pricing"}) == {"error": "Unknown foundation document type: pricing"}
