from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import pytest

from agent_lifecycle.models import PlanStep, ToolUseBlock
from agent_lifecycle.tools import (
    ToolDefinition,
    ToolDispatcher,
    ToolInputError,
    UnknownToolError,
    object_schema,
    serialize_tool_result,
)


def _tool(name: str, execute=None, required: list[str] | None = None) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"{name} tool",
        input_schema=object_schema({"value": {"type": "string"}}, required),
        execute=execute or (lambda tool_input: {"ok": True}),
    )


def test_duplicate_tool_names_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate tool name: 'save'"):
        ToolDispatcher([_tool("save"), _tool("save")])


def test_unknown_tool_lists_available_names() -> None:
    dispatcher = ToolDispatcher([_tool("save"), _tool("load")])

    with pytest.raises(UnknownToolError) as excinfo:
        dispatcher.dispatch(ToolUseBlock(id="1", name="delete", input={}))

    assert excinfo.value.name == "delete"
    assert excinfo.value.available == ["load", "save"]
    assert "Available: load, save" in str(excinfo.value)


def test_missing_required_input_is_rejected_before_execution() -> None:
    calls: list[dict[str, Any]] = []
    dispatcher = ToolDispatcher([_tool("save", calls.append, required=["value"])])

    with pytest.raises(ToolInputError, match="missing required input fields: value"):
        dispatcher.dispatch(ToolUseBlock(id="1", name="save", input={}))

    assert calls == []


def test_dispatch_all_preserves_order_and_ids() -> None:
    seen: list[str] = []

    def record(tool_input: dict[str, Any]) -> str:
        seen.append(tool_input["value"])
        return tool_input["value"].upper()

    dispatcher = ToolDispatcher([_tool("shout", record)])
    blocks = [ToolUseBlock(id=f"id-{index}", name="shout", input={"value": value}) for index, value in enumerate("abc")]

    results = dispatcher.dispatch_all(blocks)

    assert seen == ["a", "b", "c"]
    assert [(result.tool_use_id, result.content) for result in results] == [("id-0", "A"), ("id-1", "B"), ("id-2", "C")]
    assert all(result.is_error is False for result in results)


def test_executor_errors_propagate() -> None:
    def explode(tool_input: dict[str, Any]) -> None:
        raise RuntimeError("disk full")

    dispatcher = ToolDispatcher([_tool("save", explode)])

    with pytest.raises(RuntimeError, match="disk full"):
        dispatcher.dispatch(ToolUseBlock(id="1", name="save", input={}))


def test_schemas_keep_registration_order() -> None:
    dispatcher = ToolDispatcher([_tool("b"), _tool("a")])

    assert [schema.name for schema in dispatcher.schemas()] == ["b", "a"]
    assert dispatcher.names == ["a", "b"]
    assert "a" in dispatcher
    assert len(dispatcher) == 2


def test_serialize_tool_result_handles_models_and_datetimes() -> None:
    payload = {
        "plan": [PlanStep(description="Draft", rationale="Start")],
        "at": datetime(2024, 1, 2, tzinfo=UTC),
    }

    decoded = json.loads(serialize_tool_result(payload))

    assert decoded["plan"] == [{"description": "Draft", "rationale": "Start", "status": "pending"}]
    assert decoded["at"] == "2024-01-02 00:00:00+00:00"
    assert serialize_tool_result("plain") == "plain"
