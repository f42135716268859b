from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .models import ToolResultBlock, ToolSchema, ToolUseBlock

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[dict[str, Any]], Any]


class UnknownToolError(LookupError):
    """The provider requested a tool that is not registered for this agent."""

    def __init__(self, name: str, available: Iterable[str]) -> None:
        self.name = name
        self.available = sorted(available)
        super().__init__(f"Unknown tool: {name!r}. Available: {', '.join(self.available) or 'none'}")


class ToolInputError(ValueError):
    """Tool input is missing fields declared as required by its schema."""


@dataclass(frozen=True)
class ToolDefinition:
    """One tool an agent may call: provider-facing schema plus its executor."""

    name: str
    description: str
    input_schema: dict[str, Any]
    execute: ToolExecutor

    def to_provider_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, input_schema=self.input_schema)


def object_schema(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    """Build a JSON-schema object with the given properties and required fields."""
    return {
        "type": "object",
        "properties": properties or {},
        "required": required or [],
    }


def validate_tool_input(tool: ToolDefinition, tool_input: dict[str, Any]) -> None:
    required = tool.input_schema.get("required", [])
    missing = [field for field in required if field not in tool_input]
    if missing:
        raise ToolInputError(f"Tool {tool.name!r} missing required input fields: {', '.join(missing)}")


def serialize_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=_json_default, sort_keys=True)


def _json_default(value: Any) -> Any:
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return model_dump(mode="json", by_alias=True)
    return str(value)


class ToolDispatcher:
    """Name-keyed dispatch table for one agent run.

    Unknown names and executor exceptions are fatal to the run and propagate
    to the caller unchanged.
    """

    def __init__(self, tools: Iterable[ToolDefinition]) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name!r}")
            self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def schemas(self) -> list[ToolSchema]:
        return [tool.to_provider_schema() for tool in self._tools.values()]

    def lookup(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name, self._tools)
        return tool

    def dispatch(self, block: ToolUseBlock) -> ToolResultBlock:
        tool = self.lookup(block.name)
        validate_tool_input(tool, block.input)
        logger.debug("Dispatching tool %s (%s)", block.name, block.id)
        result = tool.execute(block.input)
        return ToolResultBlock(tool_use_id=block.id, content=serialize_tool_result(result))

    def dispatch_all(self, blocks: Iterable[ToolUseBlock]) -> list[ToolResultBlock]:
        """Execute tool-use blocks sequentially, preserving request order."""
        return [self.dispatch(block) for block in blocks]
