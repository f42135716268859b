from __future__ import annotations

from typing import Any

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from agent_lifecycle.llm import (
    LangChainReasoningProvider,
    complete_text,
    content_to_text,
    from_langchain_response,
    to_langchain_messages,
)
from agent_lifecycle.models import (
    AgentMessage,
    ProviderRequest,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolSchema,
    ToolUseBlock,
)
from conftest import ScriptedProvider, text_response


def test_history_converts_to_langchain_messages() -> None:
    history = [
        AgentMessage(role="user", content="Write a tagline."),
        AgentMessage(
            role="assistant",
            content=[TextBlock(text="Planning first."), ToolUseBlock(id="c1", name="create_plan", input={"steps": []})],
        ),
        AgentMessage(role="user", content=[ToolResultBlock(tool_use_id="c1", content='{"success": true}')]),
    ]

    converted = to_langchain_messages("You write.", history)

    assert [type(message) for message in converted] == [SystemMessage, HumanMessage, AIMessage, ToolMessage]
    assert converted[2].content == "Planning first."
    assert converted[2].tool_calls[0]["name"] == "create_plan"
    assert converted[2].tool_calls[0]["id"] == "c1"
    assert converted[3].tool_call_id == "c1"
    assert converted[3].status == "success"


def test_response_with_tool_calls_maps_to_tool_use() -> None:
    response = AIMessage(
        content="",
        tool_calls=[{"name": "run_critiques", "args": {}, "id": "call_9"}],
        response_metadata={"finish_reason": "tool_calls"},
    )

    converted = from_langchain_response(response)

    assert converted.stop_reason == StopReason.TOOL_USE
    assert converted.content == [ToolUseBlock(id="call_9", name="run_critiques", input={})]


def test_response_text_and_length_stop() -> None:
    converted = from_langchain_response(
        AIMessage(content="  partial output ", response_metadata={"finish_reason": "length"})
    )

    assert converted.stop_reason == StopReason.MAX_TOKENS
    assert converted.text() == "partial output"


def test_content_to_text_flattens_blocks() -> None:
    content = [{"type": "text", "text": "one"}, {"type": "tool_use", "id": "x"}, "two"]

    assert content_to_text(content) == "one\ntwo"


def test_provider_binds_tools_only_when_present() -> None:
    bound: list[Any] = []

    class _FakeModel:
        def bind_tools(self, tools: list[dict[str, Any]]) -> "_FakeModel":
            bound.append(tools)
            return self

        def invoke(self, messages: list[Any]) -> AIMessage:
            return AIMessage(content="ok", response_metadata={"finish_reason": "stop"})

    provider = LangChainReasoningProvider(model_factory=lambda **kwargs: _FakeModel())
    tool = ToolSchema(name="echo", description="Echo", input_schema={"type": "object", "properties": {}})

    plain = provider.create(ProviderRequest(model="m", max_tokens=10, system_prompt="", messages=[]))
    with_tools = provider.create(
        ProviderRequest(model="m", max_tokens=10, system_prompt="", messages=[], tools=[tool])
    )

    assert plain.text() == with_tools.text() == "ok"
    assert len(bound) == 1
    assert bound[0][0]["function"]["name"] == "echo"


def test_complete_text_strips_output() -> None:
    provider = ScriptedProvider([text_response("  Draft body \n")])

    text = complete_text(provider, model="m", system_prompt="sys", user_prompt="write")

    assert text == "Draft body"
    assert provider.requests[0].messages[0].content == "write"
    assert provider.requests[0].tools == []
