from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .models import (
    AgentMessage,
    ContentBlock,
    ProviderRequest,
    ProviderResponse,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolSchema,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3

_FINISH_REASON_MAP: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "tool_use": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class ReasoningProvider(Protocol):
    """One reasoning round-trip: history and tool schemas in, content blocks out."""

    def create(self, request: ProviderRequest) -> ProviderResponse: ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response.

    Calls the underlying LLM runnable and normalizes the raw output into the
    declared Pydantic schema, handling both direct schema instances and
    ``include_raw=True`` envelope shapes.
    """

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: Any) -> ModelT:
        """Invoke the LLM and return a validated Pydantic model instance.

        Args:
            prompt: A prompt string or a list of LangChain messages.

        Returns:
            An instance of the declared schema type.

        Raises:
            RuntimeError: If the LLM returns unparseable or invalid output.
        """
        raw_output = self.runnable.invoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for agent runtime execution")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        max_completion_tokens: Maximum tokens for the completion response.
        repo_root: Optional repo root for .env file resolution.

    Returns:
        Configured ChatOpenAI instance.

    Raises:
        ValueError: If model_name is empty.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles three input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from parsing_error
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(
                f"Structured output returned no parsed payload for {schema.__name__}"
            )

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json", by_alias=True)
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(
            f"Structured output validation failed for {schema.__name__}: {exc}"
        ) from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = True,
    include_raw: bool = False,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter that invokes the LLM with schema-constrained output.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")

    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        max_completion_tokens=max_completion_tokens,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        include_raw=include_raw,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                if item.get("type") in {"tool_use", "function_call"}:
                    continue
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                    continue
                nested = item.get("content")
                if nested is not None:
                    chunks.append(content_to_text(nested))
                    continue
                chunks.append(json.dumps(item, sort_keys=True))
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


# ---------------------------------------------------------------------------
# LangChain-backed reasoning provider
# ---------------------------------------------------------------------------


def to_openai_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }
        for tool in tools
    ]


def to_langchain_messages(system_prompt: str, messages: list[AgentMessage]) -> list[BaseMessage]:
    """Convert block-structured history into LangChain chat messages."""
    converted: list[BaseMessage] = []
    if system_prompt:
        converted.append(SystemMessage(content=system_prompt))
    for message in messages:
        if isinstance(message.content, str):
            if message.role == "assistant":
                converted.append(AIMessage(content=message.content))
            else:
                converted.append(HumanMessage(content=message.content))
            continue

        if message.role == "assistant":
            converted.append(
                AIMessage(
                    content=message.text(),
                    tool_calls=[
                        {"name": block.name, "args": block.input, "id": block.id, "type": "tool_call"}
                        for block in message.tool_uses()
                    ],
                )
            )
            continue

        text_parts: list[str] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                converted.append(
                    ToolMessage(
                        content=block.content,
                        tool_call_id=block.tool_use_id,
                        status="error" if block.is_error else "success",
                    )
                )
            elif isinstance(block, TextBlock):
                text_parts.append(block.text)
        if text_parts:
            converted.append(HumanMessage(content="\n".join(text_parts)))
    return converted


def from_langchain_response(response: AIMessage) -> ProviderResponse:
    """Map an AIMessage back onto text / tool-use blocks and a stop reason."""
    blocks: list[ContentBlock] = []
    text = content_to_text(response.content).strip()
    if text:
        blocks.append(TextBlock(text=text))
    for call in response.tool_calls:
        blocks.append(
            ToolUseBlock(
                id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                name=call["name"],
                input=dict(call.get("args") or {}),
            )
        )

    finish_reason = str(response.response_metadata.get("finish_reason") or "")
    stop_reason = _FINISH_REASON_MAP.get(finish_reason)
    if stop_reason is None or (stop_reason == StopReason.END_TURN and response.tool_calls):
        stop_reason = StopReason.TOOL_USE if response.tool_calls else StopReason.END_TURN
    return ProviderResponse(content=blocks, stop_reason=stop_reason)


class LangChainReasoningProvider:
    """``ReasoningProvider`` on top of ``ChatOpenAI.bind_tools``."""

    def __init__(
        self,
        *,
        model_factory: Callable[..., Any] = get_chat_model,
        temperature: float = 0.0,
    ) -> None:
        self.model_factory = model_factory
        self.temperature = temperature

    def create(self, request: ProviderRequest) -> ProviderResponse:
        model = self.model_factory(
            model_name=request.model,
            temperature=self.temperature,
            max_completion_tokens=request.max_tokens,
        )
        runnable = model.bind_tools(to_openai_tools(request.tools)) if request.tools else model
        response = runnable.invoke(to_langchain_messages(request.system_prompt, request.messages))
        if not isinstance(response, AIMessage):
            raise RuntimeError(f"Reasoning provider returned unsupported response type {type(response).__name__}")
        return from_langchain_response(response)


def complete_text(
    provider: ReasoningProvider,
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_tokens: int = 4_096,
) -> str:
    """Single tool-free provider call returning the joined text output."""
    response = provider.create(
        ProviderRequest(
            model=model,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
            messages=[AgentMessage(role="user", content=user_prompt)],
        )
    )
    return response.text().strip()
