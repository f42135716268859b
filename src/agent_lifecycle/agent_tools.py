from __future__ import annotations

import logging
from typing import Any, Callable

from .advisors import ADVISOR_REGISTRY, Advisor, advisor_system_prompt
from .documents import (
    DOC_ADVISOR_MAP,
    DOC_DEPENDENCIES,
    FOUNDATION_DOC_TYPES,
    FoundationDocStore,
    FoundationDocument,
    StrategicInputs,
    doc_heading,
)
from .llm import ReasoningProvider, complete_text
from .models import PlanStep, PlanStepStatus
from .state_store import StateStore, scratchpad_key
from .tools import ToolDefinition, object_schema

logger = logging.getLogger(__name__)

PRODUCT_CONTEXT_KEY = "product-context"

DocProgressCallback = Callable[[str, str], None]

_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "rationale": {"type": "string"},
    },
    "required": ["description", "rationale"],
}

_DOC_TYPE_SCHEMA: dict[str, Any] = {"type": "string", "enum": list(FOUNDATION_DOC_TYPES)}


# ---------------------------------------------------------------------------
# Plan tools
# ---------------------------------------------------------------------------


class PlanBook:
    """The agent's own execution plan for one run.

    Seeded from ``AgentState.plan`` on resume; the lifecycle manager copies
    ``steps`` back onto the state after every tool round.
    """

    def __init__(self, steps: list[PlanStep] | None = None) -> None:
        self._steps: list[PlanStep] = [step.model_copy() for step in steps or []]

    @property
    def steps(self) -> list[PlanStep]:
        return [step.model_copy() for step in self._steps]

    def replace(self, steps: list[PlanStep]) -> None:
        self._steps = list(steps)

    def update(self, index: int, status: PlanStepStatus, new_steps: list[PlanStep] | None = None) -> None:
        if index < 0 or index >= len(self._steps):
            raise IndexError(f"Step index {index} out of range (0-{len(self._steps) - 1})")
        self._steps[index].status = status
        if new_steps:
            self._steps[index + 1 : index + 1] = new_steps


def _parse_steps(raw_steps: Any) -> list[PlanStep]:
    return [PlanStep(description=item["description"], rationale=item["rationale"]) for item in raw_steps or []]


def create_plan_tools(plan_book: PlanBook) -> list[ToolDefinition]:
    def create_plan(tool_input: dict[str, Any]) -> dict[str, Any]:
        steps = _parse_steps(tool_input["steps"])
        plan_book.replace(steps)
        return {"success": True, "step_count": len(steps)}

    def update_plan(tool_input: dict[str, Any]) -> dict[str, Any]:
        try:
            plan_book.update(
                int(tool_input["step_index"]),
                PlanStepStatus(tool_input["status"]),
                _parse_steps(tool_input.get("new_steps")),
            )
        except IndexError as exc:
            return {"error": str(exc)}
        return {"success": True, "plan": plan_book.steps}

    return [
        ToolDefinition(
            name="create_plan",
            description=(
                "Create a step-by-step plan before starting work. Each step has a description and "
                "rationale. Call this at the beginning of your task."
            ),
            input_schema=object_schema({"steps": {"type": "array", "items": _STEP_SCHEMA}}, ["steps"]),
            execute=create_plan,
        ),
        ToolDefinition(
            name="update_plan",
            description=(
                "Mark a plan step as complete, in_progress, or skipped. Optionally add new steps "
                "discovered during execution."
            ),
            input_schema=object_schema(
                {
                    "step_index": {"type": "integer", "description": "The 0-based index of the step to update"},
                    "status": {"type": "string", "enum": ["in_progress", "complete", "skipped"]},
                    "new_steps": {
                        "type": "array",
                        "description": "Optional new steps to insert after the updated step",
                        "items": _STEP_SCHEMA,
                    },
                },
                ["step_index", "status"],
            ),
            execute=update_plan,
        ),
    ]


# ---------------------------------------------------------------------------
# Scratchpad tools
# ---------------------------------------------------------------------------


def create_scratchpad_tools(store: StateStore) -> list[ToolDefinition]:
    """Shared per-entity notes any agent can read or write. Entries do not expire."""

    def read_scratchpad(tool_input: dict[str, Any]) -> dict[str, Any]:
        key = tool_input["key"]
        return {"key": key, "value": store.get(scratchpad_key(tool_input["entity_id"], key))}

    def write_scratchpad(tool_input: dict[str, Any]) -> dict[str, Any]:
        store.set(scratchpad_key(tool_input["entity_id"], tool_input["key"]), str(tool_input["value"]))
        return {"success": True}

    return [
        ToolDefinition(
            name="read_scratchpad",
            description="Read a value from the shared scratchpad for this entity. Other agents can write here too.",
            input_schema=object_schema(
                {"entity_id": {"type": "string"}, "key": {"type": "string"}},
                ["entity_id", "key"],
            ),
            execute=read_scratchpad,
        ),
        ToolDefinition(
            name="write_scratchpad",
            description="Write a value to the shared scratchpad for this entity. Other agents can read it later.",
            input_schema=object_schema(
                {"entity_id": {"type": "string"}, "key": {"type": "string"}, "value": {"type": "string"}},
                ["entity_id", "key", "value"],
            ),
            execute=write_scratchpad,
        ),
    ]


# ---------------------------------------------------------------------------
# Foundation tools
# ---------------------------------------------------------------------------

_DOC_INSTRUCTIONS: dict[str, str] = {
    "strategy": (
        "Write a concise strategy document answering three questions:\n"
        "1. WHO IS OUR SMALLEST VIABLE AUDIENCE?\n"
        "2. WHAT MAKES US REMARKABLE TO THEM?\n"
        "3. WHAT'S OUR PERMISSION TO REACH THEM?\n\n"
        "Where the user gave no differentiation, tradeoffs or anti-target, mark the inferred choice "
        "with: [ASSUMPTION: review and confirm]"
    ),
    "positioning": (
        "Write a positioning statement covering competitive alternatives, unique attributes, value, "
        "target customer, market category and why now. Derive every claim from the strategy document."
    ),
    "brand-voice": (
        "Define a brand voice document: voice summary, 3-5 tone attributes, one example sentence per "
        "context (headline, CTA, paragraph opening, technical explanation, error message) and 3-5 "
        "counter-examples."
    ),
    "design-principles": (
        "Write design principles for the product's landing pages: page focus, attention ratio, visual "
        "hierarchy and CTA treatment, each grounded in the positioning."
    ),
    "seo-strategy": (
        "Write an SEO strategy covering keyword clusters, content architecture, on-page strategy, "
        "internal linking and SERP feature targets."
    ),
    "social-media-strategy": (
        "Write a social media strategy covering platform selection, 3-5 content pillars, posting "
        "cadence, voice adaptation per platform and engagement approach."
    ),
}


def build_generation_prompt(doc_type: str, product_context: str, upstream_docs: dict[str, str]) -> str:
    prompt = f"Generate a {doc_type.replace('-', ' ')} document for this product.\n\n"
    prompt += f"PRODUCT CONTEXT:\n{product_context}\n\n"
    if upstream_docs:
        prompt += "EXISTING FOUNDATION DOCUMENTS:\n"
        for upstream_type, content in upstream_docs.items():
            prompt += f"\n## {doc_heading(upstream_type)}\n{content}\n"
        prompt += "\n"
    return prompt + _DOC_INSTRUCTIONS[doc_type]


class FoundationTools:
    """Generates foundation documents in dependency order and loads them back."""

    def __init__(
        self,
        store: StateStore,
        provider: ReasoningProvider,
        entity_id: str,
        *,
        model: str,
        max_tokens: int = 4_096,
        registry: tuple[Advisor, ...] = ADVISOR_REGISTRY,
        on_doc_progress: DocProgressCallback | None = None,
    ) -> None:
        self.store = store
        self.docs = FoundationDocStore(store)
        self.provider = provider
        self.entity_id = entity_id
        self.model = model
        self.max_tokens = max_tokens
        self.registry = registry
        self.on_doc_progress = on_doc_progress

    def _notify(self, doc_type: str, status: str) -> None:
        if self.on_doc_progress is not None:
            self.on_doc_progress(doc_type, status)

    def load_foundation_docs(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        doc_types = tool_input.get("doc_types") or []
        if not doc_types:
            return {"docs": self.docs.get_all(self.entity_id), "missing": []}
        docs: dict[str, FoundationDocument] = {}
        missing: list[str] = []
        for doc_type in doc_types:
            doc = self.docs.get(self.entity_id, doc_type)
            if doc is None:
                missing.append(doc_type)
            else:
                docs[doc_type] = doc
        return {"docs": docs, "missing": missing}

    def generate_foundation_doc(self, tool_input: dict[str, Any]) -> dict[str, Any]:
        doc_type = tool_input["doc_type"]
        if doc_type not in DOC_DEPENDENCIES:
            return {"error": f"Unknown foundation document type: {doc_type}"}

        upstream_docs: dict[str, str] = {}
        for upstream_type in DOC_DEPENDENCIES[doc_type]:
            upstream = self.docs.get(self.entity_id, upstream_type)
            if upstream is None:
                return {
                    "error": (
                        f'Cannot generate {doc_type}: upstream document "{upstream_type}" does not exist. '
                        "Generate it first."
                    )
                }
            upstream_docs[upstream_type] = upstream.content

        product_context = self.store.get(scratchpad_key(self.entity_id, PRODUCT_CONTEXT_KEY))
        if not product_context:
            return {"error": f"No product context found for {self.entity_id}. Write '{PRODUCT_CONTEXT_KEY}' first."}

        if doc_type == "strategy" and tool_input.get("strategic_inputs"):
            strategic = StrategicInputs.model_validate(tool_input["strategic_inputs"])
            if strategic.lines():
                product_context += "\n\nSTRATEGIC INPUTS (from user):\n" + "\n".join(strategic.lines())

        self._notify(doc_type, "running")
        try:
            advisor_id = DOC_ADVISOR_MAP[doc_type]
            content = complete_text(
                self.provider,
                model=self.model,
                system_prompt=advisor_system_prompt(advisor_id, self.registry),
                user_prompt=build_generation_prompt(doc_type, product_context, upstream_docs),
                max_tokens=self.max_tokens,
            )
            if not content:
                self._notify(doc_type, "error")
                return {"error": f"Generation returned empty content for {doc_type}. Please retry."}

            existing = self.docs.get(self.entity_id, doc_type)
            document = FoundationDocument(
                doc_type=doc_type,
                entity_id=self.entity_id,
                content=content,
                advisor_id=advisor_id,
                version=existing.version + 1 if existing is not None else 1,
            )
            self.docs.save(document)
        except Exception:
            self._notify(doc_type, "error")
            raise

        self._notify(doc_type, "complete")
        logger.info("Generated %s v%d for %s", doc_type, document.version, self.entity_id)
        return {
            "success": True,
            "doc_type": doc_type,
            "advisor_id": advisor_id,
            "version": document.version,
            "content_length": len(content),
            "content": content,
        }

    def definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                name="load_foundation_docs",
                description=(
                    "Load one or more foundation documents. If doc_types is omitted, loads all existing docs."
                ),
                input_schema=object_schema(
                    {
                        "doc_types": {
                            "type": "array",
                            "items": _DOC_TYPE_SCHEMA,
                            "description": "Specific doc types to load. Omit to load all.",
                        }
                    }
                ),
                execute=self.load_foundation_docs,
            ),
            ToolDefinition(
                name="generate_foundation_doc",
                description=(
                    "Generate a foundation document using the assigned advisor. Requires upstream docs to "
                    "exist (e.g. positioning requires strategy). Saves and returns the generated content."
                ),
                input_schema=object_schema(
                    {
                        "doc_type": {**_DOC_TYPE_SCHEMA, "description": "The foundation document to generate."},
                        "strategic_inputs": {
                            "type": "object",
                            "properties": {
                                "differentiation": {"type": "string"},
                                "deliberate_tradeoffs": {"type": "string"},
                                "anti_target": {"type": "string"},
                            },
                            "description": "Optional strategic inputs from the user (strategy doc only).",
                        },
                    },
                    ["doc_type"],
                ),
                execute=self.generate_foundation_doc,
            ),
        ]
