from __future__ import annotations

import json
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from .state_store import StateStore, foundation_doc_key

FOUNDATION_DOC_TYPES: tuple[str, ...] = (
    "strategy",
    "positioning",
    "brand-voice",
    "design-principles",
    "seo-strategy",
    "social-media-strategy",
)

# Upstream documents each type is generated from.
DOC_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "strategy": (),
    "positioning": ("strategy",),
    "brand-voice": ("positioning",),
    "design-principles": ("positioning", "strategy"),
    "seo-strategy": ("positioning",),
    "social-media-strategy": ("positioning", "brand-voice"),
}

DOC_ADVISOR_MAP: dict[str, str] = {
    "strategy": "positioning-strategist",
    "positioning": "positioning-strategist",
    "brand-voice": "brand-copywriter",
    "design-principles": "conversion-designer",
    "seo-strategy": "seo-expert",
    "social-media-strategy": "social-strategist",
}


class FoundationDocument(BaseModel):
    doc_type: str
    entity_id: str
    content: str
    advisor_id: str = ""
    version: int = Field(default=1, ge=1)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class StrategicInputs(BaseModel):
    """Optional user-supplied strategy choices; only the strategy doc reads them."""

    differentiation: str | None = None
    deliberate_tradeoffs: str | None = None
    anti_target: str | None = None

    def lines(self) -> list[str]:
        parts: list[str] = []
        if self.differentiation:
            parts.append(f"Differentiation: {self.differentiation}")
        if self.deliberate_tradeoffs:
            parts.append(f"Deliberate tradeoffs: {self.deliberate_tradeoffs}")
        if self.anti_target:
            parts.append(f"Not targeting: {self.anti_target}")
        return parts


def doc_heading(doc_type: str) -> str:
    return doc_type.replace("-", " ").upper()


class FoundationDocStore:
    """Reference documents per entity, read by critics and the foundation tools."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def get(self, entity_id: str, doc_type: str) -> FoundationDocument | None:
        raw = self.store.get(foundation_doc_key(entity_id, doc_type))
        if raw is None:
            return None
        return FoundationDocument.model_validate(json.loads(raw))

    def save(self, document: FoundationDocument) -> None:
        self.store.set(foundation_doc_key(document.entity_id, document.doc_type), document.model_dump_json())

    def get_all(self, entity_id: str) -> dict[str, FoundationDocument]:
        docs: dict[str, FoundationDocument] = {}
        for doc_type in FOUNDATION_DOC_TYPES:
            doc = self.get(entity_id, doc_type)
            if doc is not None:
                docs[doc_type] = doc
        return docs

    def render_sections(self, entity_id: str, doc_types: tuple[str, ...] | list[str]) -> list[str]:
        """Markdown sections for the requested docs that exist, in request order."""
        sections: list[str] = []
        for doc_type in doc_types:
            doc = self.get(entity_id, doc_type)
            if doc is not None:
                sections.append(f"## {doc_heading(doc_type)}\n{doc.content}")
        return sections
