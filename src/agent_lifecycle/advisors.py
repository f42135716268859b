from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

AdvisorRole = Literal["author", "critic", "strategist"]


@dataclass(frozen=True)
class Advisor:
    """A named persona that authors drafts or evaluates them."""

    id: str
    name: str
    role: AdvisorRole
    system_prompt: str
    evaluation_expertise: str = ""
    does_not_evaluate: str = ""
    context_docs: tuple[str, ...] = field(default_factory=tuple)


ADVISOR_REGISTRY: tuple[Advisor, ...] = (
    Advisor(
        id="brand-copywriter",
        name="Brand Copywriter",
        role="author",
        system_prompt=(
            "You are a senior brand copywriter. You write clear, specific, benefit-led copy in the "
            "product's established brand voice. You never pad, never hedge and never invent claims."
        ),
        evaluation_expertise=(
            "Brand voice consistency, clarity of language, specificity of claims, and whether every "
            "sentence earns its place."
        ),
        does_not_evaluate="Visual layout, SEO mechanics, or pricing strategy.",
        context_docs=("brand-voice",),
    ),
    Advisor(
        id="landing-page-architect",
        name="Landing Page Architect",
        role="author",
        system_prompt=(
            "You assemble landing pages section by section: hero, problem, solution, proof, objections "
            "and call to action. Every section must move the reader one step closer to the CTA."
        ),
    ),
    Advisor(
        id="conversion-designer",
        name="Conversion Designer",
        role="critic",
        system_prompt="You evaluate landing pages for conversion-centered design.",
        evaluation_expertise=(
            "Attention ratio, page focus, directional cues toward the primary CTA, and whether the "
            "page has exactly one job."
        ),
        does_not_evaluate="Sentence-level copy quality or brand voice.",
        context_docs=("design-principles",),
    ),
    Advisor(
        id="conversion-copywriter",
        name="Conversion Copywriter",
        role="critic",
        system_prompt="You evaluate copy for conversion effectiveness.",
        evaluation_expertise=(
            "Headline effectiveness, CTA clarity, voice-of-customer alignment, and whether benefits "
            "are stated in the customer's own words."
        ),
        does_not_evaluate="Visual design or technical SEO.",
        context_docs=("positioning",),
    ),
    Advisor(
        id="behavioral-scientist",
        name="Behavioral Scientist",
        role="critic",
        system_prompt="You evaluate content through the lens of behavioral science.",
        evaluation_expertise=(
            "CTA friction, cognitive load, choice overload, and the psychological levers the page "
            "relies on."
        ),
        does_not_evaluate="Brand voice or keyword targeting.",
    ),
    Advisor(
        id="positioning-strategist",
        name="Positioning Strategist",
        role="strategist",
        system_prompt="You evaluate whether content reinforces the product's market positioning.",
        evaluation_expertise=(
            "Positioning consistency: competitive alternatives, unique attributes, value, target "
            "customer and market category. Flags content that reads like a generic sales pitch."
        ),
        does_not_evaluate="Grammar, formatting, or on-page SEO.",
        context_docs=("positioning", "strategy"),
    ),
    Advisor(
        id="seo-expert",
        name="SEO Expert",
        role="critic",
        system_prompt="You evaluate content for search performance.",
        evaluation_expertise=(
            "Keyword placement, heading structure, search intent match, and coverage of "
            "People-Also-Ask questions."
        ),
        does_not_evaluate="Brand voice or conversion design.",
        context_docs=("seo-strategy",),
    ),
    Advisor(
        id="narrative-editor",
        name="Narrative Editor",
        role="critic",
        system_prompt="You evaluate long-form content for narrative quality.",
        evaluation_expertise=(
            "Narrative arc, whether the piece opens with a shift rather than a pitch, pacing, and "
            "whether it educates instead of selling."
        ),
        does_not_evaluate="Keyword density or CTA mechanics.",
    ),
    Advisor(
        id="social-strategist",
        name="Social Strategist",
        role="critic",
        system_prompt="You evaluate short-form social posts.",
        evaluation_expertise="Hook strength in the first line, platform fit, and shareability.",
        does_not_evaluate="Long-form structure or SEO.",
        context_docs=("social-media-strategy",),
    ),
)


def get_advisor(advisor_id: str, registry: tuple[Advisor, ...] = ADVISOR_REGISTRY) -> Advisor | None:
    for advisor in registry:
        if advisor.id == advisor_id:
            return advisor
    return None


def advisor_system_prompt(advisor_id: str, registry: tuple[Advisor, ...] = ADVISOR_REGISTRY) -> str:
    advisor = get_advisor(advisor_id, registry)
    if advisor is None:
        raise KeyError(f"Unknown advisor: {advisor_id!r}")
    return advisor.system_prompt
