from __future__ import annotations

from dataclasses import dataclass, field

from .advisors import ADVISOR_REGISTRY, Advisor, get_advisor


class UnknownRecipeError(KeyError):
    def __init__(self, recipe_key: str) -> None:
        self.recipe_key = recipe_key
        super().__init__(f"Recipe not found: {recipe_key!r}")

    def __str__(self) -> str:
        return self.args[0]


@dataclass(frozen=True)
class ContentRecipe:
    """How one content type is authored, critiqued and gated."""

    content_type: str
    author_advisor: str
    author_context_docs: tuple[str, ...]
    evaluation_needs: str
    min_aggregate_score: float
    max_revision_rounds: int
    named_critics: tuple[str, ...] = field(default_factory=tuple)
    evaluation_emphasis: str = ""
    author_framework: str = ""


RECIPES: dict[str, ContentRecipe] = {
    "website": ContentRecipe(
        content_type="website",
        author_advisor="landing-page-architect",
        author_framework=(
            "Structure: hero (why now + differentiation in the first viewport), problem, solution, "
            "proof, objections, single primary CTA."
        ),
        author_context_docs=("positioning", "brand-voice", "seo-strategy"),
        named_critics=("conversion-designer", "conversion-copywriter", "behavioral-scientist", "brand-copywriter"),
        evaluation_needs=(
            "Website landing page copy. Needs review for conversion-centered design, conversion "
            "copywriting quality, behavioral science and brand voice consistency."
        ),
        evaluation_emphasis=(
            "Focus especially on the hero section: does it communicate the why-now and competitive "
            "differentiation within the first viewport? Are CTAs low-friction and high-clarity?"
        ),
        min_aggregate_score=4,
        max_revision_rounds=3,
    ),
    "blog-post": ContentRecipe(
        content_type="blog-post",
        author_advisor="brand-copywriter",
        author_context_docs=("positioning", "brand-voice", "seo-strategy"),
        named_critics=("positioning-strategist", "seo-expert", "narrative-editor"),
        evaluation_needs=(
            "Blog post. Needs review for positioning consistency, SEO optimization and narrative quality."
        ),
        evaluation_emphasis=(
            "Focus on whether the post reinforces market category positioning without reading like "
            "marketing copy. The narrative should educate, not sell."
        ),
        min_aggregate_score=4,
        max_revision_rounds=3,
    ),
    "social-post": ContentRecipe(
        content_type="social-post",
        author_advisor="brand-copywriter",
        author_context_docs=("positioning", "brand-voice", "social-media-strategy"),
        named_critics=("positioning-strategist", "social-strategist"),
        evaluation_needs="Social media post. Needs review for positioning consistency and hook effectiveness.",
        min_aggregate_score=4,
        max_revision_rounds=2,
    ),
}


def get_recipe(recipe_key: str, recipes: dict[str, ContentRecipe] | None = None) -> ContentRecipe:
    catalog = RECIPES if recipes is None else recipes
    recipe = catalog.get(recipe_key)
    if recipe is None:
        raise UnknownRecipeError(recipe_key)
    return recipe


def resolve_critics(recipe: ContentRecipe, registry: tuple[Advisor, ...] = ADVISOR_REGISTRY) -> list[Advisor]:
    """Named critics in recipe order; ids missing from the registry are skipped."""
    critics: list[Advisor] = []
    for advisor_id in recipe.named_critics:
        advisor = get_advisor(advisor_id, registry)
        if advisor is not None:
            critics.append(advisor)
    return critics
