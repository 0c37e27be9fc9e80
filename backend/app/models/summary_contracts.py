from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

SUMMARY_CATEGORIES: tuple[str, ...] = (
    "Technology & AI",
    "Business & Startups",
    "Finance & Investing",
    "Science & Space",
    "Health & Fitness",
    "Self-Improvement",
    "Education & Learning",
    "Creative & Design",
    "Politics & Society",
    "Entertainment & Media",
    "Lifestyle & Culture",
    "Career & Professional Growth",
    "Other",
)
# Short labels produced by older prompts.
_LEGACY_CATEGORY_NAMES: dict[str, str] = {
    "tech": "Technology & AI",
    "business": "Business & Startups",
    "finance": "Finance & Investing",
    "science": "Science & Space",
    "health": "Health & Fitness",
    "self-improvement": "Self-Improvement",
    "education": "Education & Learning",
    "entertainment": "Entertainment & Media",
    "productivity": "Self-Improvement",
}
_CANONICAL_CATEGORIES_BY_LOWER: dict[str, str] = {
    category.lower(): category for category in SUMMARY_CATEGORIES
}

LinkType = Literal["book", "course", "tool", "website", "podcast"]
LinkCategory = Literal["by_speaker", "recommended"]

LANGUAGE_CODE_PATTERN = re.compile(r"^[a-z]{2,3}(?:-[a-z0-9]{2,8})?$")


def normalize_category(raw_value: object) -> str:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return "Other"
    lowered = raw_value.strip().lower()
    canonical = _CANONICAL_CATEGORIES_BY_LOWER.get(lowered)
    if canonical is not None:
        return canonical
    return _LEGACY_CATEGORY_NAMES.get(lowered, "Other")


class _ProviderShape(BaseModel):
    """Accepts the provider's camelCase keys and serializes snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class ContextualSection(_ProviderShape):
    title: str
    content: str
    timestamp_start: float = Field(default=0.0, ge=0.0)
    timestamp_end: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def _end_not_before_start(self) -> ContextualSection:
        if self.timestamp_end < self.timestamp_start:
            raise ValueError("timestamp_end must not be before timestamp_start")
        return self


class RefresherCard(_ProviderShape):
    id: str = ""
    title: str
    explanation: str

    @model_validator(mode="before")
    @classmethod
    def _accept_front_back_cards(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        card = dict(value)
        if "title" not in card and "frontText" in card:
            card["title"] = card["frontText"]
        if "explanation" not in card and "backText" in card:
            card["explanation"] = card["backText"]
        return card


class ActionableInsight(_ProviderShape):
    category: str = "strategy"
    insight: str

    @model_validator(mode="before")
    @classmethod
    def _accept_plain_strings(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"category": "strategy", "insight": value}
        return value


class AffiliateLink(_ProviderShape):
    title: str
    author: str | None = None
    url: str = ""
    type: LinkType = "book"
    category: LinkCategory = "by_speaker"

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: object) -> object:
        if value is None:
            return "book"
        if isinstance(value, str) and value.strip().lower() == "resource":
            return "website"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: object) -> object:
        if value is None:
            return "by_speaker"
        return value


class SummaryContent(_ProviderShape):
    quick_summary: str = Field(min_length=1)
    contextual_sections: list[ContextualSection] = Field(min_length=1)
    refresher_cards: list[RefresherCard] = Field(default_factory=lambda: [])
    actionable_insights: list[ActionableInsight] = Field(default_factory=lambda: [])
    affiliate_links: list[AffiliateLink] = Field(default_factory=lambda: [])
    category: str = "Other"

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: object) -> str:
        return normalize_category(value)

    @field_validator("refresher_cards")
    @classmethod
    def _ensure_card_ids(cls, cards: list[RefresherCard]) -> list[RefresherCard]:
        return [
            card if card.id.strip() else card.model_copy(update={"id": f"rc{index}"})
            for index, card in enumerate(cards, start=1)
        ]

    def translatable_text(self) -> TranslatableText:
        return TranslatableText(
            quick_summary=self.quick_summary,
            contextual_sections=[
                SectionText(title=section.title, content=section.content)
                for section in self.contextual_sections
            ],
            refresher_cards=[
                CardText(title=card.title, explanation=card.explanation)
                for card in self.refresher_cards
            ],
            actionable_insights=[insight.insight for insight in self.actionable_insights],
            affiliate_link_titles=[link.title for link in self.affiliate_links],
        )

    def with_translated_text(self, translated: TranslatableText) -> SummaryContent:
        """
        Replace natural-language fields positionally.

        Timestamps, ids, URLs, link types, insight categories and the summary
        category are carried over from this payload unchanged.
        """
        shape_mismatches = [
            name
            for name, expected, actual in (
                ("contextualSections", len(self.contextual_sections), len(translated.contextual_sections)),
                ("refresherCards", len(self.refresher_cards), len(translated.refresher_cards)),
                ("actionableInsights", len(self.actionable_insights), len(translated.actionable_insights)),
                ("affiliateLinkTitles", len(self.affiliate_links), len(translated.affiliate_link_titles)),
            )
            if expected != actual
        ]
        if shape_mismatches:
            raise ValueError(
                "translated payload does not parse to the source shape: "
                + ", ".join(shape_mismatches)
            )

        return self.model_copy(
            update={
                "quick_summary": translated.quick_summary,
                "contextual_sections": [
                    section.model_copy(update={"title": text.title, "content": text.content})
                    for section, text in zip(
                        self.contextual_sections, translated.contextual_sections, strict=True
                    )
                ],
                "refresher_cards": [
                    card.model_copy(update={"title": text.title, "explanation": text.explanation})
                    for card, text in zip(self.refresher_cards, translated.refresher_cards, strict=True)
                ],
                "actionable_insights": [
                    insight.model_copy(update={"insight": text})
                    for insight, text in zip(
                        self.actionable_insights, translated.actionable_insights, strict=True
                    )
                ],
                "affiliate_links": [
                    link.model_copy(update={"title": title})
                    for link, title in zip(
                        self.affiliate_links, translated.affiliate_link_titles, strict=True
                    )
                ],
            }
        )


class SectionText(_ProviderShape):
    title: str
    content: str


class CardText(_ProviderShape):
    title: str
    explanation: str


class TranslatableText(_ProviderShape):
    """The natural-language subset of a summary, exchanged with the translation provider."""

    quick_summary: str = Field(min_length=1)
    contextual_sections: list[SectionText] = Field(default_factory=lambda: [])
    refresher_cards: list[CardText] = Field(default_factory=lambda: [])
    actionable_insights: list[str] = Field(default_factory=lambda: [])
    affiliate_link_titles: list[str] = Field(default_factory=lambda: [])


class SummarizeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str = Field(min_length=1, max_length=64)
    language: str | None = Field(default=None, max_length=16)
    retry_count: int = Field(default=0, ge=0, le=100)

    @field_validator("video_id", mode="before")
    @classmethod
    def _strip_video_id(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return normalized or None
        return value


class TranslateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language: str = Field(min_length=2, max_length=16)

    @field_validator("language", mode="before")
    @classmethod
    def _normalize_language(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class SummaryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    video_id: str
    video_title: str
    channel_name: str | None = None
    thumbnail_url: str | None = None
    language: str
    original_language: str
    content: SummaryContent
    request_count: int
    created_at: str
    cache_hit: bool


class TranslationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary_id: str
    language: str
    source_language: str
    content: SummaryContent
    created_at: str
    cache_hit: bool


class VideoMetadataResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    title: str
    channel_name: str | None = None
    thumbnail_url: str


class ApiError(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    retryable: bool = False


class ApiErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: ApiError
