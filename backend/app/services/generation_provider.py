from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

import anthropic
from pydantic import BaseModel, ValidationError

from backend.app.models.summary_contracts import (
    SUMMARY_CATEGORIES,
    SummaryContent,
    TranslatableText,
)
from backend.app.services.error_taxonomy import ErrorType, SummaryPipelineError
from backend.app.services.video_metadata_service import VideoMetadata

LOGGER = logging.getLogger("video_digest.generation")

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)

SUMMARY_SYSTEM_PROMPT = f"""You turn video transcripts into study material.
Respond with a single JSON object and nothing else, using exactly these keys:
{{
  "quickSummary": "3-5 sentence overview",
  "contextualSections": [
    {{"title": "...", "content": "...", "timestampStart": 0, "timestampEnd": 95}}
  ],
  "refresherCards": [{{"id": "rc1", "title": "...", "explanation": "..."}}],
  "actionableInsights": [{{"category": "strategy", "insight": "..."}}],
  "affiliateLinks": [
    {{"title": "...", "author": "...", "url": "...", "type": "book",
      "category": "by_speaker"}}
  ],
  "category": "Technology & AI"
}}
Rules:
- Timestamps are seconds from the start of the video, taken from the [m:ss] markers.
- Sections are ordered and cover the whole video.
- Link type is one of: book, course, tool, website, podcast.
- Link category is by_speaker when the speaker mentions it, otherwise recommended.
- category is exactly one of: {", ".join(SUMMARY_CATEGORIES)}.
"""

TRANSLATION_SYSTEM_PROMPT = """You translate study material between languages.
You receive a JSON object and respond with a single JSON object with exactly the
same keys and the same number of list items, every string translated into the
requested language. Keep names of people, books and products unchanged.
Respond with JSON only.
"""


@dataclass(frozen=True)
class TokenUsage:
    """Token counters; `input_tokens` already includes both cache subtotals."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def zero(cls) -> TokenUsage:
        return cls()


@dataclass(frozen=True)
class GenerationResult(Generic[T]):
    content: T
    usage: TokenUsage


class SummaryGenerator(Protocol):
    def summarize(
        self,
        *,
        transcript: str,
        metadata: VideoMetadata,
        language: str,
        deadline_seconds: float,
    ) -> GenerationResult[SummaryContent]:
        ...


class SummaryTranslator(Protocol):
    def translate(
        self,
        *,
        content: SummaryContent,
        source_language: str,
        target_language: str,
        deadline_seconds: float,
    ) -> GenerationResult[SummaryContent]:
        ...


class AnthropicGenerationProvider:
    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        max_output_tokens: int = 4096,
        transcript_max_chars: int = 50_000,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._max_output_tokens = max_output_tokens
        self._transcript_max_chars = transcript_max_chars
        self._client_factory = client_factory
        self._client: Any | None = None

    def summarize(
        self,
        *,
        transcript: str,
        metadata: VideoMetadata,
        language: str,
        deadline_seconds: float,
    ) -> GenerationResult[SummaryContent]:
        truncated = transcript[: self._transcript_max_chars]
        channel_line = f"Channel: {metadata.channel_name}\n" if metadata.channel_name else ""
        user_message = (
            f"Title: {metadata.title}\n"
            f"{channel_line}"
            f"Write the summary in language: {language}\n\n"
            f"Transcript:\n{truncated}"
        )
        text, usage = self._complete(
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            user_message=user_message,
            deadline_seconds=deadline_seconds,
        )
        return GenerationResult(content=parse_model_json(text, SummaryContent), usage=usage)

    def translate(
        self,
        *,
        content: SummaryContent,
        source_language: str,
        target_language: str,
        deadline_seconds: float,
    ) -> GenerationResult[SummaryContent]:
        source_text = content.translatable_text().model_dump_json(by_alias=True)
        user_message = (
            f"Translate from {source_language} to {target_language}.\n\n{source_text}"
        )
        text, usage = self._complete(
            system_prompt=TRANSLATION_SYSTEM_PROMPT,
            user_message=user_message,
            deadline_seconds=deadline_seconds,
        )
        translated = parse_model_json(text, TranslatableText)
        try:
            merged = content.with_translated_text(translated)
        except ValueError as exc:
            raise SummaryPipelineError(str(exc), ErrorType.PARSE_ERROR) from exc
        return GenerationResult(content=merged, usage=usage)

    def _complete(
        self,
        *,
        system_prompt: str,
        user_message: str,
        deadline_seconds: float,
    ) -> tuple[str, TokenUsage]:
        client = self._get_client()
        try:
            message = client.messages.create(
                model=self._model,
                max_tokens=self._max_output_tokens,
                system=[
                    {
                        "type": "text",
                        "text": system_prompt,
                        "cache_control": {"type": "ephemeral"},
                    }
                ],
                messages=[{"role": "user", "content": user_message}],
                timeout=deadline_seconds,
            )
        except anthropic.APITimeoutError as exc:
            raise SummaryPipelineError(
                f"Generation timed out after {deadline_seconds:.0f}s",
                ErrorType.NETWORK_TIMEOUT,
            ) from exc
        except anthropic.RateLimitError as exc:
            raise SummaryPipelineError(
                f"Provider rate limit reached: {exc}",
                ErrorType.RATE_LIMITED,
            ) from exc
        except anthropic.APIConnectionError as exc:
            raise SummaryPipelineError(
                f"Provider connection failed: {exc}",
                ErrorType.NETWORK_TIMEOUT,
            ) from exc
        except anthropic.APIError as exc:
            raise SummaryPipelineError(f"Provider error: {exc}") from exc

        usage = _normalize_usage(getattr(message, "usage", None))
        stop_reason = getattr(message, "stop_reason", None)
        LOGGER.info(
            "provider call finished model=%s stop_reason=%s input_tokens=%s output_tokens=%s",
            self._model,
            stop_reason,
            usage.input_tokens,
            usage.output_tokens,
        )
        if stop_reason == "max_tokens":
            raise SummaryPipelineError(
                "Provider response was truncated at the output token limit",
                ErrorType.TOKEN_LIMIT_EXCEEDED,
            )
        if stop_reason == "refusal":
            raise SummaryPipelineError(
                "Provider declined the request under its content policy",
                ErrorType.CONTENT_POLICY,
            )

        text = "".join(
            str(getattr(block, "text", ""))
            for block in getattr(message, "content", [])
            if getattr(block, "type", None) == "text"
        )
        return text, usage

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if self._client_factory is not None:
            self._client = self._client_factory()
        else:
            if self._api_key is None:
                raise SummaryPipelineError(
                    "Generation provider is not configured", ErrorType.UNKNOWN
                )
            self._client = anthropic.Anthropic(api_key=self._api_key, max_retries=0)
        return self._client


def parse_model_json(text: str, model_type: type[ModelT]) -> ModelT:
    """Validate the first `{...}` block of a provider response; failures are `parse_error`."""
    match = _JSON_OBJECT_PATTERN.search(text)
    if match is None:
        raise SummaryPipelineError(
            "Failed to parse provider response: no JSON object found",
            ErrorType.PARSE_ERROR,
        )
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise SummaryPipelineError(
            f"Failed to parse provider response: invalid JSON ({exc.msg})",
            ErrorType.PARSE_ERROR,
        ) from exc
    try:
        return model_type.model_validate(payload)
    except ValidationError as exc:
        raise SummaryPipelineError(
            f"Failed to parse provider response: {exc.error_count()} validation error(s)",
            ErrorType.PARSE_ERROR,
        ) from exc


def _normalize_usage(raw_usage: Any) -> TokenUsage:
    if raw_usage is None:
        return TokenUsage.zero()
    uncached_input = _as_count(getattr(raw_usage, "input_tokens", 0))
    cache_read = _as_count(getattr(raw_usage, "cache_read_input_tokens", 0))
    cache_creation = _as_count(getattr(raw_usage, "cache_creation_input_tokens", 0))
    return TokenUsage(
        input_tokens=uncached_input + cache_read + cache_creation,
        output_tokens=_as_count(getattr(raw_usage, "output_tokens", 0)),
        cache_read_tokens=cache_read,
        cache_creation_tokens=cache_creation,
    )


def _as_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    return 0
