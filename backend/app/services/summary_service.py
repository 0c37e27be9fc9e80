from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from backend.app.models.summary_contracts import SummaryContent
from backend.app.repositories.analytics_repository import AnalyticsRecord
from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.summary_repository import CachedSummary
from backend.app.services.analytics_service import (
    AnalyticsRecorder,
    CostRates,
    compute_cost_micros,
    count_words,
)
from backend.app.services.error_taxonomy import SummaryPipelineError, classify_exception
from backend.app.services.generation_provider import TokenUsage
from backend.app.services.summary_cache import SummaryCache
from backend.app.services.timeout_scaler import timeout_for
from backend.app.services.transcript_service import (
    TranscriptFailure,
    TranscriptFallbackOrchestrator,
    TranscriptResult,
    invalid_video_id_failure,
    is_valid_video_id,
)
from backend.app.services.video_metadata_service import VideoMetadataService

LOGGER = logging.getLogger("video_digest.summaries")

_MAX_ERROR_MESSAGE_CHARS = 1_000


@dataclass(frozen=True)
class SummarizeOutcome:
    summary: CachedSummary
    cache_hit: bool


@dataclass
class _Attempt:
    """What is known about one summarize call so far, for its analytics record."""

    video_id: str
    user_id: str
    retry_count: int
    started_at: float
    requested_at: str = field(default_factory=utc_now_iso)
    transcript: TranscriptResult | None = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class SummaryService:
    """
    Summarize a video for one caller.

    validate -> cache hit -> join in-flight -> acquire transcript -> metadata ->
    deadline -> coalesced generate-or-retrieve. Every call, including rejected
    ids and failures, produces exactly one analytics record.
    """

    def __init__(
        self,
        *,
        cache: SummaryCache,
        transcripts: TranscriptFallbackOrchestrator,
        metadata: VideoMetadataService,
        recorder: AnalyticsRecorder,
        cost_rates: CostRates,
        timeout_floor_seconds: float = 60.0,
        timeout_ceiling_seconds: float = 300.0,
    ) -> None:
        self._cache = cache
        self._transcripts = transcripts
        self._metadata = metadata
        self._recorder = recorder
        self._cost_rates = cost_rates
        self._timeout_floor_seconds = timeout_floor_seconds
        self._timeout_ceiling_seconds = timeout_ceiling_seconds

    def summarize(self, *, video_id: str, user_id: str, retry_count: int = 0) -> SummarizeOutcome:
        attempt = _Attempt(
            video_id=video_id,
            user_id=user_id,
            retry_count=retry_count,
            started_at=time.monotonic(),
        )
        if not is_valid_video_id(video_id):
            failure = invalid_video_id_failure(video_id)
            error = SummaryPipelineError(failure.message, failure.error_type)
            self._record_failure(attempt, error)
            raise error

        try:
            outcome = self._summarize_valid(attempt)
        except SummaryPipelineError as exc:
            self._record_failure(attempt, exc)
            raise
        except Exception as exc:
            error = SummaryPipelineError(
                f"Summary request failed: {type(exc).__name__}: {exc}",
                classify_exception(exc),
            )
            LOGGER.exception("summary request failed video_id=%s", video_id)
            self._record_failure(attempt, error)
            raise error from exc
        return outcome

    def _summarize_valid(self, attempt: _Attempt) -> SummarizeOutcome:
        video_id = attempt.video_id
        hit = self._cache.record_hit(video_id)
        if hit is not None:
            self._record_success(attempt, hit, usage=TokenUsage.zero(), was_cache_hit=True)
            return SummarizeOutcome(summary=hit, cache_hit=True)

        joined = self._cache.join(video_id)
        if joined is not None:
            self._record_success(attempt, joined.summary, usage=joined.usage, was_cache_hit=True)
            return SummarizeOutcome(summary=joined.summary, cache_hit=True)

        transcript_outcome = self._transcripts.acquire_transcript(video_id)
        if isinstance(transcript_outcome, TranscriptFailure):
            raise SummaryPipelineError(transcript_outcome.message, transcript_outcome.error_type)
        attempt.transcript = transcript_outcome

        metadata = self._metadata.fetch_or_fallback(video_id)
        deadline_seconds = timeout_for(
            len(transcript_outcome.text),
            floor_seconds=self._timeout_floor_seconds,
            ceiling_seconds=self._timeout_ceiling_seconds,
        )
        LOGGER.info(
            "summary generation requested video_id=%s transcript_source=%s transcript_chars=%s deadline_seconds=%s",
            video_id,
            transcript_outcome.source,
            len(transcript_outcome.text),
            deadline_seconds,
        )
        cached = self._cache.get_or_generate(video_id, transcript_outcome, metadata, deadline_seconds)
        self._record_success(
            attempt,
            cached.summary,
            usage=cached.usage,
            was_cache_hit=cached.was_cache_hit,
        )
        return SummarizeOutcome(summary=cached.summary, cache_hit=cached.was_cache_hit)

    def _record_success(
        self,
        attempt: _Attempt,
        summary: CachedSummary,
        *,
        usage: TokenUsage,
        was_cache_hit: bool,
    ) -> None:
        self._recorder.record(
            AnalyticsRecord(
                video_id=attempt.video_id,
                user_id=attempt.user_id,
                status="success",
                processing_time_ms=attempt.elapsed_ms(),
                summary_id=summary.summary_id,
                video_duration_seconds=summary.video_duration_seconds,
                video_language=summary.transcript_language,
                token_usage_input=usage.input_tokens,
                token_usage_output=usage.output_tokens,
                token_cache_read=usage.cache_read_tokens,
                token_cache_creation=usage.cache_creation_tokens,
                estimated_cost_micros=compute_cost_micros(usage, self._cost_rates),
                output_word_count=count_words(summary_text(summary.content)),
                retry_count=attempt.retry_count,
                was_cache_hit=was_cache_hit,
                created_at=attempt.requested_at,
            )
        )

    def _record_failure(self, attempt: _Attempt, error: SummaryPipelineError) -> None:
        transcript = attempt.transcript
        self._recorder.record(
            AnalyticsRecord(
                video_id=attempt.video_id[:64],
                user_id=attempt.user_id,
                status="failed",
                processing_time_ms=attempt.elapsed_ms(),
                video_duration_seconds=transcript.duration_seconds if transcript else None,
                video_language=transcript.language_code if transcript else None,
                error_type=error.error_type.value,
                error_message=error.message[:_MAX_ERROR_MESSAGE_CHARS],
                retry_count=attempt.retry_count,
                created_at=attempt.requested_at,
            )
        )


def summary_text(content: SummaryContent) -> str:
    parts: list[str] = [content.quick_summary]
    for section in content.contextual_sections:
        parts.extend((section.title, section.content))
    for card in content.refresher_cards:
        parts.extend((card.title, card.explanation))
    parts.extend(insight.insight for insight in content.actionable_insights)
    return "\n".join(parts)
