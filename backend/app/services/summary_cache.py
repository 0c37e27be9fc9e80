from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from backend.app.repositories.summary_repository import CachedSummary, NewSummary, SummaryRepository
from backend.app.services.coalescing import InFlightRegistry, wait_for_result
from backend.app.services.error_taxonomy import ErrorType, SummaryPipelineError, classify_exception
from backend.app.services.generation_provider import SummaryGenerator, TokenUsage
from backend.app.services.transcript_service import TranscriptResult
from backend.app.services.video_metadata_service import VideoMetadata
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("video_digest.summary_cache")

# Extra wait on top of the provider deadline before a waiter gives up.
JOIN_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class _Generation:
    summary: CachedSummary
    usage: TokenUsage
    reused: bool


@dataclass(frozen=True)
class CacheOutcome:
    summary: CachedSummary
    usage: TokenUsage
    was_cache_hit: bool


class SummaryCache:
    """
    Coalescing generate-or-retrieve cache for summaries, keyed by video id.

    Per key the state moves Absent -> InFlight -> {Cached, Absent}. The durable
    half lives in `SummaryRepository`; the in-flight half is an `InFlightRegistry`
    whose futures run on this cache's own worker pool, so a generation outlives
    the request that started it and can be joined by later requests.
    """

    def __init__(
        self,
        *,
        repository: SummaryRepository,
        generator: SummaryGenerator,
        telemetry: TelemetryClient,
        language: str,
        max_workers: int = 8,
        join_timeout_seconds: float = 300.0,
    ) -> None:
        self._repository = repository
        self._generator = generator
        self._telemetry = telemetry
        self._language = language
        self._join_timeout_seconds = join_timeout_seconds
        self._in_flight: InFlightRegistry[_Generation] = InFlightRegistry()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="summary-generation",
        )

    @property
    def language(self) -> str:
        return self._language

    def lookup(self, video_id: str) -> CachedSummary | None:
        return self._repository.get_by_video_id(video_id)

    def record_hit(self, video_id: str) -> CachedSummary | None:
        summary = self._repository.record_hit(video_id)
        if summary is not None:
            self._telemetry.emit(
                "summary.cache.hit",
                video_id=video_id,
                request_count=summary.request_count,
            )
        return summary

    def put(self, summary: NewSummary) -> CachedSummary:
        return self._repository.upsert(summary)

    def compare_and_swap_in_flight(
        self,
        video_id: str,
        start: Callable[[], Future[_Generation]],
    ) -> tuple[Future[_Generation], bool]:
        return self._in_flight.compare_and_swap_in_flight(video_id, start)

    def is_in_flight(self, video_id: str) -> bool:
        return self._in_flight.is_in_flight(video_id)

    def waiter_count(self, video_id: str) -> int:
        return self._in_flight.waiter_count(video_id)

    def join(self, video_id: str) -> CacheOutcome | None:
        """Wait for an in-flight generation of `video_id`, or return None when there is none."""
        future = self._in_flight.join(video_id)
        if future is None:
            return None
        self._telemetry.emit(
            "summary.cache.join",
            video_id=video_id,
            waiters=self.waiter_count(video_id),
        )
        generation = self._wait(future, timeout_seconds=self._join_timeout_seconds)
        return self._joined_outcome(video_id, generation)

    def get_or_generate(
        self,
        video_id: str,
        transcript: TranscriptResult,
        metadata: VideoMetadata,
        deadline_seconds: float,
    ) -> CacheOutcome:
        expires_at = time.monotonic() + deadline_seconds
        future, started = self.compare_and_swap_in_flight(
            video_id,
            lambda: self._executor.submit(
                self._generate,
                video_id,
                transcript,
                metadata,
                expires_at,
            ),
        )
        if not started:
            self._telemetry.emit(
                "summary.cache.join",
                video_id=video_id,
                waiters=self.waiter_count(video_id),
            )

        generation = self._wait(future, timeout_seconds=deadline_seconds + JOIN_GRACE_SECONDS)
        if started and not generation.reused:
            return CacheOutcome(summary=generation.summary, usage=generation.usage, was_cache_hit=False)
        return self._joined_outcome(video_id, generation)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _joined_outcome(self, video_id: str, generation: _Generation) -> CacheOutcome:
        summary = self._repository.record_hit(video_id) or generation.summary
        return CacheOutcome(summary=summary, usage=TokenUsage.zero(), was_cache_hit=True)

    def _wait(self, future: Future[_Generation], *, timeout_seconds: float) -> _Generation:
        return wait_for_result(future, timeout_seconds=timeout_seconds, what="Summary generation")

    def _generate(
        self,
        video_id: str,
        transcript: TranscriptResult,
        metadata: VideoMetadata,
        expires_at: float,
    ) -> _Generation:
        # Another worker may have stored the row between the caller's lookup and now.
        existing = self._repository.get_by_video_id(video_id)
        if existing is not None:
            return _Generation(summary=existing, usage=TokenUsage.zero(), reused=True)

        started_at = time.monotonic()
        # Time spent queued for a worker counts against the deadline.
        deadline_seconds = expires_at - started_at
        if deadline_seconds <= 0:
            self._emit_generate_error(video_id, ErrorType.NETWORK_TIMEOUT, started_at)
            raise SummaryPipelineError(
                f"Summary generation deadline passed {-deadline_seconds:.1f}s before a worker was free",
                ErrorType.NETWORK_TIMEOUT,
            )
        self._telemetry.emit(
            "summary.generate.start",
            video_id=video_id,
            input_chars=len(transcript.text),
            deadline_seconds=round(deadline_seconds, 3),
        )
        try:
            result = self._generator.summarize(
                transcript=transcript.text,
                metadata=metadata,
                language=self._language,
                deadline_seconds=deadline_seconds,
            )
            stored = self.put(
                NewSummary(
                    video_id=video_id,
                    video_title=metadata.title,
                    channel_name=metadata.channel_name,
                    thumbnail_url=metadata.thumbnail_url,
                    language=self._language,
                    transcript_language=transcript.language_code,
                    video_duration_seconds=transcript.duration_seconds,
                    content=result.content,
                )
            )
        except SummaryPipelineError as exc:
            self._emit_generate_error(video_id, exc.error_type, started_at)
            raise
        except Exception as exc:
            error_type = classify_exception(exc)
            self._emit_generate_error(video_id, error_type, started_at)
            LOGGER.exception("summary generation failed video_id=%s", video_id)
            raise SummaryPipelineError(
                f"Summary generation failed: {type(exc).__name__}: {exc}",
                error_type,
            ) from exc

        self._telemetry.emit(
            "summary.generate.finish",
            video_id=video_id,
            summary_id=stored.summary_id,
            duration_ms=int((time.monotonic() - started_at) * 1000),
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )
        return _Generation(summary=stored, usage=result.usage, reused=False)

    def _emit_generate_error(self, video_id: str, error_type: ErrorType, started_at: float) -> None:
        self._telemetry.emit(
            "summary.generate.error",
            video_id=video_id,
            error_type=error_type.value,
            duration_ms=int((time.monotonic() - started_at) * 1000),
        )
