from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from backend.app.models.summary_contracts import LANGUAGE_CODE_PATTERN, SummaryContent
from backend.app.repositories.summary_repository import CachedSummary, SummaryRepository
from backend.app.repositories.translation_repository import CachedTranslation, TranslationRepository
from backend.app.services.coalescing import InFlightRegistry, wait_for_result
from backend.app.services.error_taxonomy import (
    ErrorType,
    SummaryNotFoundError,
    SummaryPipelineError,
    classify_exception,
)
from backend.app.services.generation_provider import SummaryTranslator
from backend.app.services.timeout_scaler import timeout_for
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("video_digest.translation")

JOIN_GRACE_SECONDS = 5.0

TranslationKey = tuple[str, str]


@dataclass(frozen=True)
class TranslationOutcome:
    translation: CachedTranslation
    cache_hit: bool


class TranslationCache:
    """Coalescing cache keyed by (summary id, language code); entries are write-once."""

    def __init__(
        self,
        *,
        repository: TranslationRepository,
        translator: SummaryTranslator,
        max_workers: int = 8,
        floor_seconds: float = 60.0,
        ceiling_seconds: float = 300.0,
    ) -> None:
        self._repository = repository
        self._translator = translator
        self._floor_seconds = floor_seconds
        self._ceiling_seconds = ceiling_seconds
        self._in_flight: InFlightRegistry[CachedTranslation] = InFlightRegistry()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="summary-translation",
        )

    def lookup(self, key: TranslationKey) -> CachedTranslation | None:
        summary_id, language_code = key
        return self._repository.get(summary_id=summary_id, language_code=language_code)

    def put(self, key: TranslationKey, *, source_language: str, content: SummaryContent) -> CachedTranslation:
        summary_id, language_code = key
        return self._repository.insert(
            summary_id=summary_id,
            language_code=language_code,
            source_language=source_language,
            content=content,
        )

    def compare_and_swap_in_flight(
        self,
        key: TranslationKey,
        start: Callable[[], Future[CachedTranslation]],
    ) -> tuple[Future[CachedTranslation], bool]:
        return self._in_flight.compare_and_swap_in_flight(key, start)

    def get_or_translate(self, summary: CachedSummary, language_code: str) -> TranslationOutcome:
        key = (summary.summary_id, language_code)
        cached = self.lookup(key)
        if cached is not None:
            return TranslationOutcome(translation=cached, cache_hit=True)

        deadline_seconds = timeout_for(
            len(summary.content.model_dump_json()),
            floor_seconds=self._floor_seconds,
            ceiling_seconds=self._ceiling_seconds,
        )
        expires_at = time.monotonic() + deadline_seconds
        future, started = self.compare_and_swap_in_flight(
            key,
            lambda: self._executor.submit(self._translate, summary, language_code, expires_at),
        )
        translation = wait_for_result(
            future,
            timeout_seconds=deadline_seconds + JOIN_GRACE_SECONDS,
            what="Summary translation",
        )
        return TranslationOutcome(translation=translation, cache_hit=not started)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _translate(
        self,
        summary: CachedSummary,
        language_code: str,
        expires_at: float,
    ) -> CachedTranslation:
        key = (summary.summary_id, language_code)
        existing = self.lookup(key)
        if existing is not None:
            return existing

        # Time spent queued for a worker counts against the deadline.
        deadline_seconds = expires_at - time.monotonic()
        if deadline_seconds <= 0:
            raise SummaryPipelineError(
                f"Summary translation deadline passed {-deadline_seconds:.1f}s before a worker was free",
                ErrorType.NETWORK_TIMEOUT,
            )

        result = self._translator.translate(
            content=summary.content,
            source_language=summary.language,
            target_language=language_code,
            deadline_seconds=deadline_seconds,
        )
        # The category is a filter key and stays in the canonical language.
        content = result.content.model_copy(update={"category": summary.content.category})
        return self.put(key, source_language=summary.language, content=content)


class TranslationService:
    def __init__(
        self,
        *,
        summary_repository: SummaryRepository,
        cache: TranslationCache,
        telemetry: TelemetryClient,
    ) -> None:
        self._summary_repository = summary_repository
        self._cache = cache
        self._telemetry = telemetry

    def translate(self, summary_id: str, language_code: str) -> TranslationOutcome:
        normalized_language = language_code.strip().lower()
        if LANGUAGE_CODE_PATTERN.fullmatch(normalized_language) is None:
            raise SummaryPipelineError(
                f"Unsupported language code: {language_code[:16]!r}",
                ErrorType.UNSUPPORTED_LANGUAGE,
            )

        summary = self._summary_repository.get_by_id(summary_id)
        if summary is None:
            raise SummaryNotFoundError(f"Summary not found: {summary_id}")

        if normalized_language == summary.language:
            return TranslationOutcome(
                translation=CachedTranslation(
                    summary_id=summary.summary_id,
                    language_code=summary.language,
                    source_language=summary.language,
                    content=summary.content,
                    created_at=summary.created_at,
                ),
                cache_hit=True,
            )

        started_at = time.monotonic()
        try:
            outcome = self._cache.get_or_translate(summary, normalized_language)
        except SummaryPipelineError as exc:
            self._emit_error(summary_id, normalized_language, exc.error_type, started_at)
            raise
        except Exception as exc:
            error_type = classify_exception(exc)
            self._emit_error(summary_id, normalized_language, error_type, started_at)
            LOGGER.exception(
                "summary translation failed summary_id=%s language=%s",
                summary_id,
                normalized_language,
            )
            raise SummaryPipelineError(
                f"Summary translation failed: {type(exc).__name__}: {exc}",
                error_type,
            ) from exc

        self._telemetry.emit(
            "summary.translate.finish",
            summary_id=summary_id,
            language=normalized_language,
            cache_hit=outcome.cache_hit,
            duration_ms=int((time.monotonic() - started_at) * 1000),
        )
        return outcome

    def _emit_error(
        self,
        summary_id: str,
        language: str,
        error_type: ErrorType,
        started_at: float,
    ) -> None:
        self._telemetry.emit(
            "summary.translate.error",
            summary_id=summary_id,
            language=language,
            error_type=error_type.value,
            duration_ms=int((time.monotonic() - started_at) * 1000),
        )
