from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.analytics_repository import AnalyticsRepository
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database
from backend.app.repositories.summary_repository import SummaryRepository
from backend.app.repositories.translation_repository import TranslationRepository
from backend.app.services.analytics_service import AnalyticsRecorder, CostRates
from backend.app.services.generation_provider import AnthropicGenerationProvider
from backend.app.services.rate_limiter import (
    CallerRateLimiter,
    RateLimitScope,
    SlidingWindowRateLimiter,
)
from backend.app.services.summary_cache import JOIN_GRACE_SECONDS, SummaryCache
from backend.app.services.summary_service import SummaryService
from backend.app.services.transcript_service import (
    CaptionsTranscriptSource,
    SupadataSpeechToTextSource,
    TranscriptFallbackOrchestrator,
)
from backend.app.services.translation_service import TranslationCache, TranslationService
from backend.app.services.video_metadata_service import VideoMetadataService
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_summary_repository() -> SummaryRepository:
    return SummaryRepository(
        get_database(),
        ttl_seconds=get_settings().summary_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_analytics_repository() -> AnalyticsRepository:
    return AnalyticsRepository(get_database())


@lru_cache(maxsize=1)
def get_api_key_repository() -> ApiKeyRepository:
    return ApiKeyRepository(get_database())


@lru_cache(maxsize=1)
def get_generation_provider() -> AnthropicGenerationProvider:
    settings = get_settings()
    return AnthropicGenerationProvider(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_output_tokens=settings.anthropic_max_output_tokens,
        transcript_max_chars=settings.transcript_max_chars,
    )


@lru_cache(maxsize=1)
def get_video_metadata_service() -> VideoMetadataService:
    return VideoMetadataService(timeout_seconds=get_settings().metadata_http_timeout_seconds)


@lru_cache(maxsize=1)
def get_transcript_orchestrator() -> TranscriptFallbackOrchestrator:
    settings = get_settings()
    fallback: SupadataSpeechToTextSource | None = None
    if settings.speech_to_text_enabled and settings.supadata_api_key is not None:
        fallback = SupadataSpeechToTextSource(
            api_key=settings.supadata_api_key,
            base_url=settings.supadata_base_url,
            mode=settings.supadata_transcript_mode,
            http_timeout_seconds=settings.supadata_http_timeout_seconds,
            poll_interval_seconds=settings.supadata_poll_interval_seconds,
            poll_max_attempts=settings.supadata_poll_max_attempts,
        )
    return TranscriptFallbackOrchestrator(
        primary=CaptionsTranscriptSource(languages=settings.captions_languages),
        fallback=fallback,
    )


@lru_cache(maxsize=1)
def get_summary_cache() -> SummaryCache:
    settings = get_settings()
    return SummaryCache(
        repository=get_summary_repository(),
        generator=get_generation_provider(),
        telemetry=get_telemetry(),
        language=settings.canonical_language,
        max_workers=settings.generation_max_workers,
        join_timeout_seconds=settings.generation_timeout_ceiling_seconds + JOIN_GRACE_SECONDS,
    )


@lru_cache(maxsize=1)
def get_translation_cache() -> TranslationCache:
    settings = get_settings()
    return TranslationCache(
        repository=TranslationRepository(get_database()),
        translator=get_generation_provider(),
        max_workers=settings.generation_max_workers,
        floor_seconds=settings.generation_timeout_floor_seconds,
        ceiling_seconds=settings.generation_timeout_ceiling_seconds,
    )


@lru_cache(maxsize=1)
def get_summary_service() -> SummaryService:
    settings = get_settings()
    return SummaryService(
        cache=get_summary_cache(),
        transcripts=get_transcript_orchestrator(),
        metadata=get_video_metadata_service(),
        recorder=AnalyticsRecorder(
            repository=get_analytics_repository(),
            telemetry=get_telemetry(),
        ),
        cost_rates=CostRates(
            input_usd_per_million=settings.cost_input_usd_per_million,
            output_usd_per_million=settings.cost_output_usd_per_million,
            cache_read_multiplier=settings.cost_cache_read_multiplier,
            cache_creation_multiplier=settings.cost_cache_creation_multiplier,
        ),
        timeout_floor_seconds=settings.generation_timeout_floor_seconds,
        timeout_ceiling_seconds=settings.generation_timeout_ceiling_seconds,
    )


@lru_cache(maxsize=1)
def get_translation_service() -> TranslationService:
    return TranslationService(
        summary_repository=get_summary_repository(),
        cache=get_translation_cache(),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_rate_limiter() -> CallerRateLimiter:
    settings = get_settings()
    return CallerRateLimiter(
        {
            RateLimitScope.GENERATION: SlidingWindowRateLimiter(
                max_requests=settings.generation_rate_limit_max_requests,
                window_seconds=settings.generation_rate_limit_window_seconds,
            ),
            RateLimitScope.TRANSLATION: SlidingWindowRateLimiter(
                max_requests=settings.translation_rate_limit_max_requests,
                window_seconds=settings.translation_rate_limit_window_seconds,
            ),
        }
    )


def shutdown_workers() -> None:
    if get_summary_cache.cache_info().currsize > 0:
        get_summary_cache().shutdown()
    if get_translation_cache.cache_info().currsize > 0:
        get_translation_cache().shutdown()


def reset_cached_dependencies() -> None:
    shutdown_workers()
    get_rate_limiter.cache_clear()
    get_translation_service.cache_clear()
    get_summary_service.cache_clear()
    get_translation_cache.cache_clear()
    get_summary_cache.cache_clear()
    get_transcript_orchestrator.cache_clear()
    get_video_metadata_service.cache_clear()
    get_generation_provider.cache_clear()
    get_api_key_repository.cache_clear()
    get_analytics_repository.cache_clear()
    get_summary_repository.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
