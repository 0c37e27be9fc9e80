from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.errors import ApiProblem
from backend.app.dependencies import (
    get_analytics_repository,
    get_api_key_repository,
    get_rate_limiter,
    get_summary_service,
    get_translation_service,
    get_video_metadata_service,
)
from backend.app.models.analytics_contracts import (
    AnalyticsCostsResponse,
    AnalyticsErrorsResponse,
    AnalyticsOverviewResponse,
    DailyCostResponse,
    DurationCostBucketResponse,
    ErrorTypeCountResponse,
    FailedSessionResponse,
)
from backend.app.models.summary_contracts import (
    LANGUAGE_CODE_PATTERN,
    SummarizeRequest,
    SummaryResponse,
    TranslateRequest,
    TranslationResponse,
    VideoMetadataResponse,
)
from backend.app.repositories.analytics_repository import AnalyticsRepository
from backend.app.repositories.api_key_repository import ApiKeyRepository, CallerIdentity
from backend.app.services.error_taxonomy import ErrorType, SummaryPipelineError
from backend.app.services.rate_limiter import CallerRateLimiter, RateLimitScope
from backend.app.services.summary_service import SummaryService
from backend.app.services.transcript_service import invalid_video_id_failure, is_valid_video_id
from backend.app.services.translation_service import TranslationService
from backend.app.services.video_metadata_service import VideoMetadataError, VideoMetadataService

router = APIRouter()


def get_caller(
    repository: Annotated[ApiKeyRepository, Depends(get_api_key_repository)],
    authorization: Annotated[str | None, Header()] = None,
) -> CallerIdentity:
    token = _parse_bearer_token(authorization)
    if token is None:
        raise ApiProblem(
            status_code=401,
            code="unauthorized",
            message="Missing or malformed bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    key_id, _, secret = token.partition(".")
    identity = repository.resolve_active_token(key_id=key_id, secret=secret) if secret else None
    if identity is None:
        raise ApiProblem(
            status_code=401,
            code="unauthorized",
            message="Invalid or revoked API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    repository.mark_used(identity.key_id)
    return identity


def require_admin(caller: Annotated[CallerIdentity, Depends(get_caller)]) -> CallerIdentity:
    if not caller.is_admin:
        raise ApiProblem(
            status_code=403,
            code="forbidden",
            message="Admin API key required.",
        )
    return caller


def _take_budget(
    scope: RateLimitScope,
    caller: CallerIdentity,
    limiter: CallerRateLimiter,
    response: Response,
) -> CallerIdentity:
    decision = limiter.take(scope, caller.user_id)
    if not decision.allowed:
        raise ApiProblem(
            status_code=429,
            code="rate_limited",
            message=f"Too many {scope.value} requests; retry in {decision.retry_after_seconds}s.",
            retryable=True,
            headers=decision.headers(),
        )
    response.headers.update(decision.headers())
    return caller


def generation_budget(
    caller: Annotated[CallerIdentity, Depends(get_caller)],
    limiter: Annotated[CallerRateLimiter, Depends(get_rate_limiter)],
    response: Response,
) -> CallerIdentity:
    return _take_budget(RateLimitScope.GENERATION, caller, limiter, response)


def translation_budget(
    caller: Annotated[CallerIdentity, Depends(get_caller)],
    limiter: Annotated[CallerRateLimiter, Depends(get_rate_limiter)],
    response: Response,
) -> CallerIdentity:
    return _take_budget(RateLimitScope.TRANSLATION, caller, limiter, response)


@router.post(
    "/v1/summaries",
    response_model=SummaryResponse,
    response_model_by_alias=False,
    tags=["summaries"],
    operation_id="create_summary",
)
def create_summary(
    request: SummarizeRequest,
    caller: Annotated[CallerIdentity, Depends(generation_budget)],
    summaries: Annotated[SummaryService, Depends(get_summary_service)],
    translations: Annotated[TranslationService, Depends(get_translation_service)],
) -> SummaryResponse:
    if request.language is not None and LANGUAGE_CODE_PATTERN.fullmatch(request.language) is None:
        raise SummaryPipelineError(
            f"Unsupported language code: {request.language!r}",
            ErrorType.UNSUPPORTED_LANGUAGE,
        )

    context_tokens = bind_contextvars(video_id=request.video_id[:64], caller_user_id=caller.user_id)
    try:
        outcome = summaries.summarize(
            video_id=request.video_id,
            user_id=caller.user_id,
            retry_count=request.retry_count,
        )
        summary = outcome.summary
        content = summary.content
        language = summary.language
        if request.language is not None and request.language != summary.language:
            translated = translations.translate(summary.summary_id, request.language)
            content = translated.translation.content
            language = translated.translation.language_code
    finally:
        reset_contextvars(**context_tokens)

    return SummaryResponse(
        id=summary.summary_id,
        video_id=summary.video_id,
        video_title=summary.video_title,
        channel_name=summary.channel_name,
        thumbnail_url=summary.thumbnail_url,
        language=language,
        original_language=summary.transcript_language,
        content=content,
        request_count=summary.request_count,
        created_at=summary.created_at,
        cache_hit=outcome.cache_hit,
    )


@router.post(
    "/v1/summaries/{summary_id}/translations",
    response_model=TranslationResponse,
    response_model_by_alias=False,
    tags=["summaries"],
    operation_id="translate_summary",
)
def translate_summary(
    summary_id: str,
    request: TranslateRequest,
    caller: Annotated[CallerIdentity, Depends(translation_budget)],
    translations: Annotated[TranslationService, Depends(get_translation_service)],
) -> TranslationResponse:
    context_tokens = bind_contextvars(summary_id=summary_id, caller_user_id=caller.user_id)
    try:
        outcome = translations.translate(summary_id, request.language)
    finally:
        reset_contextvars(**context_tokens)

    translation = outcome.translation
    return TranslationResponse(
        summary_id=translation.summary_id,
        language=translation.language_code,
        source_language=translation.source_language,
        content=translation.content,
        created_at=translation.created_at,
        cache_hit=outcome.cache_hit,
    )


@router.get(
    "/v1/videos/{video_id}",
    response_model=VideoMetadataResponse,
    tags=["videos"],
    operation_id="get_video_metadata",
)
def get_video_metadata(
    video_id: str,
    _: Annotated[CallerIdentity, Depends(get_caller)],
    metadata_service: Annotated[VideoMetadataService, Depends(get_video_metadata_service)],
) -> VideoMetadataResponse:
    if not is_valid_video_id(video_id):
        failure = invalid_video_id_failure(video_id)
        raise SummaryPipelineError(failure.message, failure.error_type)
    try:
        metadata = metadata_service.fetch(video_id)
    except VideoMetadataError as exc:
        raise SummaryPipelineError(
            f"[VIDEO_UNAVAILABLE] {exc}",
            ErrorType.VIDEO_UNAVAILABLE,
        ) from exc

    return VideoMetadataResponse(
        video_id=metadata.video_id,
        title=metadata.title,
        channel_name=metadata.channel_name,
        thumbnail_url=metadata.thumbnail_url,
    )


@router.get(
    "/admin/analytics/overview",
    response_model=AnalyticsOverviewResponse,
    tags=["admin"],
    operation_id="analytics_overview",
)
def analytics_overview(
    _: Annotated[CallerIdentity, Depends(require_admin)],
    repository: Annotated[AnalyticsRepository, Depends(get_analytics_repository)],
    since: Annotated[datetime | None, Query(alias="from")] = None,
    until: Annotated[datetime | None, Query(alias="to")] = None,
) -> AnalyticsOverviewResponse:
    overview = repository.overview(since=_iso_bound(since), until=_iso_bound(until))
    return AnalyticsOverviewResponse(
        total_requests=overview.total_requests,
        success_count=overview.success_count,
        failure_count=overview.failure_count,
        cache_hit_count=overview.cache_hit_count,
        success_rate=overview.success_rate,
        total_cost_micros=overview.total_cost_micros,
        avg_processing_ms=overview.avg_processing_ms,
        active_users=overview.active_users,
    )


@router.get(
    "/admin/analytics/errors",
    response_model=AnalyticsErrorsResponse,
    tags=["admin"],
    operation_id="analytics_errors",
)
def analytics_errors(
    _: Annotated[CallerIdentity, Depends(require_admin)],
    repository: Annotated[AnalyticsRepository, Depends(get_analytics_repository)],
    since: Annotated[datetime | None, Query(alias="from")] = None,
    until: Annotated[datetime | None, Query(alias="to")] = None,
) -> AnalyticsErrorsResponse:
    counts, sessions = repository.error_taxonomy(since=_iso_bound(since), until=_iso_bound(until))
    return AnalyticsErrorsResponse(
        taxonomy=[
            ErrorTypeCountResponse(error_type=item.error_type, count=item.count)
            for item in counts
        ],
        recent_failures=[
            FailedSessionResponse(
                id=session.record_id,
                video_id=session.video_id,
                user_id=session.user_id,
                error_type=session.error_type,
                error_message=session.error_message,
                processing_time_ms=session.processing_time_ms,
                created_at=session.created_at,
            )
            for session in sessions
        ],
    )


@router.get(
    "/admin/analytics/costs",
    response_model=AnalyticsCostsResponse,
    tags=["admin"],
    operation_id="analytics_costs",
)
def analytics_costs(
    _: Annotated[CallerIdentity, Depends(require_admin)],
    repository: Annotated[AnalyticsRepository, Depends(get_analytics_repository)],
    since: Annotated[datetime | None, Query(alias="from")] = None,
    until: Annotated[datetime | None, Query(alias="to")] = None,
) -> AnalyticsCostsResponse:
    stats = repository.cost_stats(since=_iso_bound(since), until=_iso_bound(until))
    return AnalyticsCostsResponse(
        total_cost_micros=stats.total_cost_micros,
        avg_cost_micros=stats.avg_cost_micros,
        total_generations=stats.total_generations,
        by_duration=[
            DurationCostBucketResponse(
                bucket=bucket.bucket,
                count=bucket.count,
                total_cost_micros=bucket.total_cost_micros,
                avg_cost_micros=bucket.avg_cost_micros,
            )
            for bucket in stats.by_duration
        ],
        daily=[DailyCostResponse(day=item.day, cost_micros=item.cost_micros) for item in stats.daily],
    )


def _parse_bearer_token(authorization: str | None) -> str | None:
    if authorization is None:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    if "." not in token:
        return None
    return token


def _iso_bound(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC).isoformat()
    return value.astimezone(UTC).isoformat()
