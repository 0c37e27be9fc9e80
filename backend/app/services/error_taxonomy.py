"""Closed failure taxonomy shared by the pipeline, analytics and the HTTP layer."""

from __future__ import annotations

from enum import StrEnum


class ErrorType(StrEnum):
    VIDEO_UNAVAILABLE = "video_unavailable"
    NO_CAPTIONS = "no_captions"
    RATE_LIMITED = "rate_limited"
    NETWORK_TIMEOUT = "network_timeout"
    CONTENT_POLICY = "content_policy"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    PARSE_ERROR = "parse_error"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    INVALID_VIDEO_ID = "invalid_video_id"
    UNKNOWN = "unknown"


# Ordered: the first matching rule wins.
_CLASSIFICATION_RULES: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.INVALID_VIDEO_ID, ("[invalid_video_id]", "invalid video id")),
    (ErrorType.VIDEO_UNAVAILABLE, ("[video_unavailable]", "video is unavailable")),
    (ErrorType.NO_CAPTIONS, ("[no_captions]", "transcript")),
    (ErrorType.RATE_LIMITED, ("[rate_limited]", "rate limit", "too many requests", "status 429")),
    (
        ErrorType.NETWORK_TIMEOUT,
        ("timeout", "timed out", "etimedout", "econnreset", "connection reset"),
    ),
    (ErrorType.CONTENT_POLICY, ("content policy", "content_policy")),
)
_TOKEN_LIMIT_QUALIFIERS: tuple[str, ...] = ("limit", "exceed", "maximum", "too long")
_PARSE_MARKERS: tuple[str, ...] = ("parse", "json")
_UNSUPPORTED_LANGUAGE_MARKERS: tuple[str, ...] = ("unsupported language",)

_HTTP_STATUS_BY_ERROR_TYPE: dict[ErrorType, int] = {
    ErrorType.VIDEO_UNAVAILABLE: 404,
    ErrorType.NO_CAPTIONS: 422,
    ErrorType.PARSE_ERROR: 422,
    ErrorType.CONTENT_POLICY: 422,
    ErrorType.TOKEN_LIMIT_EXCEEDED: 422,
    ErrorType.RATE_LIMITED: 429,
    ErrorType.NETWORK_TIMEOUT: 429,
    ErrorType.INVALID_VIDEO_ID: 400,
    ErrorType.UNSUPPORTED_LANGUAGE: 400,
    ErrorType.UNKNOWN: 500,
}
_RETRYABLE_ERROR_TYPES: frozenset[ErrorType] = frozenset(
    {ErrorType.RATE_LIMITED, ErrorType.NETWORK_TIMEOUT, ErrorType.UNKNOWN}
)


class SummaryPipelineError(Exception):
    """Typed failure raised anywhere between transcript acquisition and persistence."""

    def __init__(self, message: str, error_type: ErrorType | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type if error_type is not None else classify_error(message)


class SummaryNotFoundError(LookupError):
    pass


def classify_error(raw_message: object) -> ErrorType:
    """Map a free-text failure to the taxonomy. Total: never raises."""
    try:
        lowered = str(raw_message).lower()
    except Exception:
        return ErrorType.UNKNOWN

    for error_type, markers in _CLASSIFICATION_RULES:
        if any(marker in lowered for marker in markers):
            return error_type
    if "token" in lowered and any(marker in lowered for marker in _TOKEN_LIMIT_QUALIFIERS):
        return ErrorType.TOKEN_LIMIT_EXCEEDED
    if "prompt is too long" in lowered or "context window" in lowered:
        return ErrorType.TOKEN_LIMIT_EXCEEDED
    if any(marker in lowered for marker in _PARSE_MARKERS):
        return ErrorType.PARSE_ERROR
    if any(marker in lowered for marker in _UNSUPPORTED_LANGUAGE_MARKERS):
        return ErrorType.UNSUPPORTED_LANGUAGE
    return ErrorType.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorType:
    if isinstance(exc, SummaryPipelineError):
        return exc.error_type
    if isinstance(exc, TimeoutError):
        return ErrorType.NETWORK_TIMEOUT
    return classify_error(f"{type(exc).__name__}: {exc}")


def http_status_for(error_type: ErrorType) -> int:
    return _HTTP_STATUS_BY_ERROR_TYPE.get(error_type, 500)


def is_retryable(error_type: ErrorType) -> bool:
    return error_type in _RETRYABLE_ERROR_TYPES
