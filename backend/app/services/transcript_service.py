from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from youtube_transcript_api import (
    CouldNotRetrieveTranscript,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    VideoUnplayable,
    YouTubeRequestFailed,
    YouTubeTranscriptApi,
)

from backend.app.services.error_taxonomy import ErrorType

LOGGER = logging.getLogger("video_digest.transcripts")

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
TIMESTAMP_MARKER_INTERVAL_SECONDS = 30.0
DEFAULT_TRANSCRIPT_LANGUAGE = "en"
SUPADATA_PENDING_JOB_STATUSES: frozenset[str] = frozenset(
    {"queued", "pending", "processing", "running", "active", "in_progress"}
)
SUPADATA_FAILED_JOB_STATUSES: frozenset[str] = frozenset({"failed", "error"})

SupadataFetch = Callable[..., tuple[int, dict[str, Any]]]


@dataclass(frozen=True)
class TranscriptResult:
    text: str
    language_code: str
    duration_seconds: int
    source: str


@dataclass(frozen=True)
class TranscriptFailure:
    error_type: ErrorType
    message: str
    source: str


TranscriptOutcome = TranscriptResult | TranscriptFailure


@dataclass(frozen=True)
class TimedSnippet:
    text: str
    start: float
    duration: float


class TranscriptSource(Protocol):
    name: str

    def fetch(self, video_id: str) -> TranscriptOutcome:
        ...


def is_valid_video_id(video_id: object) -> bool:
    return isinstance(video_id, str) and VIDEO_ID_PATTERN.fullmatch(video_id) is not None


def invalid_video_id_failure(video_id: object) -> TranscriptFailure:
    return TranscriptFailure(
        error_type=ErrorType.INVALID_VIDEO_ID,
        message=f"[INVALID_VIDEO_ID] Invalid video ID format: {str(video_id)[:64]!r}",
        source="validation",
    )


def _failure(error_type: ErrorType, detail: str, *, source: str) -> TranscriptFailure:
    return TranscriptFailure(
        error_type=error_type,
        message=f"[{error_type.value.upper()}] {detail}",
        source=source,
    )


class TranscriptFallbackOrchestrator:
    """
    Acquires a transcript from the captions source, falling back to speech-to-text.

    Only a `no_captions` failure triggers the fallback; unavailable or rate-limited
    videos are returned as-is because another source cannot fix them. Nothing is
    cached at this layer.
    """

    def __init__(
        self,
        *,
        primary: TranscriptSource,
        fallback: TranscriptSource | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback

    def acquire_transcript(self, video_id: str) -> TranscriptOutcome:
        if not is_valid_video_id(video_id):
            return invalid_video_id_failure(video_id)

        primary_outcome = self._primary.fetch(video_id)
        if isinstance(primary_outcome, TranscriptResult):
            return primary_outcome
        if primary_outcome.error_type is not ErrorType.NO_CAPTIONS:
            LOGGER.info(
                "transcript primary failed without fallback video_id=%s source=%s error_type=%s",
                video_id,
                primary_outcome.source,
                primary_outcome.error_type.value,
            )
            return primary_outcome
        if self._fallback is None:
            return primary_outcome

        LOGGER.info(
            "transcript fallback start video_id=%s primary=%s fallback=%s",
            video_id,
            self._primary.name,
            self._fallback.name,
        )
        fallback_outcome = self._fallback.fetch(video_id)
        if isinstance(fallback_outcome, TranscriptResult):
            return fallback_outcome

        LOGGER.warning(
            "transcript fallback failed video_id=%s fallback_error_type=%s",
            video_id,
            fallback_outcome.error_type.value,
        )
        return TranscriptFailure(
            error_type=ErrorType.NO_CAPTIONS,
            message=(
                f"{primary_outcome.message}; speech-to-text fallback failed: "
                f"{fallback_outcome.message}"
            ),
            source=self._fallback.name,
        )


class CaptionsTranscriptSource:
    name = "captions"

    def __init__(
        self,
        *,
        languages: Sequence[str] = (DEFAULT_TRANSCRIPT_LANGUAGE,),
        api_factory: Callable[[], Any] = YouTubeTranscriptApi,
    ) -> None:
        self._languages = tuple(languages) or (DEFAULT_TRANSCRIPT_LANGUAGE,)
        self._api_factory = api_factory

    def fetch(self, video_id: str) -> TranscriptOutcome:
        try:
            transcript_list = self._api_factory().list(video_id)
            transcript = _select_transcript(transcript_list, self._languages)
            fetched = transcript.fetch()
        except (VideoUnavailable, VideoUnplayable) as exc:
            return _failure(ErrorType.VIDEO_UNAVAILABLE, _first_line(exc), source=self.name)
        except RequestBlocked as exc:
            return _failure(ErrorType.RATE_LIMITED, _first_line(exc), source=self.name)
        except (YouTubeRequestFailed, OSError) as exc:
            # requests exceptions are OSErrors; a network failure is not missing captions.
            return _failure(
                ErrorType.NETWORK_TIMEOUT,
                f"Captions request failed: {_first_line(exc)}",
                source=self.name,
            )
        except (NoTranscriptFound, TranscriptsDisabled) as exc:
            return _failure(
                ErrorType.NO_CAPTIONS,
                f"No transcript available: {_first_line(exc)}",
                source=self.name,
            )
        except CouldNotRetrieveTranscript as exc:
            return _failure(
                ErrorType.NO_CAPTIONS,
                f"No transcript available: {_first_line(exc)}",
                source=self.name,
            )
        except Exception as exc:
            LOGGER.warning(
                "captions fetch failed unexpectedly video_id=%s error=%s",
                video_id,
                type(exc).__name__,
                exc_info=True,
            )
            return _failure(
                ErrorType.NO_CAPTIONS,
                f"No transcript available: {_first_line(exc)}",
                source=self.name,
            )

        snippets = [
            TimedSnippet(
                text=str(snippet.text),
                start=float(snippet.start),
                duration=float(snippet.duration),
            )
            for snippet in fetched.snippets
        ]
        text = format_timed_text(snippets)
        if not text:
            return _failure(
                ErrorType.NO_CAPTIONS,
                "No transcript available: empty transcript returned",
                source=self.name,
            )
        return TranscriptResult(
            text=text,
            language_code=_normalize_language(getattr(fetched, "language_code", None)),
            duration_seconds=_snippets_duration_seconds(snippets),
            source=self.name,
        )


class SupadataSpeechToTextSource:
    name = "speech_to_text"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        mode: str = "generate",
        http_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 2.0,
        poll_max_attempts: int = 90,
        fetch_json: SupadataFetch | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._mode = mode.strip().lower() or "generate"
        self._http_timeout_seconds = http_timeout_seconds
        self._poll_interval_seconds = max(0.0, poll_interval_seconds)
        self._poll_max_attempts = max(1, poll_max_attempts)
        self._fetch_json: SupadataFetch = fetch_json or _fetch_supadata_json
        self._sleep = sleep

    def fetch(self, video_id: str) -> TranscriptOutcome:
        try:
            status_code, payload = self._fetch_json(
                url=f"{self._base_url}/transcript",
                api_key=self._api_key,
                timeout_seconds=self._http_timeout_seconds,
                params={
                    "url": f"https://www.youtube.com/watch?v={video_id}",
                    "text": "false",
                    "mode": self._mode,
                },
            )
            if status_code == 202:
                job_id = _extract_supadata_job_id(payload)
                if job_id is None:
                    return _failure(
                        ErrorType.UNKNOWN,
                        "Supadata transcript job was accepted but no job ID was returned.",
                        source=self.name,
                    )
                status_code, payload = self._poll_job(job_id)
        except (URLError, TimeoutError, OSError) as exc:
            return _failure(
                ErrorType.NETWORK_TIMEOUT,
                f"Supadata request failed: {exc}",
                source=self.name,
            )

        if status_code >= 400:
            return _failure(
                _supadata_status_error_type(status_code),
                _extract_supadata_error_message(payload)
                or f"Supadata transcript request failed (status {status_code}).",
                source=self.name,
            )

        snippets = _extract_supadata_snippets(payload)
        text = format_timed_text(snippets)
        if not text:
            content = payload.get("content")
            text = content.strip() if isinstance(content, str) else ""
        if not text:
            return _failure(
                ErrorType.NO_CAPTIONS,
                "No transcript available: speech-to-text returned no content",
                source=self.name,
            )
        return TranscriptResult(
            text=text,
            language_code=_normalize_language(payload.get("lang")),
            duration_seconds=_snippets_duration_seconds(snippets),
            source=self.name,
        )

    def _poll_job(self, job_id: str) -> tuple[int, dict[str, Any]]:
        for attempt in range(self._poll_max_attempts):
            status_code, payload = self._fetch_json(
                url=f"{self._base_url}/transcript/{job_id}",
                api_key=self._api_key,
                timeout_seconds=self._http_timeout_seconds,
                params=None,
            )
            if status_code >= 400:
                return status_code, payload

            job_status = _extract_supadata_job_status(payload)
            if job_status in SUPADATA_FAILED_JOB_STATUSES:
                message = _extract_supadata_error_message(payload) or "Supadata transcript job failed."
                return 422, {"message": message}
            if job_status in SUPADATA_PENDING_JOB_STATUSES:
                if attempt < self._poll_max_attempts - 1:
                    self._sleep(self._poll_interval_seconds)
                    continue
                break
            return status_code, payload

        LOGGER.warning(
            "supadata transcript job did not finish job_id=%s attempts=%s",
            job_id,
            self._poll_max_attempts,
        )
        raise TimeoutError("Supadata transcript job timed out before completion.")


def format_timed_text(snippets: Iterable[TimedSnippet]) -> str:
    """Join snippet texts, inserting a `[m:ss]` marker at most every 30 seconds."""
    parts: list[str] = []
    next_marker = 0.0
    for snippet in snippets:
        text = " ".join(snippet.text.split())
        if not text:
            continue
        if snippet.start >= next_marker:
            parts.append(f"[{_format_timestamp(snippet.start)}]")
            next_marker = snippet.start + TIMESTAMP_MARKER_INTERVAL_SECONDS
        parts.append(text)
    if not any(not part.startswith("[") for part in parts):
        return ""
    return " ".join(parts)


def _format_timestamp(seconds: float) -> str:
    total_seconds = int(max(0.0, seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _snippets_duration_seconds(snippets: Sequence[TimedSnippet]) -> int:
    if not snippets:
        return 0
    last = snippets[-1]
    return int(last.start + last.duration)


def _select_transcript(transcript_list: Any, languages: Sequence[str]) -> Any:
    try:
        return transcript_list.find_transcript(list(languages))
    except NoTranscriptFound:
        for transcript in transcript_list:
            return transcript
        raise


def _normalize_language(raw_value: object) -> str:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip().lower()
    return DEFAULT_TRANSCRIPT_LANGUAGE


def _first_line(exc: BaseException) -> str:
    raw = str(exc).strip()
    if not raw:
        return type(exc).__name__
    return raw.splitlines()[0].strip()


def _supadata_status_error_type(status_code: int) -> ErrorType:
    if status_code == 404:
        return ErrorType.VIDEO_UNAVAILABLE
    if status_code == 429:
        return ErrorType.RATE_LIMITED
    if status_code in (408, 504):
        return ErrorType.NETWORK_TIMEOUT
    if status_code in (206, 422):
        return ErrorType.NO_CAPTIONS
    return ErrorType.UNKNOWN


def _fetch_supadata_json(
    *,
    url: str,
    api_key: str,
    timeout_seconds: float,
    params: dict[str, str] | None,
) -> tuple[int, dict[str, Any]]:
    query = urlencode(params or {})
    request_url = f"{url}?{query}" if query else url
    request = Request(
        request_url,
        headers={
            "x-api-key": api_key,
            "accept": "application/json",
            "user-agent": "video-digest/1.0",
        },
        method="GET",
    )

    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")

    return status_code, _parse_json_dict(raw_body)


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return {}


def _extract_supadata_snippets(payload: dict[str, Any]) -> list[TimedSnippet]:
    raw_segments = payload.get("content")
    if not isinstance(raw_segments, list):
        return []

    snippets: list[TimedSnippet] = []
    for item in cast(list[object], raw_segments):
        if not isinstance(item, dict):
            continue
        segment = cast(dict[str, object], item)
        text = segment.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        # Supadata reports offsets and durations in milliseconds.
        offset = segment.get("offset")
        duration = segment.get("duration")
        snippets.append(
            TimedSnippet(
                text=text,
                start=float(offset) / 1000.0 if isinstance(offset, int | float) else 0.0,
                duration=float(duration) / 1000.0 if isinstance(duration, int | float) else 0.0,
            )
        )
    return snippets


def _extract_supadata_job_id(payload: dict[str, Any]) -> str | None:
    for key in ("jobId", "job_id", "id"):
        raw_value = payload.get(key)
        if isinstance(raw_value, str) and raw_value.strip():
            return raw_value.strip()
    return None


def _extract_supadata_job_status(payload: dict[str, Any]) -> str | None:
    raw_value = payload.get("status")
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip().lower()
    return None


def _extract_supadata_error_message(payload: dict[str, Any]) -> str | None:
    for key in ("message", "error", "details"):
        raw_value = payload.get(key)
        if isinstance(raw_value, str) and raw_value.strip():
            return raw_value.strip()
        if isinstance(raw_value, dict):
            nested = cast(dict[str, object], raw_value).get("message")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None
