from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fakes import FakeTranscriptSource, no_captions_failure, sample_transcript
from youtube_transcript_api import (
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
)

from backend.app.services.error_taxonomy import ErrorType
from backend.app.services.transcript_service import (
    CaptionsTranscriptSource,
    SupadataSpeechToTextSource,
    TimedSnippet,
    TranscriptFailure,
    TranscriptFallbackOrchestrator,
    TranscriptResult,
    format_timed_text,
    is_valid_video_id,
)

VIDEO_ID = "dQw4w9WgXcQ"


@dataclass
class _Snippet:
    text: str
    start: float
    duration: float


@dataclass
class _FetchedTranscript:
    snippets: list[_Snippet]
    language_code: str = "en"


@dataclass
class _Track:
    fetched: _FetchedTranscript

    def fetch(self) -> _FetchedTranscript:
        return self.fetched


@dataclass
class _TrackList:
    tracks: dict[str, _Track]
    requested: list[list[str]] = field(default_factory=list)

    def find_transcript(self, language_codes: list[str]) -> _Track:
        self.requested.append(language_codes)
        for code in language_codes:
            if code in self.tracks:
                return self.tracks[code]
        raise NoTranscriptFound(VIDEO_ID, language_codes, None)

    def __iter__(self) -> Any:
        return iter(self.tracks.values())


class _FakeTranscriptApi:
    def __init__(self, *, track_list: _TrackList | None = None, error: Exception | None = None) -> None:
        self.track_list = track_list
        self.error = error
        self.listed: list[str] = []

    def list(self, video_id: str) -> _TrackList:
        self.listed.append(video_id)
        if self.error is not None:
            raise self.error
        assert self.track_list is not None
        return self.track_list


def _captions_source(api: _FakeTranscriptApi, languages: tuple[str, ...] = ("en",)) -> CaptionsTranscriptSource:
    return CaptionsTranscriptSource(languages=languages, api_factory=lambda: api)


def test_is_valid_video_id() -> None:
    assert is_valid_video_id(VIDEO_ID) is True
    assert is_valid_video_id("abc-DEF_123") is True
    assert is_valid_video_id("short") is False
    assert is_valid_video_id("../etc/passwd") is False
    assert is_valid_video_id("dQw4w9WgXcQ\n") is False
    assert is_valid_video_id(None) is False


def test_orchestrator_rejects_invalid_id_without_calling_sources() -> None:
    captions = FakeTranscriptSource("captions", sample_transcript())
    speech = FakeTranscriptSource("speech_to_text", sample_transcript())
    orchestrator = TranscriptFallbackOrchestrator(primary=captions, fallback=speech)

    outcome = orchestrator.acquire_transcript("../etc/passwd")

    assert isinstance(outcome, TranscriptFailure)
    assert outcome.error_type is ErrorType.INVALID_VIDEO_ID
    assert outcome.message.startswith("[INVALID_VIDEO_ID]")
    assert captions.calls == []
    assert speech.calls == []


def test_orchestrator_returns_captions_without_fallback() -> None:
    captions = FakeTranscriptSource("captions", sample_transcript())
    speech = FakeTranscriptSource("speech_to_text", sample_transcript())
    orchestrator = TranscriptFallbackOrchestrator(primary=captions, fallback=speech)

    outcome = orchestrator.acquire_transcript(VIDEO_ID)

    assert isinstance(outcome, TranscriptResult)
    assert outcome.source == "captions"
    assert speech.calls == []


def test_orchestrator_falls_back_only_on_missing_captions() -> None:
    speech_result = TranscriptResult(
        text="[0:00] spoken words",
        language_code="de",
        duration_seconds=120,
        source="speech_to_text",
    )
    captions = FakeTranscriptSource("captions", no_captions_failure())
    speech = FakeTranscriptSource("speech_to_text", speech_result)
    orchestrator = TranscriptFallbackOrchestrator(primary=captions, fallback=speech)

    assert orchestrator.acquire_transcript(VIDEO_ID) == speech_result
    assert speech.calls == [VIDEO_ID]

    for error_type in (ErrorType.VIDEO_UNAVAILABLE, ErrorType.RATE_LIMITED):
        captions.outcome = TranscriptFailure(
            error_type=error_type,
            message=f"[{error_type.value.upper()}] primary failed",
            source="captions",
        )
        outcome = orchestrator.acquire_transcript(VIDEO_ID)
        assert isinstance(outcome, TranscriptFailure)
        assert outcome.error_type is error_type
    assert speech.calls == [VIDEO_ID]


def test_orchestrator_reports_no_captions_when_fallback_fails() -> None:
    captions = FakeTranscriptSource("captions", no_captions_failure())
    speech = FakeTranscriptSource(
        "speech_to_text",
        TranscriptFailure(
            error_type=ErrorType.NETWORK_TIMEOUT,
            message="[NETWORK_TIMEOUT] Supadata request failed: timed out",
            source="speech_to_text",
        ),
    )
    orchestrator = TranscriptFallbackOrchestrator(primary=captions, fallback=speech)

    outcome = orchestrator.acquire_transcript(VIDEO_ID)

    assert isinstance(outcome, TranscriptFailure)
    assert outcome.error_type is ErrorType.NO_CAPTIONS
    assert "subtitles are disabled" in outcome.message
    assert "Supadata request failed" in outcome.message


def test_orchestrator_without_fallback_returns_primary_failure() -> None:
    captions = FakeTranscriptSource("captions", no_captions_failure())
    orchestrator = TranscriptFallbackOrchestrator(primary=captions)

    outcome = orchestrator.acquire_transcript(VIDEO_ID)

    assert outcome == no_captions_failure()


def test_format_timed_text_inserts_markers_every_thirty_seconds() -> None:
    snippets = [
        TimedSnippet(text="hello", start=0.0, duration=2.0),
        TimedSnippet(text="  there\nfriend ", start=10.0, duration=2.0),
        TimedSnippet(text="", start=20.0, duration=2.0),
        TimedSnippet(text="later", start=31.5, duration=2.0),
        TimedSnippet(text="much later", start=3_725.0, duration=2.0),
    ]

    assert format_timed_text(snippets) == (
        "[0:00] hello there friend [0:31] later [1:02:05] much later"
    )
    assert format_timed_text([]) == ""
    assert format_timed_text([TimedSnippet(text="   ", start=0.0, duration=1.0)]) == ""


def test_captions_source_prefers_configured_language() -> None:
    track_list = _TrackList(
        tracks={
            "de": _Track(_FetchedTranscript([_Snippet("hallo", 0.0, 1.0)], language_code="de")),
            "en": _Track(
                _FetchedTranscript(
                    [_Snippet("hello", 0.0, 4.0), _Snippet("world", 40.0, 5.5)],
                    language_code="EN",
                )
            ),
        }
    )
    api = _FakeTranscriptApi(track_list=track_list)

    outcome = _captions_source(api).fetch(VIDEO_ID)

    assert outcome == TranscriptResult(
        text="[0:00] hello [0:40] world",
        language_code="en",
        duration_seconds=45,
        source="captions",
    )
    assert api.listed == [VIDEO_ID]
    assert track_list.requested == [["en"]]


def test_captions_source_uses_first_track_when_preferred_is_missing() -> None:
    track_list = _TrackList(
        tracks={
            "fr": _Track(_FetchedTranscript([_Snippet("bonjour", 0.0, 3.0)], language_code="fr")),
        }
    )

    outcome = _captions_source(_FakeTranscriptApi(track_list=track_list)).fetch(VIDEO_ID)

    assert isinstance(outcome, TranscriptResult)
    assert outcome.language_code == "fr"
    assert outcome.text == "[0:00] bonjour"


def test_captions_source_maps_library_errors() -> None:
    cases = [
        (VideoUnavailable(VIDEO_ID), ErrorType.VIDEO_UNAVAILABLE),
        (RequestBlocked(VIDEO_ID), ErrorType.RATE_LIMITED),
        (TranscriptsDisabled(VIDEO_ID), ErrorType.NO_CAPTIONS),
        (ConnectionError("connection reset by peer"), ErrorType.NETWORK_TIMEOUT),
        (TimeoutError("read timed out"), ErrorType.NETWORK_TIMEOUT),
        (RuntimeError("unexpected page layout"), ErrorType.NO_CAPTIONS),
    ]
    for error, expected in cases:
        outcome = _captions_source(_FakeTranscriptApi(error=error)).fetch(VIDEO_ID)
        assert isinstance(outcome, TranscriptFailure)
        assert outcome.error_type is expected
        assert outcome.source == "captions"


def test_captions_network_failure_does_not_start_speech_to_text() -> None:
    captions = _captions_source(_FakeTranscriptApi(error=ConnectionError("connection reset by peer")))
    speech = FakeTranscriptSource("speech_to_text", sample_transcript())
    orchestrator = TranscriptFallbackOrchestrator(primary=captions, fallback=speech)

    outcome = orchestrator.acquire_transcript(VIDEO_ID)

    assert isinstance(outcome, TranscriptFailure)
    assert outcome.error_type is ErrorType.NETWORK_TIMEOUT
    assert outcome.message.startswith("[NETWORK_TIMEOUT] Captions request failed")
    assert speech.calls == []


def test_captions_source_treats_empty_transcript_as_missing() -> None:
    track_list = _TrackList(tracks={"en": _Track(_FetchedTranscript([_Snippet("  ", 0.0, 1.0)]))})

    outcome = _captions_source(_FakeTranscriptApi(track_list=track_list)).fetch(VIDEO_ID)

    assert isinstance(outcome, TranscriptFailure)
    assert outcome.error_type is ErrorType.NO_CAPTIONS


class _FakeSupadata:
    def __init__(self, responses: list[tuple[int, dict[str, Any]]]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        *,
        url: str,
        api_key: str,
        timeout_seconds: float,
        params: dict[str, str] | None,
    ) -> tuple[int, dict[str, Any]]:
        self.calls.append({"url": url, "api_key": api_key, "params": params})
        return self.responses.pop(0)


def _supadata_source(fake: _FakeSupadata, *, poll_max_attempts: int = 5) -> SupadataSpeechToTextSource:
    return SupadataSpeechToTextSource(
        api_key="stt-key",
        base_url="https://api.supadata.test/v1/",
        poll_interval_seconds=0.0,
        poll_max_attempts=poll_max_attempts,
        fetch_json=fake,
        sleep=lambda _: None,
    )


def test_supadata_source_reads_segments_in_milliseconds() -> None:
    fake = _FakeSupadata(
        [
            (
                200,
                {
                    "lang": "en",
                    "content": [
                        {"text": "first words", "offset": 0, "duration": 4_000},
                        {"text": "after a while", "offset": 45_000, "duration": 5_000},
                    ],
                },
            )
        ]
    )

    outcome = _supadata_source(fake).fetch(VIDEO_ID)

    assert outcome == TranscriptResult(
        text="[0:00] first words [0:45] after a while",
        language_code="en",
        duration_seconds=50,
        source="speech_to_text",
    )
    assert fake.calls[0]["url"] == "https://api.supadata.test/v1/transcript"
    assert fake.calls[0]["params"]["url"] == f"https://www.youtube.com/watch?v={VIDEO_ID}"
    assert fake.calls[0]["params"]["mode"] == "generate"


def test_supadata_source_polls_async_jobs() -> None:
    fake = _FakeSupadata(
        [
            (202, {"jobId": "job-1"}),
            (200, {"status": "processing"}),
            (200, {"status": "completed", "lang": "es", "content": "texto plano"}),
        ]
    )

    outcome = _supadata_source(fake).fetch(VIDEO_ID)

    assert isinstance(outcome, TranscriptResult)
    assert outcome.text == "texto plano"
    assert outcome.language_code == "es"
    assert [call["url"] for call in fake.calls[1:]] == [
        "https://api.supadata.test/v1/transcript/job-1",
        "https://api.supadata.test/v1/transcript/job-1",
    ]


def test_supadata_source_maps_failures() -> None:
    cases = [
        ((404, {"message": "not found"}), ErrorType.VIDEO_UNAVAILABLE),
        ((429, {}), ErrorType.RATE_LIMITED),
        ((504, {}), ErrorType.NETWORK_TIMEOUT),
        ((422, {"error": {"message": "no speech"}}), ErrorType.NO_CAPTIONS),
        ((500, {}), ErrorType.UNKNOWN),
        ((200, {"content": []}), ErrorType.NO_CAPTIONS),
    ]
    for response, expected in cases:
        outcome = _supadata_source(_FakeSupadata([response])).fetch(VIDEO_ID)
        assert isinstance(outcome, TranscriptFailure)
        assert outcome.error_type is expected
        assert outcome.source == "speech_to_text"


def test_supadata_source_times_out_unfinished_jobs() -> None:
    fake = _FakeSupadata([(202, {"jobId": "job-2"})] + [(200, {"status": "queued"})] * 3)

    outcome = _supadata_source(fake, poll_max_attempts=3).fetch(VIDEO_ID)

    assert isinstance(outcome, TranscriptFailure)
    assert outcome.error_type is ErrorType.NETWORK_TIMEOUT


def test_supadata_source_reports_failed_jobs_as_missing_captions() -> None:
    fake = _FakeSupadata([(202, {"jobId": "job-3"}), (200, {"status": "failed", "error": "no audio"})])

    outcome = _supadata_source(fake).fetch(VIDEO_ID)

    assert isinstance(outcome, TranscriptFailure)
    assert outcome.error_type is ErrorType.NO_CAPTIONS
    assert "no audio" in outcome.message
