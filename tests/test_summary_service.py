from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest
from fakes import (
    CaptureSink,
    FakeGenerator,
    Pipeline,
    build_pipeline,
    no_captions_failure,
    sample_metadata,
    sample_transcript,
)

from backend.app.repositories.database import Database
from backend.app.repositories.summary_repository import SummaryRepository
from backend.app.services import summary_cache as summary_cache_module
from backend.app.services.error_taxonomy import ErrorType, SummaryPipelineError
from backend.app.services.summary_cache import CacheOutcome, SummaryCache
from backend.app.services.summary_service import SummarizeOutcome
from backend.app.services.transcript_service import TranscriptResult
from backend.app.telemetry import TelemetryClient

VIDEO_ID = "dQw4w9WgXcQ"


def _wait_until(predicate: object, timeout_seconds: float = 5.0) -> None:
    assert callable(predicate)
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition was not met in time")


def test_first_request_generates_and_stores_summary(pipeline: Pipeline) -> None:
    outcome = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")

    assert outcome.cache_hit is False
    summary = outcome.summary
    assert summary.summary_id.startswith("sum_")
    assert summary.video_title == "Reliable Pipelines"
    assert summary.channel_name == "Systems Channel"
    assert summary.language == "en"
    assert summary.transcript_language == "en"
    assert summary.video_duration_seconds == 845
    assert summary.request_count == 1
    assert summary.content.category == "Technology & AI"

    assert len(pipeline.generator.summarize_calls) == 1
    call = pipeline.generator.summarize_calls[0]
    assert call["language"] == "en"
    assert call["deadline_seconds"] == pytest.approx(60.0, abs=1.0)
    assert pipeline.speech_to_text.calls == []

    records = pipeline.analytics.list_records()
    assert len(records) == 1
    record = records[0].record
    assert record.status == "success"
    assert record.user_id == "user-1"
    assert record.summary_id == summary.summary_id
    assert record.was_cache_hit is False
    assert record.token_usage_input == 12_000
    assert record.token_usage_output == 1_500
    assert record.token_cache_read == 2_000
    assert record.token_cache_creation == 1_000
    assert record.estimated_cost_micros == 53_100
    assert record.output_word_count > 0
    assert record.video_duration_seconds == 845

    names = pipeline.sink.names()
    assert "summary.generate.start" in names
    assert "summary.generate.finish" in names


def test_cache_hit_returns_identical_payload_without_provider_call(pipeline: Pipeline) -> None:
    first = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")
    second = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-2")

    assert second.cache_hit is True
    assert second.summary.summary_id == first.summary.summary_id
    assert second.summary.content.model_dump_json() == first.summary.content.model_dump_json()
    assert second.summary.request_count == 2
    assert len(pipeline.generator.summarize_calls) == 1
    assert pipeline.captions.calls == [VIDEO_ID]

    hit_record = pipeline.analytics.list_records()[-1].record
    assert hit_record.was_cache_hit is True
    assert hit_record.token_usage_input == 0
    assert hit_record.token_usage_output == 0
    assert hit_record.estimated_cost_micros == 0
    assert "summary.cache.hit" in pipeline.sink.names()


def test_concurrent_requests_share_one_generation(pipeline: Pipeline) -> None:
    pipeline.generator.gate = threading.Event()

    def summarize(user_id: str) -> SummarizeOutcome:
        return pipeline.summaries.summarize(video_id=VIDEO_ID, user_id=user_id)

    with ThreadPoolExecutor(max_workers=3) as pool:
        leader = pool.submit(summarize, "user-1")
        assert pipeline.generator.started.wait(timeout=5)
        followers = [pool.submit(summarize, f"user-{index}") for index in (2, 3)]
        _wait_until(lambda: pipeline.summary_cache.waiter_count(VIDEO_ID) == 3)
        pipeline.generator.gate.set()
        outcomes = [leader.result(timeout=10)] + [f.result(timeout=10) for f in followers]

    assert len(pipeline.generator.summarize_calls) == 1
    assert len({outcome.summary.summary_id for outcome in outcomes}) == 1
    assert [outcome.cache_hit for outcome in outcomes] == [False, True, True]
    assert pipeline.summary_repository.count() == 1

    stored = pipeline.summary_repository.get_by_video_id(VIDEO_ID)
    assert stored is not None
    assert stored.request_count == 3

    # Records are ordered by arrival, so the leader comes first.
    records = [stored_record.record for stored_record in pipeline.analytics.list_records()]
    assert len(records) == 3
    assert [record.was_cache_hit for record in records] == [False, True, True]
    assert records[0].user_id == "user-1"
    assert sum(record.token_usage_input for record in records) == 12_000
    assert "summary.cache.join" in pipeline.sink.names()
    assert pipeline.summary_cache.is_in_flight(VIDEO_ID) is False


def test_concurrent_failure_reaches_every_waiter_and_leaves_key_absent(pipeline: Pipeline) -> None:
    pipeline.generator.gate = threading.Event()
    pipeline.generator.error = SummaryPipelineError(
        "Provider declined the request under its content policy",
        ErrorType.CONTENT_POLICY,
    )

    def summarize(user_id: str) -> SummarizeOutcome:
        return pipeline.summaries.summarize(video_id=VIDEO_ID, user_id=user_id)

    with ThreadPoolExecutor(max_workers=2) as pool:
        leader = pool.submit(summarize, "user-1")
        assert pipeline.generator.started.wait(timeout=5)
        follower = pool.submit(summarize, "user-2")
        _wait_until(lambda: pipeline.summary_cache.waiter_count(VIDEO_ID) == 2)
        pipeline.generator.gate.set()
        for future in (leader, follower):
            with pytest.raises(SummaryPipelineError) as excinfo:
                future.result(timeout=10)
            assert excinfo.value.error_type is ErrorType.CONTENT_POLICY

    assert pipeline.summary_repository.count() == 0
    assert pipeline.summary_cache.is_in_flight(VIDEO_ID) is False
    records = [stored.record for stored in pipeline.analytics.list_records()]
    assert [record.status for record in records] == ["failed", "failed"]
    assert {record.error_type for record in records} == {"content_policy"}
    assert "summary.generate.error" in pipeline.sink.names()


def test_retry_after_failure_calls_provider_again(pipeline: Pipeline) -> None:
    pipeline.generator.error = RuntimeError("Unexpected token in JSON response")

    with pytest.raises(SummaryPipelineError) as excinfo:
        pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")
    assert excinfo.value.error_type is ErrorType.PARSE_ERROR

    pipeline.generator.error = None
    outcome = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1", retry_count=1)

    assert outcome.cache_hit is False
    assert len(pipeline.generator.summarize_calls) == 2
    records = [stored.record for stored in pipeline.analytics.list_records()]
    assert [record.status for record in records] == ["failed", "success"]
    assert records[1].retry_count == 1


def test_invalid_video_id_is_rejected_before_any_source_call(pipeline: Pipeline) -> None:
    with pytest.raises(SummaryPipelineError) as excinfo:
        pipeline.summaries.summarize(video_id="../etc/passwd", user_id="user-1")

    assert excinfo.value.error_type is ErrorType.INVALID_VIDEO_ID
    assert pipeline.captions.calls == []
    assert pipeline.generator.summarize_calls == []
    records = [stored.record for stored in pipeline.analytics.list_records()]
    assert len(records) == 1
    assert records[0].status == "failed"
    assert records[0].error_type == "invalid_video_id"


def test_failure_record_truncates_long_identifiers(pipeline: Pipeline) -> None:
    with pytest.raises(SummaryPipelineError):
        pipeline.summaries.summarize(video_id="x" * 500, user_id="user-1")

    record = pipeline.analytics.list_records()[0].record
    assert len(record.video_id) == 64


def test_missing_captions_and_failed_fallback_reports_no_captions(pipeline: Pipeline) -> None:
    pipeline.captions.outcome = no_captions_failure()

    with pytest.raises(SummaryPipelineError) as excinfo:
        pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")

    assert excinfo.value.error_type is ErrorType.NO_CAPTIONS
    assert pipeline.speech_to_text.calls == [VIDEO_ID]
    assert pipeline.generator.summarize_calls == []
    assert pipeline.summary_repository.count() == 0
    records = [stored.record for stored in pipeline.analytics.list_records()]
    assert len(records) == 1
    assert records[0].error_type == "no_captions"


def test_speech_to_text_fallback_feeds_generation(pipeline: Pipeline) -> None:
    pipeline.captions.outcome = no_captions_failure()
    pipeline.speech_to_text.outcome = TranscriptResult(
        text="[0:00] spoken words " * 100,
        language_code="de",
        duration_seconds=4_000,
        source="speech_to_text",
    )

    outcome = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")

    assert outcome.summary.transcript_language == "de"
    assert outcome.summary.language == "en"
    assert outcome.summary.video_duration_seconds == 4_000


def test_deadline_scales_with_transcript_length(pipeline: Pipeline) -> None:
    pipeline.captions.outcome = sample_transcript(length=60_000)

    pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")

    assert pipeline.generator.summarize_calls[0]["deadline_seconds"] == pytest.approx(240.0, abs=1.0)


def test_metadata_failure_falls_back_to_placeholder_title(pipeline: Pipeline) -> None:
    pipeline.oembed.error = OSError("network unreachable")

    outcome = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")

    assert outcome.summary.video_title == VIDEO_ID
    assert outcome.summary.channel_name is None
    assert outcome.summary.thumbnail_url == f"https://img.youtube.com/vi/{VIDEO_ID}/hqdefault.jpg"


def test_expired_summary_is_regenerated_in_place(database: Database, pipeline: Pipeline) -> None:
    first = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")
    stale = (datetime.now(UTC) - timedelta(days=2)).isoformat()
    with database.connection() as conn:
        conn.execute("UPDATE summaries SET created_at = ? WHERE video_id = ?", (stale, VIDEO_ID))

    expiring = SummaryRepository(database, ttl_seconds=86_400)
    assert expiring.get_by_video_id(VIDEO_ID) is None
    assert expiring.record_hit(VIDEO_ID) is None
    assert pipeline.summary_repository.get_by_video_id(VIDEO_ID) is not None

    expiring_pipeline = build_pipeline(database, summary_ttl_seconds=86_400)
    try:
        second = expiring_pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")
    finally:
        expiring_pipeline.shutdown()

    assert second.cache_hit is False
    assert second.summary.summary_id == first.summary.summary_id
    assert second.summary.request_count == 2
    assert len(expiring_pipeline.generator.summarize_calls) == 1
    assert pipeline.summary_repository.count() == 1


def test_provider_deadline_timeout_is_recorded_and_retryable(pipeline: Pipeline) -> None:
    pipeline.generator.error = SummaryPipelineError(
        "Generation timed out after 60s",
        ErrorType.NETWORK_TIMEOUT,
    )

    with pytest.raises(SummaryPipelineError) as excinfo:
        pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1")
    assert excinfo.value.error_type is ErrorType.NETWORK_TIMEOUT

    records = [stored.record for stored in pipeline.analytics.list_records()]
    assert len(records) == 1
    assert records[0].status == "failed"
    assert records[0].error_type == "network_timeout"
    assert pipeline.summary_cache.is_in_flight(VIDEO_ID) is False
    assert pipeline.summary_repository.count() == 0

    pipeline.generator.error = None
    outcome = pipeline.summaries.summarize(video_id=VIDEO_ID, user_id="user-1", retry_count=1)

    assert outcome.cache_hit is False
    assert len(pipeline.generator.summarize_calls) == 2


BUSY_VIDEO_ID = "aaaaaaaaaaa"
QUEUED_VIDEO_ID = "bbbbbbbbbbb"
LATER_VIDEO_ID = "ccccccccccc"


def _single_worker_cache(database: Database, generator: FakeGenerator, sink: CaptureSink) -> SummaryCache:
    return SummaryCache(
        repository=SummaryRepository(database),
        generator=generator,
        telemetry=TelemetryClient(enabled=True, sink=sink),
        language="en",
        max_workers=1,
        join_timeout_seconds=15.0,
    )


def _generate(cache: SummaryCache, video_id: str, deadline_seconds: float) -> CacheOutcome:
    return cache.get_or_generate(
        video_id,
        sample_transcript(),
        sample_metadata(video_id),
        deadline_seconds,
    )


def test_caller_timeout_withdraws_generation_still_queued(
    database: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(summary_cache_module, "JOIN_GRACE_SECONDS", 0.05)
    generator = FakeGenerator()
    generator.gate = threading.Event()
    cache = _single_worker_cache(database, generator, CaptureSink())
    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            busy = pool.submit(_generate, cache, BUSY_VIDEO_ID, 30.0)
            assert generator.started.wait(timeout=5)

            with pytest.raises(SummaryPipelineError) as excinfo:
                _generate(cache, QUEUED_VIDEO_ID, 0.1)
            assert excinfo.value.error_type is ErrorType.NETWORK_TIMEOUT
            assert cache.is_in_flight(QUEUED_VIDEO_ID) is False

            generator.gate.set()
            assert busy.result(timeout=10).was_cache_hit is False

        # The single worker runs jobs in submission order, so the withdrawn job would have run first.
        assert _generate(cache, LATER_VIDEO_ID, 30.0).was_cache_hit is False
    finally:
        cache.shutdown()

    assert len(generator.summarize_calls) == 2
    assert cache.lookup(QUEUED_VIDEO_ID) is None


def test_generation_whose_deadline_passed_in_queue_skips_provider(
    database: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(summary_cache_module, "JOIN_GRACE_SECONDS", 10.0)
    generator = FakeGenerator()
    generator.gate = threading.Event()
    sink = CaptureSink()
    cache = _single_worker_cache(database, generator, sink)
    try:
        with ThreadPoolExecutor(max_workers=2) as pool:
            busy = pool.submit(_generate, cache, BUSY_VIDEO_ID, 30.0)
            assert generator.started.wait(timeout=5)
            queued = pool.submit(_generate, cache, QUEUED_VIDEO_ID, 0.2)
            _wait_until(lambda: cache.is_in_flight(QUEUED_VIDEO_ID))
            time.sleep(0.3)

            generator.gate.set()
            busy.result(timeout=10)
            with pytest.raises(SummaryPipelineError) as excinfo:
                queued.result(timeout=10)
    finally:
        cache.shutdown()

    assert excinfo.value.error_type is ErrorType.NETWORK_TIMEOUT
    assert "before a worker was free" in excinfo.value.message
    assert len(generator.summarize_calls) == 1
    assert cache.lookup(QUEUED_VIDEO_ID) is None
    assert cache.is_in_flight(QUEUED_VIDEO_ID) is False
    assert "summary.generate.error" in sink.names()
