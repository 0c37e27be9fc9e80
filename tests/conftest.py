from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import Pipeline, build_pipeline
from fastapi.testclient import TestClient

from backend.app.dependencies import (
    get_database,
    get_summary_service,
    get_translation_service,
    get_video_metadata_service,
    reset_cached_dependencies,
)
from backend.app.main import create_app
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database
from backend.app.services.video_metadata_service import VideoMetadataService


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def pipeline(database: Database) -> Iterator[Pipeline]:
    built = build_pipeline(database)
    yield built
    built.shutdown()


@pytest.fixture
def app_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("VIDEO_DIGEST_DATA_DIR", str(data_dir))
    monkeypatch.setenv("VIDEO_DIGEST_ANTHROPIC_API_KEY", "test-anthropic-key")
    monkeypatch.setenv("VIDEO_DIGEST_SPEECH_TO_TEXT_ENABLED", "0")
    monkeypatch.setenv("VIDEO_DIGEST_GENERATION_RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("VIDEO_DIGEST_TRANSLATION_RATE_LIMIT_MAX_REQUESTS", "5")
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()


@pytest.fixture
def app_pipeline(app_env: Path) -> Iterator[Pipeline]:
    _ = app_env
    built = build_pipeline(get_database())
    yield built
    built.shutdown()


@pytest.fixture
def client(app_pipeline: Pipeline) -> Iterator[TestClient]:
    app = create_app()
    app.dependency_overrides[get_summary_service] = lambda: app_pipeline.summaries
    app.dependency_overrides[get_translation_service] = lambda: app_pipeline.translations
    app.dependency_overrides[get_video_metadata_service] = lambda: VideoMetadataService(
        fetch_json=app_pipeline.oembed
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_token(app_env: Path) -> str:
    _ = app_env
    _, token = ApiKeyRepository(get_database()).create_key(user_id="user-1", label="phone")
    return token


@pytest.fixture
def admin_token(app_env: Path) -> str:
    _ = app_env
    _, token = ApiKeyRepository(get_database()).create_key(
        user_id="admin-1",
        label="ops",
        is_admin=True,
    )
    return token
