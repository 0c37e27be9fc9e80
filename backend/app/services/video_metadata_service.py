from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.app.services.transcript_service import is_valid_video_id

LOGGER = logging.getLogger("video_digest.metadata")

OEMBED_URL = "https://www.youtube.com/oembed"

MetadataFetch = Callable[[str, float], dict[str, Any]]


class VideoMetadataError(Exception):
    pass


@dataclass(frozen=True)
class VideoMetadata:
    video_id: str
    title: str
    channel_name: str | None
    thumbnail_url: str


def thumbnail_url_for(video_id: str) -> str:
    return f"https://img.youtube.com/vi/{video_id}/hqdefault.jpg"


def fallback_metadata(video_id: str) -> VideoMetadata:
    return VideoMetadata(
        video_id=video_id,
        title=video_id,
        channel_name=None,
        thumbnail_url=thumbnail_url_for(video_id),
    )


class VideoMetadataService:
    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        fetch_json: MetadataFetch | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._fetch_json: MetadataFetch = fetch_json or _fetch_oembed_json

    def fetch(self, video_id: str) -> VideoMetadata:
        if not is_valid_video_id(video_id):
            raise VideoMetadataError(f"Invalid video ID format: {video_id[:64]!r}")

        watch_url = f"https://www.youtube.com/watch?v={video_id}"
        query = urlencode({"url": watch_url, "format": "json"})
        try:
            payload = self._fetch_json(f"{OEMBED_URL}?{query}", self._timeout_seconds)
        except HTTPError as exc:
            raise VideoMetadataError(f"oEmbed lookup failed (status {exc.code})") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise VideoMetadataError(f"oEmbed lookup failed: {exc}") from exc

        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            raise VideoMetadataError("oEmbed response did not include a title")

        author_name = payload.get("author_name")
        return VideoMetadata(
            video_id=video_id,
            title=title.strip(),
            channel_name=(
                author_name.strip()
                if isinstance(author_name, str) and author_name.strip()
                else None
            ),
            thumbnail_url=thumbnail_url_for(video_id),
        )

    def fetch_or_fallback(self, video_id: str) -> VideoMetadata:
        try:
            return self.fetch(video_id)
        except VideoMetadataError as exc:
            LOGGER.info("video metadata unavailable video_id=%s reason=%s", video_id, exc)
            return fallback_metadata(video_id)


def _fetch_oembed_json(url: str, timeout_seconds: float) -> dict[str, Any]:
    request = Request(
        url,
        headers={"accept": "application/json", "user-agent": "video-digest/1.0"},
        method="GET",
    )
    with urlopen(request, timeout=timeout_seconds) as response:
        raw_body = response.read().decode("utf-8", errors="replace")

    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise VideoMetadataError("oEmbed response was not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise VideoMetadataError("oEmbed response was not a JSON object")
    return cast(dict[str, Any], parsed)
