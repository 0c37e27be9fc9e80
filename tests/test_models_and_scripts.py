from __future__ import annotations

from pathlib import Path

import pytest
from fakes import SAMPLE_PROVIDER_PAYLOAD, sample_content
from pydantic import ValidationError

from backend.app.models.summary_contracts import (
    SummarizeRequest,
    SummaryContent,
    TranslatableText,
    normalize_category,
)
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database
from backend.app.scripts.api_keys import main as api_keys_main


def test_summary_content_accepts_provider_shape() -> None:
    content = sample_content()

    assert content.quick_summary.startswith("A practical tour")
    assert content.contextual_sections[1].timestamp_end == 300
    assert content.refresher_cards[0].id == "rc1"
    assert [item.insight for item in content.actionable_insights][1] == (
        "Record every attempt for cost analysis."
    )
    assert content.actionable_insights[1].category == "strategy"
    assert content.affiliate_links[0].type == "book"

    dumped = content.model_dump()
    assert "quick_summary" in dumped
    assert "quickSummary" in content.model_dump(by_alias=True)


def test_summary_content_normalizes_legacy_fields() -> None:
    payload = {
        **SAMPLE_PROVIDER_PAYLOAD,
        "category": "tech",
        "refresherCards": [{"frontText": "Front", "backText": "Back"}],
        "affiliateLinks": [{"title": "Docs", "type": "Resource", "category": None}],
    }

    content = SummaryContent.model_validate(payload)

    assert content.category == "Technology & AI"
    assert content.refresher_cards[0].title == "Front"
    assert content.refresher_cards[0].explanation == "Back"
    assert content.affiliate_links[0].type == "website"
    assert content.affiliate_links[0].category == "by_speaker"
    assert normalize_category("Somewhere else") == "Other"
    assert normalize_category(None) == "Other"


def test_summary_content_rejects_inverted_timestamps() -> None:
    payload = {
        **SAMPLE_PROVIDER_PAYLOAD,
        "contextualSections": [
            {"title": "Backwards", "content": "x", "timestampStart": 90, "timestampEnd": 10}
        ],
    }

    with pytest.raises(ValidationError):
        SummaryContent.model_validate(payload)


def test_translated_text_must_match_source_shape() -> None:
    content = sample_content()
    text = content.translatable_text()

    assert content.with_translated_text(text) == content

    short = text.model_copy(update={"refresher_cards": []})
    with pytest.raises(ValueError) as excinfo:
        content.with_translated_text(short)
    assert "refresherCards" in str(excinfo.value)

    assert TranslatableText.model_validate(text.model_dump(by_alias=True)) == text


def test_summarize_request_normalizes_fields() -> None:
    request = SummarizeRequest.model_validate(
        {"video_id": "  dQw4w9WgXcQ ", "language": " PT-BR "}
    )
    assert request.video_id == "dQw4w9WgXcQ"
    assert request.language == "pt-br"
    assert SummarizeRequest.model_validate({"video_id": "x", "language": " "}).language is None

    with pytest.raises(ValidationError):
        SummarizeRequest.model_validate({"video_id": "x", "retry_count": -1})


def test_api_keys_script_create_list_revoke(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("VIDEO_DIGEST_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("VIDEO_DIGEST_ANTHROPIC_API_KEY", raising=False)

    api_keys_main(["create", "--user-id", "ops", "--label", "laptop", "--admin"])
    created = capsys.readouterr().out
    assert "Created API key: vdk_" in created
    assert "User: ops (admin)" in created
    token = next(
        line.split(": ", 1)[1]
        for line in created.splitlines()
        if line.startswith("Token (save now")
    )
    key_id = token.partition(".")[0]

    database = Database(tmp_path / "state.db")
    identity = ApiKeyRepository(database).resolve_active_token(
        key_id=key_id,
        secret=token.partition(".")[2],
    )
    assert identity is not None
    assert identity.is_admin is True

    api_keys_main(["list"])
    listed = capsys.readouterr().out
    assert key_id in listed
    assert "laptop" in listed

    api_keys_main(["revoke", "--key-id", key_id])
    assert f"Revoked API key: {key_id}" in capsys.readouterr().out

    api_keys_main(["list"])
    assert "No API keys found." in capsys.readouterr().out

    api_keys_main(["list", "--all", "--user-id", "ops"])
    assert key_id in capsys.readouterr().out
