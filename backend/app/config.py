from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".video-digest"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "speech_to_text_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{VIDEO_DIGEST_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    This class is the single source of truth for config options:
    - what each option controls,
    - where it comes from (`VIDEO_DIGEST_*`),
    - and what its default is.
    """

    model_config = SettingsConfigDict(
        env_prefix="VIDEO_DIGEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Text-generation provider.
    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API key used for summary generation and translation.",
    )
    anthropic_model: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model identifier sent with every generation and translation call.",
    )
    anthropic_max_output_tokens: int = Field(
        default=4096,
        ge=256,
        description="Output token budget per generation or translation call.",
    )

    # Cost accounting.
    cost_input_usd_per_million: float = Field(
        default=3.0,
        ge=0.0,
        description="Provider price for one million regular input tokens (USD).",
    )
    cost_output_usd_per_million: float = Field(
        default=15.0,
        ge=0.0,
        description="Provider price for one million output tokens (USD).",
    )
    cost_cache_read_multiplier: float = Field(
        default=0.1,
        ge=0.0,
        description="Fraction of the input price charged for prompt-cache reads.",
    )
    cost_cache_creation_multiplier: float = Field(
        default=1.0,
        ge=0.0,
        description="Fraction of the input price charged for prompt-cache writes.",
    )

    # Generation pipeline.
    canonical_language: str = Field(
        default="en",
        description="Language summaries are generated in; other languages are served as translations.",
    )
    transcript_max_chars: int = Field(
        default=50_000,
        ge=1_000,
        description="Transcript characters forwarded to the provider; the rest is truncated.",
    )
    generation_timeout_floor_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Smallest provider deadline, covering provider cold-start latency.",
    )
    generation_timeout_ceiling_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Largest provider deadline, bounding how long a worker can stay pinned.",
    )
    generation_max_workers: int = Field(
        default=8,
        ge=1,
        le=128,
        description="Worker threads that own in-flight generations and translations.",
    )
    summary_cache_ttl_seconds: int | None = Field(
        default=None,
        ge=1,
        description=(
            "Age after which a cached summary is regenerated on the next request. "
            "Unset keeps cached summaries forever."
        ),
    )

    # Transcript sources.
    captions_languages: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("en",),
        description="Preferred caption languages, tried in order before any other track.",
    )
    speech_to_text_enabled: bool = Field(
        default=True,
        description="Fall back to speech-to-text when a video has no captions.",
    )
    supadata_api_key: str | None = Field(
        default=None,
        description="Supadata API key for the speech-to-text fallback.",
    )
    supadata_base_url: str = Field(
        default="https://api.supadata.ai/v1",
        description="Supadata API base URL.",
    )
    supadata_transcript_mode: str = Field(
        default="generate",
        description="Supadata transcript mode; `generate` forces speech-to-text.",
    )
    supadata_http_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for Supadata requests.",
    )
    supadata_poll_interval_seconds: float = Field(
        default=2.0,
        description="Polling interval for async Supadata transcript jobs.",
    )
    supadata_poll_max_attempts: int = Field(
        default=90,
        description="Maximum polling attempts for async Supadata transcript jobs.",
    )
    metadata_http_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for oEmbed video metadata lookups.",
    )

    # Rate limits, per caller identity.
    generation_rate_limit_max_requests: int = Field(
        default=10,
        ge=1,
        le=10_000,
        description="Summary requests allowed per caller in each generation window.",
    )
    generation_rate_limit_window_seconds: int = Field(
        default=3600,
        ge=1,
        le=86_400,
        description="Generation rate-limit window size in seconds.",
    )
    translation_rate_limit_max_requests: int = Field(
        default=30,
        ge=1,
        le=10_000,
        description="Translation requests allowed per caller in each translation window.",
    )
    translation_rate_limit_window_seconds: int = Field(
        default=3600,
        ge=1,
        le=86_400,
        description="Translation rate-limit window size in seconds.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VIDEO_DIGEST_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("VIDEO_DIGEST_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("supadata_base_url", mode="before")
    @classmethod
    def _normalize_supadata_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VIDEO_DIGEST_SUPADATA_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("VIDEO_DIGEST_SUPADATA_BASE_URL must not be empty.")
        return normalized

    @field_validator("canonical_language", mode="before")
    @classmethod
    def _normalize_canonical_language(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("VIDEO_DIGEST_CANONICAL_LANGUAGE must be a non-empty string.")
        return value.strip().lower()

    @field_validator("captions_languages", mode="before")
    @classmethod
    def _split_captions_languages(cls, value: Any) -> Any:
        if isinstance(value, str):
            languages = [part.strip().lower() for part in value.split(",") if part.strip()]
            return tuple(languages) or ("en",)
        return value

    @field_validator("generation_timeout_ceiling_seconds")
    @classmethod
    def _ceiling_not_below_floor(cls, value: float, info: ValidationInfo) -> float:
        floor = info.data.get("generation_timeout_floor_seconds")
        if isinstance(floor, float) and value < floor:
            raise ValueError(
                "VIDEO_DIGEST_GENERATION_TIMEOUT_CEILING_SECONDS must not be below the floor."
            )
        return value

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("anthropic_api_key", "supadata_api_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_provider_configuration(
    *,
    anthropic_api_key: str | None,
    speech_to_text_enabled: bool,
    supadata_api_key: str | None,
) -> None:
    errors: list[str] = []

    if anthropic_api_key is None:
        errors.append("VIDEO_DIGEST_ANTHROPIC_API_KEY is required for summary generation.")
    if speech_to_text_enabled and supadata_api_key is None:
        errors.append(
            "VIDEO_DIGEST_SUPADATA_API_KEY is required while the speech-to-text fallback "
            "is enabled (set VIDEO_DIGEST_SPEECH_TO_TEXT_ENABLED=0 to disable it)."
        )

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid provider configuration:\n{bullets}")


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(*, validate_provider_secrets: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_provider_secrets:
        _validate_provider_configuration(
            anthropic_api_key=settings.anthropic_api_key,
            speech_to_text_enabled=settings.speech_to_text_enabled,
            supadata_api_key=settings.supadata_api_key,
        )

    return settings
