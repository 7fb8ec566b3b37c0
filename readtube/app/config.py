from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".readtube"
STRATEGY_NAMES: tuple[str, ...] = ("captions", "remote_speech", "local_speech", "client_fallback")
WHISPER_MODEL_SIZES: frozenset[str] = frozenset(
    {"tiny", "tiny.en", "base", "base.en", "small", "small.en", "medium", "medium.en", "large", "turbo"}
)
LOG_LEVEL_NAMES: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("readtube.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "local_speech_enabled",
    "usage_enforcement_enabled",
    "cache_client_fallback_results",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{READTUBE_DATA_DIR}}/{relative_path}` when not explicitly set."


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


def _split_csv(value: Any) -> list[str]:
    if isinstance(value, str):
        raw_items: list[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        raw_items = list(value)
    else:
        raise ValueError("expected a comma separated string or a list")
    return [str(item).strip() for item in raw_items if str(item).strip()]


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `READTUBE_*` environment variables (or `.env`).
    List-valued options accept comma separated strings.
    """

    model_config = SettingsConfigDict(
        env_prefix="READTUBE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the sqlite database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("readtube.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('readtube.db'))}",
    )

    # Cascade and request budget.
    strategy_order: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(STRATEGY_NAMES),
        description="Ordered transcript strategies tried per request.",
    )
    request_timeout_seconds: float = Field(
        default=600.0,
        description="Overall ceiling for one acquisition, across all stages.",
    )
    max_duration_seconds: int = Field(
        default=3_600,
        description="Default hard ceiling on video duration for audio based strategies.",
    )
    prefer_local_max_duration_seconds: int = Field(
        default=0,
        description=(
            "Run local speech before remote speech for videos no longer than this. "
            "0 keeps the configured strategy order."
        ),
    )
    stage_workers: int = Field(
        default=8,
        description="Worker threads used to run cascade stages under a timeout.",
    )

    # Captions.
    preferred_languages: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["en", "en-US", "en-GB"],
        description="Caption languages appended after the requested language.",
    )
    caption_timeout_seconds: float = Field(
        default=45.0,
        description="Stage budget for caption retrieval, retries included.",
    )
    caption_max_attempts: int = Field(
        default=3,
        description="Attempts for caption transport failures.",
    )
    caption_backoff_base_seconds: float = Field(
        default=1.0,
        description="Base exponential backoff between caption attempts.",
    )
    caption_backoff_max_seconds: float = Field(
        default=5.0,
        description="Maximum backoff between caption attempts.",
    )

    # Audio extraction.
    audio_player_clients: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["web", "android", "ios", "tv"],
        description="yt-dlp YouTube player clients rotated when bot detection trips.",
    )
    audio_bot_retry_attempts: int = Field(
        default=3,
        description="Client identities tried before bot detection is final.",
    )
    audio_bot_backoff_seconds: float = Field(
        default=2.0,
        description="Base backoff before retrying with another client identity.",
    )
    audio_socket_timeout_seconds: float = Field(
        default=20.0,
        description="Socket timeout for manifest probing and audio streaming.",
    )
    audio_chunk_bytes: int = Field(
        default=1024 * 1024,
        description="Chunk size used when streaming audio.",
    )
    audio_max_bytes: int = Field(
        default=200 * 1024 * 1024,
        description="Upper bound on buffered audio for one request.",
    )

    # Remote speech (Gladia).
    gladia_api_key: str | None = Field(
        default=None,
        description="Gladia API key. The remote speech stage is skipped without it.",
    )
    gladia_base_url: str = Field(
        default="https://api.gladia.io/v2",
        description="Gladia API base URL.",
    )
    gladia_http_timeout_seconds: float = Field(
        default=60.0,
        description="HTTP timeout for Gladia upload, submit and poll calls.",
    )
    remote_speech_timeout_seconds: float = Field(
        default=330.0,
        description="Stage budget for remote speech, upload and polling included.",
    )
    remote_poll_timeout_seconds: float = Field(
        default=300.0,
        description="Maximum time spent polling one remote job.",
    )
    remote_poll_base_interval_seconds: float = Field(
        default=3.0,
        description="Base remote poll interval before size and attempt scaling.",
    )
    remote_poll_max_interval_seconds: float = Field(
        default=10.0,
        description="Upper clamp on the remote poll interval.",
    )

    # Local speech (whisper).
    local_speech_enabled: bool = Field(
        default=True,
        description="Allow the local whisper stage when whisper and ffmpeg are installed.",
    )
    local_speech_timeout_seconds: float = Field(
        default=540.0,
        description="Stage budget for local speech, decode and inference included.",
    )
    local_max_duration_seconds: int = Field(
        default=3_600,
        description="Longest audio the local engine accepts.",
    )
    local_model_short: str = Field(
        default="tiny",
        description="Whisper model for clips shorter than local_short_threshold_seconds.",
    )
    local_model_medium: str = Field(
        default="base",
        description="Whisper model between the short and long thresholds.",
    )
    local_model_long: str = Field(
        default="tiny",
        description="Whisper model for clips longer than local_long_threshold_seconds.",
    )
    local_short_threshold_seconds: int = Field(
        default=180,
        description="Upper bound (exclusive) for the short model bucket.",
    )
    local_long_threshold_seconds: int = Field(
        default=600,
        description="Lower bound (exclusive) for the long model bucket.",
    )
    local_window_seconds: float = Field(
        default=20.0,
        description="Window length for chunked local inference.",
    )
    local_overlap_seconds: float = Field(
        default=3.0,
        description="Overlap between consecutive local inference windows.",
    )
    local_device: str | None = Field(
        default=None,
        description="Torch device for whisper. Autodetected when unset.",
    )
    ffmpeg_path: str = Field(
        default="ffmpeg",
        description="ffmpeg executable used to decode audio to PCM.",
    )
    ffmpeg_timeout_seconds: float = Field(
        default=120.0,
        description="Timeout for the ffmpeg decode step.",
    )

    # Cache and usage.
    transcript_cache_ttl_seconds: int = Field(
        default=7 * 24 * 3_600,
        description="Freshness window for cached transcripts.",
    )
    cache_client_fallback_results: bool = Field(
        default=True,
        description="Store client supplied transcripts in the shared cache.",
    )
    usage_enforcement_enabled: bool = Field(
        default=True,
        description="Reject acquisitions that exceed the caller's remaining minutes.",
    )
    usage_default_granted_minutes: int = Field(
        default=60,
        description="Minutes granted to callers that have no ledger row yet.",
    )
    api_rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Per-caller acquisition rate-limit window size in seconds.",
    )
    api_rate_limit_max_requests: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum acquisitions allowed per caller in each window.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
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
            raise ValueError("READTUBE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("READTUBE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> str:
        normalized = str(value).strip().upper() if value is not None else ""
        if normalized in LOG_LEVEL_NAMES:
            return normalized
        return "INFO"

    @field_validator("strategy_order", mode="before")
    @classmethod
    def _normalize_strategy_order(cls, value: Any) -> list[str]:
        names = [name.lower() for name in _split_csv(value)]
        unknown = [name for name in names if name not in STRATEGY_NAMES]
        if unknown:
            raise ValueError(
                "READTUBE_STRATEGY_ORDER contains unknown strategies: "
                f"{', '.join(unknown)}. Expected any of: {', '.join(STRATEGY_NAMES)}."
            )
        if not names:
            raise ValueError("READTUBE_STRATEGY_ORDER must name at least one strategy.")
        deduplicated: list[str] = []
        for name in names:
            if name not in deduplicated:
                deduplicated.append(name)
        return deduplicated

    @field_validator("preferred_languages", "audio_player_clients", mode="before")
    @classmethod
    def _normalize_lists(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("local_model_short", "local_model_medium", "local_model_long", mode="before")
    @classmethod
    def _normalize_model_size(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str):
            raise ValueError(f"READTUBE_{str(info.field_name).upper()} must be a string.")
        normalized = value.strip().lower()
        if normalized not in WHISPER_MODEL_SIZES:
            raise ValueError(
                f"READTUBE_{str(info.field_name).upper()} must be one of: "
                f"{', '.join(sorted(WHISPER_MODEL_SIZES))}."
            )
        return normalized

    @field_validator("gladia_base_url", mode="before")
    @classmethod
    def _normalize_gladia_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("READTUBE_GLADIA_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("READTUBE_GLADIA_BASE_URL must not be empty.")
        return normalized

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

    @field_validator("gladia_api_key", "local_device", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_transcription_configuration(
    settings: AppSettings,
    *,
    require_remote_credentials: bool,
) -> None:
    errors: list[str] = []

    if (
        require_remote_credentials
        and "remote_speech" in settings.strategy_order
        and settings.gladia_api_key is None
    ):
        errors.append("READTUBE_GLADIA_API_KEY is required when remote_speech is enabled.")
    if settings.local_short_threshold_seconds > settings.local_long_threshold_seconds:
        errors.append(
            "READTUBE_LOCAL_SHORT_THRESHOLD_SECONDS must not exceed "
            "READTUBE_LOCAL_LONG_THRESHOLD_SECONDS."
        )
    if settings.local_overlap_seconds >= settings.local_window_seconds:
        errors.append(
            "READTUBE_LOCAL_OVERLAP_SECONDS must be smaller than READTUBE_LOCAL_WINDOW_SECONDS."
        )

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid transcription configuration:\n{bullets}")


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


def load_settings(*, require_remote_credentials: bool = False) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    _validate_transcription_configuration(
        settings,
        require_remote_credentials=require_remote_credentials,
    )

    return settings
