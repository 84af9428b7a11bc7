"""Settings for notesbridge, read from TOML and NOTESBRIDGE_* environment variables."""

import logging
from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_NOTE_STORE = (
    Path.home() / "Library" / "Group Containers" / "group.com.apple.notes" / "NoteStore.sqlite"
)
MAX_EXPORT_JOBS = 16
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class BackendMode(str, Enum):
    """Which backend(s) the selector may use."""

    AUTO = "auto"
    DB = "db"
    AUTOMATION = "automation"


class DatabaseConfig(BaseSettings):
    """Configuration for the read-only NoteStore reader."""

    model_config = SettingsConfigDict(env_prefix="NOTESBRIDGE_DATABASE_")

    path: Path = Field(default_factory=lambda: DEFAULT_NOTE_STORE)
    # Copy NoteStore.sqlite (+ -wal/-shm) to a temp dir before reading
    snapshot: bool = False
    open_retries: int = 3
    retry_delay: float = 0.2
    # Seconds SQLite waits on a lock before reporting "database is locked"
    busy_timeout: float = 1.0

    @field_validator("path", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """Expand user home directory in the store path."""
        return Path(v).expanduser()

    @field_validator("open_retries", mode="before")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        return max(0, int(v))


class AutomationConfig(BaseSettings):
    """Configuration for the osascript automation client."""

    model_config = SettingsConfigDict(env_prefix="NOTESBRIDGE_AUTOMATION_")

    osascript_bin: str = "osascript"
    max_retries: int = 2
    retry_delay: float = 1.0
    timeout: float = 120.0
    debug_scripts: bool = False

    @field_validator("max_retries", mode="before")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        return max(0, int(v))


class ExportConfig(BaseSettings):
    """Configuration for full-corpus export."""

    model_config = SettingsConfigDict(env_prefix="NOTESBRIDGE_EXPORT_")

    out_dir: Path | None = None
    jobs: int = 4
    include_html: bool = False

    @field_validator("out_dir", mode="before")
    @classmethod
    def resolve_out_dir(cls, v: str | Path | None) -> Path | None:
        if v is None:
            return None
        return Path(v).expanduser().resolve()

    @field_validator("jobs", mode="before")
    @classmethod
    def clamp_jobs(cls, v: int) -> int:
        """Clamp the worker count to [1, MAX_EXPORT_JOBS]."""
        return min(max(1, int(v)), MAX_EXPORT_JOBS)


class GeneralConfig(BaseSettings):
    """Logging and on-disk locations."""

    model_config = SettingsConfigDict(env_prefix="NOTESBRIDGE_GENERAL_")

    log_level: str = "INFO"
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".notesbridge")
    log_file_name: str = "notesbridge.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    # Per-category level overrides, e.g. {"osascript": "WARNING"}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Where this config was loaded from; never written back
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = str(v).strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("data_dir", mode="before")
    @classmethod
    def resolve_data_dir(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class AppConfig(BaseSettings):
    """Top-level settings: backend mode, default account and per-component sections.

    Nested sections can be set from the environment with ``__``, e.g.
    ``NOTESBRIDGE_DATABASE__PATH``.
    """

    model_config = SettingsConfigDict(
        env_prefix="NOTESBRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    backend: BackendMode = BackendMode.AUTO
    account: str = "iCloud"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)

    @field_validator("backend", mode="before")
    @classmethod
    def validate_backend(cls, v: str | BackendMode) -> BackendMode:
        """Accept backend names case-insensitively."""
        if isinstance(v, BackendMode):
            return v
        try:
            return BackendMode(str(v).strip().lower())
        except ValueError as e:
            valid = ", ".join(mode.value for mode in BackendMode)
            raise ValueError(f"Backend must be one of: {valid}") from e

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Read a TOML config file; a missing file yields the defaults."""
        import tomllib

        try:
            data = tomllib.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("Config file %s not found, using defaults", config_path)
            return cls()
        return cls(**data)

    def save_to_file(self, config_path: Path) -> None:
        """Write the settings as TOML, leaving out unset values."""
        import tomli_w

        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(
            tomli_w.dumps(self.model_dump(mode="json", exclude_none=True)), encoding="utf-8"
        )
        logger.info("Configuration saved to %s", config_path)

    @property
    def default_config_path(self) -> Path:
        return self.general.data_dir / "config.toml"


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load ``config_path`` (default ``<data_dir>/config.toml``) and remember where it came from."""
    path = config_path or AppConfig().default_config_path
    config = AppConfig.load_from_file(path) if path.exists() else AppConfig()
    config.general.config_file = path
    return config
