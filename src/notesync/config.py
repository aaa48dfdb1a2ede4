"""Configuration management for notesync."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".notesync"
_HOME_ENV = "NOTESYNC_HOME"
_CONFIG_FILE = "config.toml"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for notesync runtime files (~/.notesync/)."""
    override = os.environ.get(_HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Where the shared notes server lives."""

    base_url: str = Field(default="https://sharednotes.goto.ucsd.edu", description="Notes server base URL")
    timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP request timeout")


class SyncConfig(BaseModel):
    """Settings that control polling and write-through behaviour."""

    poll_interval_ms: int = Field(default=3000, gt=0, description="Milliseconds between remote polls")
    fetch_timeout_seconds: float = Field(default=10.0, gt=0, description="Upper bound on a single fetch")
    max_pollers: int | None = Field(
        default=None,
        ge=1,
        description="Evict the least recently used poller beyond this many keys (unbounded when unset)",
    )
    write_drain_seconds: float = Field(default=5.0, ge=0, description="How long close() waits for pending PUTs")

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000


class StorageConfig(BaseModel):
    """Local note database settings."""

    db_file: str = Field(default="notes.db", description="SQLite file, relative to the base directory")


class LoggingConfig(BaseModel):
    """Log level and rotation for the files under ``logs/``."""

    log_level: str = Field(default="info", description="Logging level")
    max_file_mb: int = Field(default=10, ge=1, description="Rotate a log file once it reaches this size")
    backup_count: int = Field(default=5, ge=0, description="Rotated files to keep per log")
    sync_log: bool = Field(default=True, description="Write sync engine events to sync.log as JSON")

    @property
    def max_bytes(self) -> int:
        return self.max_file_mb * 1024 * 1024

    @property
    def level(self) -> int:
        """Numeric level; unknown names fall back to INFO."""
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        path = Path(self.storage.db_file).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string.

    Only handles tables of scalar values.  Unset optional keys are omitted,
    since TOML has no null.
    """
    lines: list[str] = []
    sections = [
        ("server", config.server),
        ("sync", config.sync),
        ("storage", config.storage),
        ("logging", config.logging),
    ]
    for section_name, section_model in sections:
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            if value is None:
                continue
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> Path:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
    return path
