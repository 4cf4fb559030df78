"""
Configuration management for contextlife stores.

The configuration is stored as a TOML file in the store directory. It
holds the history plan (which bounds the window callers pass to
history queries) and the recording and transcription settings consumed
by the collaborators that feed the store.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import tomli_w

CONFIG_FILENAME = "contextlife.toml"
CONFIG_VERSION = 1
DB_FILENAME = "records.db"

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLANS = (PLAN_FREE, PLAN_PRO)

DEFAULT_FREE_DAYS = 7
DEFAULT_SEGMENT_SECONDS = 900  # 15-minute recording units
DEFAULT_BATCH_SIZE = 10


def get_default_store_path() -> Path:
    """Store directory: CONTEXTLIFE_STORE_PATH, else ~/.contextlife."""
    env = os.environ.get("CONTEXTLIFE_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".contextlife"


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # [history]
    plan: str = PLAN_FREE
    free_days: int = DEFAULT_FREE_DAYS

    # [recording]
    segment_seconds: int = DEFAULT_SEGMENT_SECONDS
    location_enabled: bool = True

    # [transcription]
    batch_size: int = DEFAULT_BATCH_SIZE

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the SQLite record database."""
        return self.path / DB_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    @property
    def history_unlimited(self) -> bool:
        return self.plan == PLAN_PRO

    def history_window(self, now: datetime) -> tuple[Optional[datetime], datetime]:
        """
        Bounds to pass to history queries for this plan.

        Returns (start, end); start is None when history is unlimited.
        The store itself applies no retention limit.
        """
        if self.history_unlimited:
            return None, now
        return now - timedelta(days=self.free_days - 1), now


def _validate(config: StoreConfig) -> None:
    if config.plan not in PLANS:
        raise ValueError(f"Unknown plan {config.plan!r} (expected one of {', '.join(PLANS)})")
    if config.free_days < 1:
        raise ValueError(f"history.free_days must be at least 1: {config.free_days}")
    if config.segment_seconds <= 0:
        raise ValueError(f"recording.segment_seconds must be positive: {config.segment_seconds}")
    if config.batch_size < 1:
        raise ValueError(f"transcription.batch_size must be at least 1: {config.batch_size}")


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    history = data.get("history", {})
    recording = data.get("recording", {})
    transcription = data.get("transcription", {})

    config = StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        plan=history.get("plan", PLAN_FREE),
        free_days=history.get("free_days", DEFAULT_FREE_DAYS),
        segment_seconds=recording.get("segment_seconds", DEFAULT_SEGMENT_SECONDS),
        location_enabled=recording.get("location_enabled", True),
        batch_size=transcription.get("batch_size", DEFAULT_BATCH_SIZE),
    )
    _validate(config)
    return config


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    _validate(config)
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "history": {
            "plan": config.plan,
            "free_days": config.free_days,
        },
        "recording": {
            "segment_seconds": config.segment_seconds,
            "location_enabled": config.location_enabled,
        },
        "transcription": {
            "batch_size": config.batch_size,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
