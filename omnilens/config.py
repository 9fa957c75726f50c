"""
Configuration management for capture libraries.

The configuration is stored as a TOML file in the store directory.
It specifies how captures are analyzed and how the offline queue is drained.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# tomli_w for writing TOML (tomllib is read-only)
import tomli_w


CONFIG_FILENAME = "omnilens.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIRNAME = ".omnilens"
DEFAULT_ENDPOINT = "https://example.com/analyze"

ANALYSIS_MODES = ("live", "demo")


@dataclass
class AnalysisConfig:
    """How captures are sent for enrichment."""
    mode: str = "live"
    endpoint: str = DEFAULT_ENDPOINT
    timeout: float = 30.0


@dataclass
class ReconcileConfig:
    """How the offline queue is drained."""
    interval: float = 60.0
    workers: int = 4
    max_attempts: int = 0  # 0 = retry forever
    stale_claim_seconds: int = 600


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    default_collection: str = "My Library"

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite database holding items, collections and queue."""
        return self.path / "omnilens.db"

    @property
    def captures_path(self) -> Path:
        """Managed storage directory for staged images."""
        return self.path / "captures"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """
    Resolve the store directory.

    Priority:
    1. OMNILENS_STORE_PATH environment variable
    2. ~/.omnilens
    """
    env_path = os.environ.get("OMNILENS_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIRNAME


def _apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Environment variables win over the file for the analysis settings."""
    endpoint = os.environ.get("OMNILENS_ANALYSIS_ENDPOINT")
    if endpoint:
        config.analysis.endpoint = endpoint.strip()
    mode = os.environ.get("OMNILENS_ANALYSIS_MODE")
    if mode:
        config.analysis.mode = mode.strip().lower()
    _validate(config)
    return config


def _validate(config: StoreConfig) -> None:
    if config.analysis.mode not in ANALYSIS_MODES:
        raise ValueError(
            f"Unknown analysis mode {config.analysis.mode!r} "
            f"(expected one of: {', '.join(ANALYSIS_MODES)})"
        )
    if config.analysis.timeout <= 0:
        raise ValueError("analysis.timeout must be positive")
    if config.reconcile.workers < 1:
        raise ValueError("reconcile.workers must be at least 1")
    if config.reconcile.max_attempts < 0:
        raise ValueError("reconcile.max_attempts must be >= 0")
    if not config.default_collection.strip():
        raise ValueError("library.default_collection must not be empty")


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with defaults."""
    return StoreConfig(path=store_path)


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

    analysis = data.get("analysis", {})
    reconcile = data.get("reconcile", {})
    library = data.get("library", {})
    defaults = ReconcileConfig()

    try:
        config = StoreConfig(
            path=store_path,
            version=version,
            created=data.get("store", {}).get("created", ""),
            analysis=AnalysisConfig(
                mode=str(analysis.get("mode", "live")).lower(),
                endpoint=str(analysis.get("endpoint", DEFAULT_ENDPOINT)),
                timeout=float(analysis.get("timeout", 30.0)),
            ),
            reconcile=ReconcileConfig(
                interval=float(reconcile.get("interval", defaults.interval)),
                workers=int(reconcile.get("workers", defaults.workers)),
                max_attempts=int(reconcile.get("max_attempts", defaults.max_attempts)),
                stale_claim_seconds=int(
                    reconcile.get("stale_claim_seconds", defaults.stale_claim_seconds)
                ),
            ),
            default_collection=str(library.get("default_collection", "My Library")),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config {config_path}: {e}") from e

    _validate(config)
    return config


def config_to_dict(config: StoreConfig) -> dict[str, Any]:
    """TOML structure for a config."""
    return {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "analysis": {
            "mode": config.analysis.mode,
            "endpoint": config.analysis.endpoint,
            "timeout": config.analysis.timeout,
        },
        "reconcile": {
            "interval": config.reconcile.interval,
            "workers": config.reconcile.workers,
            "max_attempts": config.reconcile.max_attempts,
            "stale_claim_seconds": config.reconcile.stale_claim_seconds,
        },
        "library": {
            "default_collection": config.default_collection,
        },
    }


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    with open(config.config_path, "wb") as f:
        tomli_w.dump(config_to_dict(config), f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    Environment overrides are applied to the returned config but never
    written back to the file.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
    return _apply_env_overrides(config)
