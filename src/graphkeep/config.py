"""
Configuration for the persistence runtime.

Lives at ``<home>/config/config.yaml``. Every timing constant the
services use is a field here, so tests and deployments can tune them
without touching code.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import GRAPHKEEP_HOME

logger = logging.getLogger("graphkeep.config")

CONFIG_RELPATH = Path("config") / "config.yaml"

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS


class SaveConfig(BaseModel):
    """Debounce settings for the save coordinator."""

    debounce_ms: int = 500


class AuthConfig(BaseModel):
    """Endpoints and timings for the credential lifecycle."""

    api_base_url: str = "https://api.github.com"
    oauth_base_url: str = "http://localhost:3002/api/github"
    request_timeout_seconds: float = 10.0
    refresh_buffer_ms: int = 5 * MINUTE_MS
    health_check_interval_seconds: float = 300.0
    artificial_expiry_ms: int = 365 * DAY_MS
    installation_stale_after_ms: int = 45 * MINUTE_MS
    auto_connect: bool = True


class RemotePolicyConfig(BaseModel):
    """Thresholds for deciding when the remote engine commits."""

    enabled: bool = True
    idle_commit_seconds: float = 5.0
    max_pending_seconds: float = 60.0
    min_commit_interval_seconds: float = 2.0


class GraphkeepConfig(BaseModel):
    """Complete configuration for one graphkeep home."""

    storage_namespace: str = "graphkeep"
    save: SaveConfig = Field(default_factory=SaveConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    remote_policy: RemotePolicyConfig = Field(default_factory=RemotePolicyConfig)


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the graphkeep home directory, defaulting to GRAPHKEEP_HOME."""
    return (home or Path(GRAPHKEEP_HOME)).expanduser()


def load_config(home: Optional[Path] = None) -> GraphkeepConfig:
    """Load configuration from disk.

    Args:
        home: graphkeep home directory.

    Returns:
        GraphkeepConfig loaded from config.yaml, or defaults.
    """
    config_file = resolve_home(home) / CONFIG_RELPATH
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return GraphkeepConfig(**data)
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load config: %s, using defaults", exc)
    return GraphkeepConfig()


def save_config(config: GraphkeepConfig, home: Optional[Path] = None) -> Path:
    """Persist configuration to disk.

    Returns:
        Path of the written config file.
    """
    config_file = resolve_home(home) / CONFIG_RELPATH
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file
