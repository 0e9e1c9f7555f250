"""Pair relay configuration.

Settings come from a single YAML file, ``pairrelay.settings.yaml`` by default.
The ``PAIRRELAY_SETTINGS`` environment variable points at another file and
``PORT`` overrides the listening port.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("pairrelay.settings.yaml")
SETTINGS_ENV_VAR = "PAIRRELAY_SETTINGS"
PORT_ENV_VAR = "PORT"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.lower() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class RelaySettings(BaseModel):
    """Limits applied to every pair."""
    history_limit: int = Field(default=500, ge=1)
    replay_limit:  int = Field(default=100, ge=1)
    send_timeout:  float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def _replay_within_history(self) -> "RelaySettings":
        if self.replay_limit > self.history_limit:
            raise ValueError("relay.replay_limit cannot exceed relay.history_limit")
        return self


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    relay:   RelaySettings   = Field(default_factory=RelaySettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML and apply environment overrides."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    data = _load_yaml(Path(settings_path))

    port = os.environ.get(PORT_ENV_VAR)
    if port:
        data.setdefault("server", {})["port"] = port

    settings = AppSettings(**data)
    logger.info(
        "Settings loaded (server=%s:%s, history_limit=%d, replay_limit=%d)",
        settings.server.host,
        settings.server.port,
        settings.relay.history_limit,
        settings.relay.replay_limit,
    )
    return settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    return load_config()


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads them."""
    get_config.cache_clear()
