"""roomdeck application configuration.

Loads settings from a YAML file:
  * roomdeck.settings.yaml: non-secret configuration
    (path overridable through the ROOMDECK_SETTINGS environment variable)

The session core has a single tunable, the maximum number of concurrently
open rooms. It is read once at startup. A persisted client preference
(``preferences.maxRoomsOpen``) takes precedence over ``rooms.max_open_rooms``
when it holds a positive integer.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomdeck.settings.yaml")
SETTINGS_ENV_VAR = "ROOMDECK_SETTINGS"

DEFAULT_MAX_OPEN_ROOMS = 5


def _settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    return Path(override) if override else SETTINGS_FILE


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _positive_int(value: Any) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:         str  = "0.0.0.0"
    port:         int  = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class RoomSettings(BaseModel):
    max_open_rooms: int = DEFAULT_MAX_OPEN_ROOMS

    @field_validator("max_open_rooms", mode="before")
    @classmethod
    def _fallback_to_default(cls, value: Any) -> int:
        parsed = _positive_int(value)
        if parsed is None:
            logger.warning(
                "Invalid rooms.max_open_rooms %r; using default %d", value, DEFAULT_MAX_OPEN_ROOMS
            )
            return DEFAULT_MAX_OPEN_ROOMS
        return parsed


class PreferenceSettings(BaseModel):
    """Persisted client preferences (camelCase keys as stored by clients)."""
    maxRoomsOpen: Optional[Any] = None


class AppSettings(BaseModel):
    server:      ServerSettings     = Field(default_factory=ServerSettings)
    logging:     LoggingSettings    = Field(default_factory=LoggingSettings)
    rooms:       RoomSettings       = Field(default_factory=RoomSettings)
    preferences: PreferenceSettings = Field(default_factory=PreferenceSettings)

    @property
    def max_open_rooms(self) -> int:
        """Effective capacity: the persisted preference wins when valid."""
        preferred = _positive_int(self.preferences.maxRoomsOpen)
        return preferred if preferred is not None else self.rooms.max_open_rooms


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load settings from YAML into an *AppSettings* object."""
    settings_data = _load_yaml(path or _settings_path())
    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, max_open_rooms=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.max_open_rooms,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget cached settings (used by tests)."""
    global _config
    _config = None
