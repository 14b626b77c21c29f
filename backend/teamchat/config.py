"""teamchat application configuration.

Loads settings from two YAML files:
  * teamchat.settings.yaml  : non-secret configuration
  * teamchat.secrets.yaml   : secrets (never committed)

Both are looked up in the working directory first, then in ``./config``.
The same ``AppConfig`` drives the relay (server, history, JWT secret) and
the client core (relay URL, reconnect backoff, typing timers).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILENAME = "teamchat.settings.yaml"
SECRETS_FILENAME  = "teamchat.secrets.yaml"

_SEARCH_DIRS = (Path("."), Path("config"))


def _find_file(filename: str) -> Optional[Path]:
    for directory in _SEARCH_DIRS:
        candidate = directory / filename
        if candidate.exists():
            return candidate
    return None


def _load_yaml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class ClientSettings(BaseModel):
    """Relay endpoints and reconnection policy for the messaging client."""
    relay_url:              str   = "ws://localhost:5000"
    api_url:                str   = "http://localhost:5000"
    connect_timeout_ms:     int   = 20000
    reconnect_delay_ms:     int   = 1000
    max_reconnect_delay_ms: int   = 5000
    randomization_factor:   float = 0.5
    max_reconnect_attempts: int   = 0  # 0 means unlimited retries

    @field_validator("randomization_factor")
    @classmethod
    def _factor_in_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("randomization_factor must be between 0 and 1")
        return value


class PresenceSettings(BaseModel):
    typing_idle_ms:       int = 1000
    remote_typing_ttl_ms: int = 5000  # 0 keeps remote entries until typing-stop


class HistorySettings(BaseModel):
    page_size:             int = 50
    max_messages_per_room: int = 5000


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    client:   ClientSettings   = Field(default_factory=ClientSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    history:  HistorySettings  = Field(default_factory=HistorySettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    When *secrets_path* is not given, the secrets file is looked up next to
    the settings file before falling back to the default search directories.
    """
    if settings_path is None:
        settings_path = _find_file(SETTINGS_FILENAME)
    if secrets_path is None and settings_path is not None:
        sibling = Path(settings_path).parent / SECRETS_FILENAME
        secrets_path = sibling if sibling.exists() else None
    if secrets_path is None:
        secrets_path = _find_file(SECRETS_FILENAME)

    settings_data = _load_yaml(Path(settings_path) if settings_path else None)
    secrets_data  = _load_yaml(Path(secrets_path) if secrets_path else None)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, relay_url=%s, typing_idle_ms=%s)",
        config.server.host,
        config.server.port,
        config.client.relay_url,
        config.presence.typing_idle_ms,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached configuration (used by tests)."""
    global _config
    _config = None
