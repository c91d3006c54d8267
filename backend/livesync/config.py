"""livesync configuration.

Loads settings from two YAML files:
  * livesync.settings.yaml  - non-secret configuration
  * livesync.secrets.yaml   - credentials for the backend (never committed)

Reconnect backoff, connect timeout and typing TTL are policy, so they live
here rather than in the realtime modules.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("livesync.settings.yaml")
SECRETS_FILE  = Path("livesync.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class BackendSecrets(BaseModel):
    api_key:      Optional[str] = None
    access_token: Optional[str] = None
    # Identity the access token belongs to
    user_id:      Optional[str] = None
    username:     Optional[str] = None


class Secrets(BaseModel):
    backend: BackendSecrets = Field(default_factory=BackendSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class BackendSettings(BaseModel):
    """REST endpoint of the data backend (writes, profiles, conversations)."""
    rest_url:        str   = "http://localhost:54321/rest/v1"
    timeout_seconds: float = 10.0


class ReconnectSettings(BaseModel):
    """Exponential backoff: delay = min(base * 2**(attempt-1), max)."""
    base_delay_ms: int = 1000
    max_delay_ms:  int = 30000
    max_attempts:  int = 5

    @field_validator("base_delay_ms", "max_delay_ms", "max_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @model_validator(mode="after")
    def _cap_above_base(self) -> "ReconnectSettings":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must not be lower than base_delay_ms")
        return self


class RealtimeSettings(BaseModel):
    url:                     str   = "ws://localhost:54321/realtime/v1/websocket"
    connect_timeout_seconds: float = 10.0
    max_channels:            int   = 100
    relevance_cache_size:    int   = 1000
    reconnect:               ReconnectSettings = Field(default_factory=ReconnectSettings)

    @field_validator("connect_timeout_seconds")
    @classmethod
    def _timeout_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("connect_timeout_seconds must be greater than zero")
        return value

    @field_validator("max_channels", "relevance_cache_size")
    @classmethod
    def _limit_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


class TypingSettings(BaseModel):
    ttl_seconds: float = 3.0

    @field_validator("ttl_seconds")
    @classmethod
    def _ttl_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("ttl_seconds must be greater than zero")
        return value


class ReconciliationSettings(BaseModel):
    # An echoed INSERT counts as the local submit when it lands this close to it.
    match_window_seconds: float = 30.0
    staged_event_limit:   int   = 1000
    notification_limit:   int   = 20

    @field_validator("staged_event_limit", "notification_limit")
    @classmethod
    def _limit_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


class AppConfig(BaseModel):
    server:         ServerSettings         = Field(default_factory=ServerSettings)
    logging:        LoggingSettings        = Field(default_factory=LoggingSettings)
    backend:        BackendSettings        = Field(default_factory=BackendSettings)
    realtime:       RealtimeSettings       = Field(default_factory=RealtimeSettings)
    typing:         TypingSettings         = Field(default_factory=TypingSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    secrets:        Secrets                = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (realtime=%s, backend=%s, max_attempts=%s)",
        config.realtime.url,
        config.backend.rest_url,
        config.realtime.reconnect.max_attempts,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (tests, reload)."""
    global _config
    _config = None
