"""Relay application configuration.

Loads settings from two YAML files:
  * relay.settings.yaml: non-secret configuration
  * relay.secrets.yaml: secrets (never committed)

Both files are optional; every field has a default so the relay starts
with an in-memory store and a development JWT secret. The file locations
can be overridden with ``RELAY_SETTINGS_FILE`` / ``RELAY_SECRETS_FILE``
and the JWT secret with ``RELAY_JWT_SECRET``.
"""
from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")
SECRETS_FILE  = Path("relay.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class DuplicatePolicy(str, Enum):
    """What happens when a subject opens a second connection.

    Attributes:
        NEWEST_WINS: The new connection replaces the old one, which is closed.
        REJECT_NEW: The new connection is refused while the old one is live.
    """
    NEWEST_WINS = "newest_wins"
    REJECT_NEW = "reject_new"


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(BaseModel):
    level: str = "info"


class AuthSettings(BaseModel):
    algorithm:                 str           = "HS256"
    issuer:                    Optional[str] = None
    handshake_timeout_seconds: float         = 10.0

    @field_validator("handshake_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("handshake_timeout_seconds must be greater than zero")
        return value


class HeartbeatSettings(BaseModel):
    enabled:          bool  = True
    interval_seconds: float = 30.0

    @field_validator("interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        return value


class SessionSettings(BaseModel):
    duplicate_policy:   DuplicatePolicy = DuplicatePolicy.NEWEST_WINS
    max_message_length: int             = 4000

    @field_validator("max_message_length")
    @classmethod
    def _positive_length(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_message_length must be greater than zero")
        return value


class StoreSettings(BaseModel):
    db_path: str = ":memory:"


class AppConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    auth:      AuthSettings      = Field(default_factory=AuthSettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    session:   SessionSettings   = Field(default_factory=SessionSettings)
    store:     StoreSettings     = Field(default_factory=StoreSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_store_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative DuckDB path against the settings file directory."""
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    return str(settings_path.resolve().parent / db_path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(
        settings_path or os.environ.get("RELAY_SETTINGS_FILE", SETTINGS_FILE)
    )
    secrets_path = Path(
        secrets_path or os.environ.get("RELAY_SECRETS_FILE", SECRETS_FILE)
    )

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    env_secret = os.environ.get("RELAY_JWT_SECRET")
    if env_secret:
        settings_data["secrets"].setdefault("jwt", {})["secret_key"] = env_secret

    config = AppConfig(**settings_data)
    config.store.db_path = _resolve_store_path(config.store.db_path, settings_path)

    logger.info(
        "Config loaded (server=%s:%s, heartbeat=%ss, duplicate_policy=%s, store=%s)",
        config.server.host,
        config.server.port,
        config.heartbeat.interval_seconds,
        config.session.duplicate_policy.value,
        config.store.db_path,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (used by tests)."""
    global _config
    _config = None
