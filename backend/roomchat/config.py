"""Roomchat application configuration.

Loads settings from two YAML files:
  * roomchat.settings.yaml: non-secret configuration
  * roomchat.secrets.yaml: secrets (never committed)

Either path can be overridden with ROOMCHAT_SETTINGS_FILE /
ROOMCHAT_SECRETS_FILE.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path(os.environ.get("ROOMCHAT_SETTINGS_FILE", "roomchat.settings.yaml"))
SECRETS_FILE  = Path(os.environ.get("ROOMCHAT_SECRETS_FILE", "roomchat.secrets.yaml"))

PUBLISHED_TABLES = [
    "profiles",
    "messages",
    "rooms",
    "room_members",
    "message_reads",
    "typing_indicators",
    "direct_conversations",
    "direct_participants",
    "direct_messages",
]


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
    """Signing secret shared with the identity provider.

    There is no default: tokens are only verified once roomchat.secrets.yaml
    provides ``secret_key``.
    """
    secret_key: Optional[str] = None
    algorithm:  str = "HS256"

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.secret_key.strip())


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class DatabaseSettings(BaseModel):
    path:               str       = "roomchat.duckdb"
    published_tables:   List[str] = Field(default_factory=lambda: list(PUBLISHED_TABLES))


class AuthSettings(BaseModel):
    """Claims expected on access tokens minted by the identity provider."""
    audience:              Optional[str] = "authenticated"
    issuer:                Optional[str] = None
    token_expire_minutes:  int           = 60


class RoomSettings(BaseModel):
    default_room_name:        str = "General"
    default_room_description: str = "General chat room"
    max_message_length:       int = 4000


class RealtimeSettings(BaseModel):
    typing_ttl_seconds:                 int = 10
    max_subscriptions_per_connection:   int = 20


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    rooms:    RoomSettings     = Field(default_factory=RoomSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Path = SETTINGS_FILE,
    secrets_path: Path = SECRETS_FILE,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(Path(settings_path))
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, published=%d tables)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        len(app_settings.database.published_tables),
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: Optional[AppSettings]) -> None:
    """Replace the cached settings (None forces a reload on next access)."""
    global _config
    _config = config
