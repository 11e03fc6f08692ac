"""Socialite application configuration.

Loads settings from two YAML files:
  * socialite.settings.yaml  - non-secret configuration
  * socialite.secrets.yaml   - secrets (never committed)

Use ``get_config()`` everywhere at runtime; tests build an ``AppConfig``
directly or call ``load_config()`` with explicit paths.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("socialite.settings.yaml")
SECRETS_FILE  = Path("socialite.secrets.yaml")


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


class MediaSecrets(BaseModel):
    api_key:    Optional[str] = None
    api_secret: Optional[str] = None


class Secrets(BaseModel):
    jwt:   JWTSecrets   = Field(default_factory=JWTSecrets)
    media: MediaSecrets = Field(default_factory=MediaSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class ChatSettings(BaseModel):
    """Real-time chat tuning knobs."""
    heartbeat_timeout_seconds:        float = 60.0
    heartbeat_sweep_interval_seconds: float = 15.0
    outbound_queue_size:              int   = 256
    storage_timeout_seconds:          float = 5.0
    auth_timeout_seconds:             float = 10.0
    max_text_length:                  int   = 4000


class StorageSettings(BaseModel):
    backend: Literal["duckdb", "memory"] = "duckdb"
    db_path: str                          = "socialite.duckdb"


class AuthSettings(BaseModel):
    algorithm:            str           = "HS256"
    issuer:               Optional[str] = None
    audience:             Optional[str] = None
    token_expire_minutes: int           = 60


class MediaSettings(BaseModel):
    """Cloudinary media host."""
    enabled:                bool  = False
    upload_prefix:          Optional[str] = None
    cloud_name:             str   = ""
    folder:                 str   = "img-posts"
    upload_timeout_seconds: float = 30.0
    max_file_size_mb:       int   = 10


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    media:   MediaSettings   = Field(default_factory=MediaSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Path = SETTINGS_FILE,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    The secrets file defaults to ``socialite.secrets.yaml`` next to the
    settings file. A relative ``storage.db_path`` is resolved against the
    settings file's directory.
    """
    settings_path = Path(settings_path)
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    db_path = Path(config.storage.db_path)
    if (
        config.storage.db_path != ":memory:"
        and not db_path.is_absolute()
        and settings_path.parent != Path(".")
    ):
        config.storage.db_path = str(settings_path.parent / db_path)

    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, media.enabled=%s)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        config.media.enabled,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (for testing)."""
    global _config
    _config = None
