"""
config/settings.py — clawchat Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - GatewayConfig rejects non-WebSocket URLs and non-positive timings
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a human-readable list of every problem found
  - load_settings() respects the CLAWCHAT_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_WS_SCHEMES = ("ws://", "wss://")

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1"})


def _is_ws_url(url: str) -> bool:
    return url.lower().startswith(_WS_SCHEMES)


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class GatewayConfig(BaseModel):
    local_url: str = "ws://127.0.0.1:18789"
    remote_url: str = ""
    handshake_delay_seconds: float = 0.75
    open_timeout_seconds: float = 15.0
    session_key: str = "main"
    history_limit: int = 100

    @field_validator("local_url")
    @classmethod
    def _ws_local_url(cls, v: str) -> str:
        if not _is_ws_url(v):
            raise ValueError(f"gateway.local_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("remote_url")
    @classmethod
    def _ws_remote_url(cls, v: str) -> str:
        if v and not _is_ws_url(v):
            raise ValueError(f"gateway.remote_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("handshake_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("gateway.handshake_delay_seconds must be >= 0")
        return v

    @field_validator("open_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("gateway.open_timeout_seconds must be > 0")
        return v

    @field_validator("history_limit")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway.history_limit must be >= 1")
        return v


class ClientConfig(BaseModel):
    """Client descriptor sent with every handshake."""
    id: str = "webchat-ui"
    version: str = "0.1.0"
    platform: str = "web"
    mode: str = "webchat"


class ReconnectConfig(BaseModel):
    """Exponential backoff for unexpected connection drops."""
    max_attempts: int = 5
    base_delay_seconds: float = 2.0

    @field_validator("max_attempts")
    @classmethod
    def _non_negative_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("reconnect.max_attempts must be >= 0")
        return v

    @field_validator("base_delay_seconds")
    @classmethod
    def _positive_delay(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("reconnect.base_delay_seconds must be > 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    clawchat runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets / overrides from .env ---------------------------------------
    openclaw_token: Optional[str] = Field(default=None, alias="OPENCLAW_TOKEN")
    gateway_url: Optional[str] = Field(default=None, alias="OPENCLAW_GATEWAY_URL")
    remote_gateway_url: Optional[str] = Field(default=None, alias="OPENCLAW_REMOTE_GATEWAY_URL")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("openclaw_token", "gateway_url", "remote_gateway_url", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Optional[str]:
        if v in (None, "", "null"):
            return None
        return v

    @field_validator("gateway", mode="before")
    @classmethod
    def _coerce_gateway(cls, v: Any) -> Any:
        return GatewayConfig(**v) if isinstance(v, dict) else v

    @field_validator("client", mode="before")
    @classmethod
    def _coerce_client(cls, v: Any) -> Any:
        return ClientConfig(**v) if isinstance(v, dict) else v

    @field_validator("reconnect", mode="before")
    @classmethod
    def _coerce_reconnect(cls, v: Any) -> Any:
        return ReconnectConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def local_gateway_url(self) -> str:
        return self.gateway_url or self.gateway.local_url

    @property
    def remote_url(self) -> str:
        return self.remote_gateway_url or self.gateway.remote_url

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_max_bytes(self) -> int:
        return self.logging.max_file_size_mb * 1024 * 1024

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors in config.yaml at
        parse time; this catches values that arrive through the environment
        and combinations no single field can see.
        """
        errors: list[str] = []

        if self.gateway_url and not _is_ws_url(self.gateway_url):
            errors.append(
                f"OPENCLAW_GATEWAY_URL '{self.gateway_url}' must start with "
                f"ws:// or wss://."
            )

        if self.remote_gateway_url and not _is_ws_url(self.remote_gateway_url):
            errors.append(
                f"OPENCLAW_REMOTE_GATEWAY_URL '{self.remote_gateway_url}' must "
                f"start with ws:// or wss://."
            )

        if self.remote_url.lower().startswith("ws://") and not self.openclaw_token:
            errors.append(
                "A plain ws:// remote gateway is configured without "
                "OPENCLAW_TOKEN. Use wss:// or set a token in your .env file."
            )

        if self.gateway.handshake_delay_seconds >= self.gateway.open_timeout_seconds:
            errors.append(
                "gateway.handshake_delay_seconds must be shorter than "
                "gateway.open_timeout_seconds."
            )

        if not self.client.id.strip():
            errors.append("client.id must not be empty.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nclawchat startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


def resolve_gateway_url(settings: Settings, host: Optional[str] = None) -> str:
    """
    Pick the gateway endpoint for a caller on `host`.

    Loopback hosts (or no host at all) talk to the local gateway; anything
    else uses the remote URL, falling back to local when none is configured.
    """
    if host is None or host.lower() in LOOPBACK_HOSTS:
        return settings.local_gateway_url
    return settings.remote_url or settings.local_gateway_url


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"gateway", "client", "reconnect", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. CLAWCHAT_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("CLAWCHAT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the cached Settings, loading from the default path on first use.
    Guarded by _singleton_lock against concurrent first loads.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            yaml_data = _load_yaml(_resolve_config_path(None))
            _singleton = Settings(
                **{k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
            )
    return _singleton
