"""
Central configuration for courier.
Uses Pydantic BaseSettings for type-safe configuration from environment variables.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_NOTIFY_CHANNEL

# Resolve .env relative to this file (courier/config.py → project root)
_ENV_FILE = Path(__file__).parent.parent / ".env"


def _load_env_file() -> None:
    """
    Load .env into os.environ, but only for keys that are currently unset
    or set to empty strings. This ensures .env values win over blank shell
    env vars (e.g. DATABASE_URL='') while still allowing explicit
    non-empty shell overrides.
    """
    if not _ENV_FILE.exists():
        return
    from dotenv import dotenv_values
    for key, value in dotenv_values(_ENV_FILE).items():
        if value and not os.environ.get(key):
            os.environ[key] = value


# Run at import time so Settings() sees the correct values
_load_env_file()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Queue store ─────────────────────────────────────────────────────────────
    store_backend: Literal["postgres", "sqlite"] = "postgres"
    database_url: str = ""
    postgres_schema: str = "wa_bridge"
    postgres_pool_min_size: int = 1
    postgres_pool_max_size: int = 5
    postgres_create_schema: bool = True
    data_dir: str = "./data"

    # ── Outbox engine ───────────────────────────────────────────────────────────
    outbox_channel: str = DEFAULT_NOTIFY_CHANNEL
    outbox_max_in_flight: int = 8  # 0 = unbounded
    outbox_shutdown_timeout: float = 30.0
    outbox_drain_interval: float = 0.0  # 0 = drain only at startup and on reconnect

    # ── Notification listener reconnects (seconds) ─────────────────────────────
    listener_min_reconnect_interval: float = 10.0
    listener_max_reconnect_interval: float = 60.0

    # ── Transport ───────────────────────────────────────────────────────────────
    transport_backend: Literal["http", "telegram"] = "http"
    gateway_base_url: str = ""
    gateway_api_key: str = ""
    gateway_session: str = "default"
    gateway_timeout: float = 30.0
    telegram_bot_token: str = ""
    # Sending account identity, used when the transport cannot report it
    account_id: str = ""

    # ── Logging ─────────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool = False

    @field_validator("outbox_max_in_flight")
    @classmethod
    def non_negative_in_flight(cls, value: int) -> int:
        if value < 0:
            raise ValueError("outbox_max_in_flight must be >= 0")
        return value

    @field_validator("gateway_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def check_backends(self) -> "Settings":
        if self.store_backend == "postgres" and not self.database_url:
            raise ValueError("DATABASE_URL is required for the postgres store backend")
        if self.transport_backend == "http" and not self.gateway_base_url:
            raise ValueError("GATEWAY_BASE_URL is required for the http transport")
        if self.transport_backend == "telegram" and not self.telegram_bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required for the telegram transport")
        if self.listener_min_reconnect_interval > self.listener_max_reconnect_interval:
            raise ValueError(
                "LISTENER_MIN_RECONNECT_INTERVAL must not exceed LISTENER_MAX_RECONNECT_INTERVAL"
            )
        return self

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, "courier.db")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.data_dir, "logs")


def get_settings() -> "Settings":
    """Return the application settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


_settings: Settings | None = None


class _SettingsProxy:
    """Lazy proxy so `from courier.config import settings` works without eager init."""
    def __getattr__(self, name):
        return getattr(get_settings(), name)


settings = _SettingsProxy()  # type: ignore[assignment]
