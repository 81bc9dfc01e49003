"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    whatsapp_bridge_url: str = "http://127.0.0.1:3001"
    whatsapp_bridge_token: str | None = None
    admin_token: str | None = None
    session_idle_timeout_seconds: int = 300
    sweep_interval_seconds: float = 60
    terminal_removal_delay_seconds: float = 5
    deliver_session_to_dm: bool = True
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )
