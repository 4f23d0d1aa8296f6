"""Configuration management using pydantic-settings."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .integrations.google_calendar import GoogleCalendarConfig
from .integrations.token_store import InMemoryTokenStore, JsonFileTokenStore, TokenStore


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    google_client_id: str = Field(default="", description="Google OAuth client id")
    google_client_secret: str = Field(default="", description="Google OAuth client secret")
    google_redirect_uri: str = Field(
        default="http://localhost:8000/api/calendar/callback",
        description="Redirect URI registered with Google",
    )
    app_url: str = Field(default="http://localhost:3000", description="Public URL of the web app")
    calendar_settings_path: str = Field(
        default="/agendamentos/configuracao",
        description="Page the OAuth callback redirects back to",
    )
    calendar_time_zone: str = Field(default="America/Sao_Paulo", description="Time zone for new events")
    default_duration_minutes: int = Field(default=60, gt=0, description="Duration when an appointment has none")
    token_store_path: Optional[str] = Field(
        default=None, description="Directory for credential files; memory when unset"
    )
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")
    log_level: str = Field(default="INFO", description="Log level for the clinic_calendar logger")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    def google_config(self) -> GoogleCalendarConfig:
        return GoogleCalendarConfig(
            client_id=self.google_client_id,
            client_secret=self.google_client_secret,
            redirect_uri=self.google_redirect_uri,
            time_zone=self.calendar_time_zone,
            request_timeout=self.request_timeout,
        )

    def build_token_store(self) -> TokenStore:
        if self.token_store_path:
            return JsonFileTokenStore(self.token_store_path)
        return InMemoryTokenStore()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
