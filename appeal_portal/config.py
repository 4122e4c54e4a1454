from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = Path("config") / "defaults.toml"


def _config_file_path() -> Path:
    raw = os.getenv("APP_CONFIG_FILE", "").strip()
    if raw:
        return Path(raw)
    return DEFAULT_CONFIG_FILE


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://appeals:appeals@db:5432/appeals"
    redis_url: str = "redis://redis:6379/0"
    tz: str = "UTC"
    log_level: str = "INFO"
    admin_email: str = ""
    google_client_id: str = ""
    session_secret: str = ""
    session_max_age_seconds: int = 86400 * 30
    session_cookie_secure: bool = False
    csrf_ttl_seconds: int = 7200
    store_timeout_seconds: float = 5.0
    openai_api_key: str = ""
    insight_model: str = "gpt-4o-mini"
    insight_timeout_seconds: float = 30.0
    insight_max_tokens: int = 200
    feed_enabled: bool = True
    feed_channel: str = "appeals:changed"
    feed_listener_retry_seconds: int = 5
    appeal_username_max_length: int = 64
    appeal_reason_max_length: int = 200
    appeal_explanation_max_length: int = 4000
    web_host: str = "0.0.0.0"
    web_port: int = 8080

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_settings = TomlConfigSettingsSource(settings_cls, toml_file=_config_file_path())
        return init_settings, env_settings, dotenv_settings, toml_settings, file_secret_settings

    def normalized_admin_email(self) -> str | None:
        value = self.admin_email.strip()
        if not value:
            return None
        return value

    def resolved_session_secret(self) -> str:
        value = self.session_secret.strip()
        if not value:
            raise RuntimeError("SESSION_SECRET is required to sign portal sessions")
        return value


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
