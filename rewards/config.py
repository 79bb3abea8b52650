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
    raw = (os.getenv("APP_CONFIG_FILE") or "").strip()
    if raw:
        return Path(raw)
    return DEFAULT_CONFIG_FILE


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://rewards:rewards@db:5432/rewards"
    database_pool_size: int = 5
    database_max_overflow: int = 10
    log_level: str = "INFO"
    tz: str = "UTC"
    admin_api_token: str = ""
    rewards_enabled: bool = True
    points_per_dollar: int = 20
    points_expiration_days: int = 0
    refund_expiration_days: int = 0
    spend_discount_code_prefix: str = "REWARDS-"
    spend_note_attribute: str = "rewards_spent"
    platform_api_url: str = ""
    platform_api_token: str = ""
    platform_api_version: str = "2025-01"
    platform_mirror_enabled: bool = True
    platform_timeout_seconds: int = 15
    history_page_size_max: int = 50
    customers_page_size: int = 50

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
        return (init_settings, env_settings, dotenv_settings, toml_settings, file_secret_settings)

    def effective_refund_expiration_days(self) -> int:
        if self.refund_expiration_days > 0:
            return self.refund_expiration_days
        return max(self.points_expiration_days, 0)

    def parsed_platform_api_url(self) -> str | None:
        value = self.platform_api_url.strip().rstrip("/")
        if not value:
            return None
        return value


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
