from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

from clinic_checkin.config import DATABASE_URL, MATCH_THRESHOLD


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHECKIN_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Clinic Check-In"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    database_url: str = DATABASE_URL
    match_threshold: float = MATCH_THRESHOLD

    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
