from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration, read from the environment (and .env when present).
    Names are matched case-insensitively, e.g. DATABASE_URL -> database_url.
    """

    # --- Store ---
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "school_scheduler"

    # --- Auth provider ---
    jwt_secret: str = "dev-jwt-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"
    auth_url: str = "http://localhost:9999"
    auth_api_key: str = ""
    min_password_length: int = 6

    # --- Scheduled trigger ---
    cron_secret: str = ""
    exam_reminder_lookahead_hours: int = 24
    overload_threshold: int = 10

    # --- Broadcasts ---
    broadcast_include_class_teachers: bool = Field(
        False,
        description="Also notify teachers assigned to the class on class-scoped broadcasts.",
    )

    # --- HTTP ---
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
