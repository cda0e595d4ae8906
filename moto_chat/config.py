"""Application configuration."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "Moto Detailing Messaging"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "moto_detailing"

    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"

    # cross-instance event relay, disabled when unset
    redis_url: Optional[str] = None
    redis_channel: str = "moto_chat:events"

    message_max_length: int = 2000
    default_page_size: int = 20
    message_page_size: int = 50
    max_page_size: int = 100

    deleted_message_retention_days: int = 30
    retention_sweep_interval_seconds: int = 3600
    preview_update_attempts: int = 3

    log_level: str = "INFO"
    cors_origins: List[str] = ["http://localhost:5173"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
