"""Application configuration."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

_BACKEND_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "Research Collab Direct Messages"
    log_level: str = "INFO"

    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db: str = "research_collab"
    ensure_indexes: bool = True

    # Unset disables the read cache entirely
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 3600

    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    conversations_page_size: int = 20
    max_conversations_page_size: int = 100
    messages_page_size: int = 30
    max_messages_page_size: int = 200

    model_config = SettingsConfigDict(
        env_file=str(_BACKEND_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
