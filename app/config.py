from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Daemon settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./samson.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Seconds to wait between poll cycles
    POLL_INTERVAL: float = Field(default=1.0, gt=0)

    # HTTP API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = Field(default=3030, ge=1, le=65535)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
