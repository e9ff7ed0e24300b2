from __future__ import annotations

from pathlib import Path

from pydantic import BaseSettings, Field


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "data" / "docflow.db"


class Settings(BaseSettings):
    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_SQLITE_PATH}",
        env="DATABASE_URL",
    )
    auth_secret_key: str = Field(
        default="change-me",
        env="AUTH_SECRET_KEY",
    )
    auth_access_token_expire_minutes: int = Field(
        default=60 * 24,
        env="AUTH_ACCESS_TOKEN_EXPIRE_MINUTES",
    )
    log_level: str = Field(
        default="INFO",
        env="LOG_LEVEL",
    )
    usage_default_days: int = Field(
        default=30,
        env="USAGE_DEFAULT_DAYS",
    )
    sequence_max_retries: int = Field(
        default=5,
        env="SEQUENCE_MAX_RETRIES",
    )
    cors_origins: str = Field(
        default="",
        env="BACKEND_CORS_ORIGINS",
    )

    class Config:
        env_file = BASE_DIR / ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()
