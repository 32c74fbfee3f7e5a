# tokenward/core/config.py
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE_PATH = BASE_DIR / ".env"


class TokenConfig(BaseModel):
    """Immutable signing and lifetime parameters handed to the codec and the token service."""

    model_config = ConfigDict(frozen=True)

    secret_key: str
    algorithm: str = "HS256"
    issuer: str = "urn:tokenward:auth"
    access_ttl: timedelta = timedelta(minutes=60)
    refresh_ttl: timedelta = timedelta(days=7)
    leeway: timedelta = timedelta(seconds=10)
    rotate_refresh_tokens: bool = True


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=ENV_FILE_PATH,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    DATABASE_URL: str = "sqlite+aiosqlite:///./tokenward.db"
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "urn:tokenward:auth"

    # Token lifetimes
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    TOKEN_LEEWAY_SECONDS: int = 10
    # Reissue the refresh token on every /refresh and revoke the presented one
    REFRESH_TOKEN_ROTATION: bool = True

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    DEFAULT_RATE_LIMIT: str = "60/minute"
    LOGIN_RATE_LIMIT: str = "10/minute"

    # Upstream identity broker (delegated login)
    EXTERNAL_IDENTITY_SECRET: Optional[str] = None
    EXTERNAL_IDENTITY_ISSUER: Optional[str] = None
    EXTERNAL_IDENTITY_AUDIENCE: Optional[str] = None

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://localhost:8000",
    ]

    # Database housekeeping
    AUTO_CREATE_TABLES: bool = False
    SESSION_RETENTION_DAYS: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    def token_config(self) -> TokenConfig:
        return TokenConfig(
            secret_key=self.SECRET_KEY,
            algorithm=self.ALGORITHM,
            issuer=self.JWT_ISSUER,
            access_ttl=timedelta(minutes=self.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=self.REFRESH_TOKEN_EXPIRE_DAYS),
            leeway=timedelta(seconds=self.TOKEN_LEEWAY_SECONDS),
            rotate_refresh_tokens=self.REFRESH_TOKEN_ROTATION,
        )


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()
    except Exception as e:
        logger.error(f"FATAL: could not load settings from the environment or {ENV_FILE_PATH}: {e}")
        raise


settings = get_settings()
