"""
Configuration management using Pydantic Settings.

All configuration values are loaded from environment variables
with sensible defaults where appropriate.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root (where the .env file is located)
ROOT_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = ROOT_DIR / ".env"

# Load .env into environment for nested settings models
load_dotenv(ENV_FILE)


class AppSettings(BaseSettings):
    """Application-level configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="APP_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["development", "staging", "production"] = "development"
    name: str = "flowguard"
    version: str = "1.0.0"
    debug: bool = False

    # API
    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="DB_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Full URL wins over the individual parts (used for SQLite in tests)
    url: str = ""
    host: str = "localhost"
    port: int = 5432
    name: str = "flowguard"
    user: str = "flowguard"
    password: str = ""
    pool_size: int = 20
    max_overflow: int = 10
    auto_create: bool = True

    @property
    def dsn(self) -> str:
        """Get async database DSN."""
        if self.url:
            return self.url
        auth_part = f"{self.user}:{self.password}@" if self.password else f"{self.user}@"
        return f"postgresql+asyncpg://{auth_part}{self.host}:{self.port}/{self.name}"


class RedisSettings(BaseSettings):
    """Redis configuration (shared cache tier)."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="REDIS_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    url: str = ""
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0
    pool_size: int = 50
    socket_timeout: float = 2.0

    @property
    def dsn(self) -> str:
        """Get Redis DSN."""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class CacheSettings(BaseSettings):
    """Two-tier permission cache configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="CACHE_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    local_ttl: int = Field(default=300, ge=1)  # 5 minutes
    local_max_items: int = Field(default=1000, ge=1)
    shared_ttl: int = Field(default=1800, ge=1)  # 30 minutes
    shared_enabled: bool = False


class AuthSettings(BaseSettings):
    """Authentication chain configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="AUTH_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Token (JWT) identity verification
    token_enabled: bool = True
    token_primary: bool = False
    token_secret: str = ""
    token_algorithms: str = "HS256"
    token_audience: str = ""
    token_userinfo_url: str = ""
    token_timeout: float = Field(default=3.0, gt=0)

    # API keys
    api_key_enabled: bool = True
    api_key_require_user: bool = False
    api_key_header: str = "X-API-Key"

    # Static credential fallback
    basic_username: str = ""
    basic_password: str = ""
    basic_system_admin: bool = True

    # Internal service-to-service requests
    internal_enabled: bool = True
    internal_require_auth: bool = False
    internal_header: str = "X-Request-From"

    @property
    def basic_enabled(self) -> bool:
        """Basic auth is only available when both credentials are set."""
        return bool(self.basic_username and self.basic_password)

    @property
    def algorithms_list(self) -> list[str]:
        """Parse token algorithms into a list."""
        return [alg.strip() for alg in self.token_algorithms.split(",") if alg.strip()]

    @property
    def audience_list(self) -> Optional[list[str]]:
        """Parse token audiences into a list (None disables the check)."""
        audiences = [aud.strip() for aud in self.token_audience.split(",") if aud.strip()]
        return audiences or None


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_prefix="LOG_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    requests: bool = True


class Settings(BaseSettings):
    """Main settings class that aggregates all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    docs_enabled: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
