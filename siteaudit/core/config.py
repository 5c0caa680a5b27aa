"""
Configuration system with environment-based settings.
Uses pydantic-settings for validation and type safety.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_VERSION: str = "1.0.0"
    ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Storage: audits.db, link-cache.db and projects/<domain>/project.db live here
    DATA_DIR: Path = Field(default_factory=lambda: Path.home() / ".siteaudit")

    # Crawler
    CRAWLER_DEFAULT_CONCURRENCY: int = Field(default=3, ge=1, le=20)
    CRAWLER_MAX_CONCURRENCY: int = Field(default=20, ge=1, le=20)   # ceiling for per-run concurrency
    CRAWLER_MAX_PAGES: int = Field(default=100, ge=1)                # ceiling for per-run max_pages
    CRAWLER_REQUEST_TIMEOUT: int = Field(default=30, ge=1, le=120)   # seconds
    CRAWLER_RATE_LIMIT_RPS: float = 10.0
    CRAWLER_USER_AGENT: str = "SiteAuditBot/1.0 (+https://github.com/siteaudit/siteaudit)"
    CRAWL_STATE_TTL_HOURS: int = 24

    # Link cache
    LINK_CACHE_TTL_DAYS: int = 7
    LINK_CHECK_TIMEOUT: int = 10
    LINK_CHECK_CONCURRENCY: int = 5

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "console"] = "json"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors(cls, v: str | list) -> list:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("DATA_DIR", mode="after")
    @classmethod
    def expand_data_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @property
    def audits_db_path(self) -> Path:
        return self.DATA_DIR / "audits.db"

    @property
    def link_cache_path(self) -> Path:
        return self.DATA_DIR / "link-cache.db"

    @property
    def projects_dir(self) -> Path:
        return self.DATA_DIR / "projects"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance - created once per process."""
    return Settings()
