"""
Glass - Configuration
=====================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Glass"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    HOST: str = "127.0.0.1"
    PORT: int = 7420
    DEFAULT_PAGE_SIZE: int = 50
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./.glass/glass.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Project under remediation
    # ==========================================================================
    PROJECT_PATH: str = "."

    # ==========================================================================
    # Agent sessions
    # ==========================================================================
    CLAUDE_BINARY: str = "claude"
    ANALYZE_MODEL: str = "sonnet"
    FIX_MODEL: str = "sonnet"
    AGENT_DISPOSE_TIMEOUT_SECONDS: float = 10.0
    EVENT_BUFFER_GRACE_SECONDS: float = 30.0

    # ==========================================================================
    # Worktrees (isolated fix workspaces)
    # ==========================================================================
    WORKTREE_CREATE_COMMAND: str = "git worktree add -B {branch} {path}"
    WORKTREE_REMOVE_COMMAND: str = "git worktree remove --force {path}"
    WORKTREE_PARENT_DIRECTORY: str = "../glass-worktrees"
    WORKTREE_BRANCH_PREFIX: str = "glass/"

    # ==========================================================================
    # Sentry
    # ==========================================================================
    SENTRY_ORGANIZATION: str | None = None
    SENTRY_PROJECT: str | None = None
    SENTRY_TEAM: str | None = None
    SENTRY_AUTH_TOKEN: str | None = None
    SENTRY_REGION: Literal["us", "de"] = "us"
    SENTRY_PAGE_SIZE: int = 100
    SENTRY_MAX_PAGES: int = 10

    # Seconds between background refreshes; 0 disables the loop
    REFRESH_INTERVAL_SECONDS: int = 0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"

    @computed_field  # type: ignore[misc]
    @property
    def sentry_enabled(self) -> bool:
        return bool(
            self.SENTRY_ORGANIZATION and self.SENTRY_TEAM and self.SENTRY_AUTH_TOKEN
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
