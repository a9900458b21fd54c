"""
SelfTalk Application Configuration
====================================

PURPOSE:
    Pydantic-Settings based configuration for the SelfTalk backend.
    All settings can be overridden via environment variables (SELFTALK_ prefix).

UPDATED:
    ST-04 - Metering: tick interval, ledger write retries, plan cycle length.
    ST-07 - Access tokens: signing secret auto-generation, token lifetime.
"""

import logging
import os
import secrets
from pydantic_settings import BaseSettings
from typing import List, Optional, Literal

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings for the API, the metering engine and the ledger."""

    app_name: str = "SelfTalk"
    app_version: str = os.environ.get("SELFTALK_VERSION", "dev")
    debug: bool = False
    environment: Literal["development", "production", "test"] = "development"

    # Storage
    data_directory: str = "./data"
    # If not set, falls back to DATABASE_URL, then SQLite under data_directory.
    database_url: Optional[str] = None
    # Run Alembic migrations on startup. When false, tables are created
    # straight from SQLModel metadata (tests, throwaway dev databases).
    run_migrations: bool = True

    # Logging
    log_dir: str = "logs"
    log_file: str = "selftalk.jsonl"
    log_level: str = "INFO"

    # Access tokens (HS256 JWT)
    # WARNING: an auto-generated secret invalidates every token on restart.
    access_token_secret: Optional[str] = None
    access_token_algorithm: str = "HS256"
    access_token_ttl_days: int = 30
    token_cache_ttl: int = 300  # 5 minutes in seconds

    # Metering
    tick_interval_s: float = 1.0
    # Compare-and-swap attempts for a single ledger mutation before giving up.
    ledger_write_retries: int = 3
    plan_cycle_months: int = 1
    max_ws_payload_bytes: int = 64 * 1024

    # CORS
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000", "http://localhost:8080"]

    class Config:
        env_file = ".env"
        env_prefix = "SELFTALK_"

    def get_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        env_url = os.environ.get("DATABASE_URL")
        if env_url:
            return env_url
        return f"sqlite:///{os.path.join(self.data_directory, 'selftalk.db')}"

    def get_access_token_secret(self) -> str:
        """Return the token signing secret, auto-generating if not set.

        Logs a warning when auto-generating since tokens signed with an
        ephemeral secret stop validating after a restart.
        """
        if self.access_token_secret:
            return self.access_token_secret

        logger.warning(
            "ACCESS_TOKEN_SECRET not set, auto-generating an ephemeral secret. "
            "All access tokens become invalid on restart. "
            "Set SELFTALK_ACCESS_TOKEN_SECRET in production."
        )
        self.access_token_secret = secrets.token_urlsafe(48)
        return self.access_token_secret


settings = Settings()
