"""Configuration module for bugtriage settings.

Several subsystems import it at startup (DB, blame cache, ingestion API).
Values come from `BUGTRIAGE_*` environment variables or a `.env` file;
`DATABASE_URL` takes precedence over the configured database URL.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUGTRIAGE_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Production deployments point this at Postgres; tests override via fixtures.
    database_url: str = "sqlite:///bugtriage.db"

    # Blame cache capacity (entries across all repositories)
    blame_cache_max_entries: int = 500_000

    # A fix that was never deployed is presumed superseded after this many days
    stale_fix_days: int = 10

    # Attempts per report when the storage layer reports a serialization conflict
    ingest_max_attempts: int = 5

    message_max_length: int = 1000
    message_templates_path: Optional[str] = None

    # Local working copies of project repositories, one directory per repository hash
    repositories_dir: str = "repositories"
    git_timeout_seconds: float = 30.0
    commit_page_size: int = 50

    log_level: str = "INFO"


settings = Settings()


def get_database_url() -> str:
    """Get database URL from environment or config.

    Priority:
    1. DATABASE_URL environment variable
    2. settings.database_url from config

    Relative SQLite paths are resolved against the current working directory
    once, so workers started from different directories share one file.
    """
    url = os.getenv("DATABASE_URL", settings.database_url)

    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        db_path = Path(url[len("sqlite:///"):])
        if not db_path.is_absolute():
            db_path = (Path.cwd() / db_path).resolve()
        # SQLAlchemy URLs want forward slashes even on Windows (sqlite:///C:/path/to.db).
        url = f"sqlite:///{db_path.as_posix()}"

    return url
