"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with MEMDOCK_ prefix.
Example: MEMDOCK_LOG_LEVEL=DEBUG
"""

import re
from pathlib import Path
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _slug(value: str) -> str:
    """Make an org/project slug safe to use as a path segment."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip()).strip("._")
    return cleaned or "default"


class Settings(BaseSettings):
    """memdock configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="MEMDOCK_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Remote memory store
    api_url: str = "http://localhost:3000/api/v1"
    api_token: Optional[str] = None
    org: str = "default"
    project: str = "default"
    request_timeout: float = Field(default=10.0, gt=0)

    # Local cache
    cache_dir: Optional[str] = None  # Defaults to ~/.memdock
    stale_threshold_seconds: int = Field(default=300, ge=0)  # 5 minutes
    response_cache_ttl: float = Field(default=30.0, ge=0)

    # Sync
    sync_page_size: int = Field(default=100, ge=1)
    sync_max_records: int = Field(default=2000, ge=1)

    # Write admission
    rate_limit: int = Field(default=500, ge=1)  # Write calls per session
    session_write_warning: int = Field(default=15, ge=1)
    max_content_size: int = 1_000_000  # 1MB max content
    max_candidates: int = Field(default=5, ge=1)

    # Full-text search
    fts_max_limit: int = Field(default=100, ge=1)

    # Server
    log_level: str = "INFO"

    def get_cache_dir(self) -> Path:
        """
        Determine the per-user cache root.

        Priority:
        1. cache_dir setting (explicit override via MEMDOCK_CACHE_DIR)
        2. ~/.memdock
        """
        if self.cache_dir:
            cache_root = Path(self.cache_dir).expanduser()
        else:
            cache_root = Path.home() / ".memdock"
        cache_root.mkdir(parents=True, exist_ok=True)
        return cache_root

    def get_cache_path(self, org: str, project: str) -> Path:
        """
        Get the cache file for an (org, project) pair.

        Returns:
            Path to <cache_dir>/<org>/<project>.db
        """
        org_dir = self.get_cache_dir() / _slug(org)
        org_dir.mkdir(parents=True, exist_ok=True)
        return org_dir / f"{_slug(project)}.db"


# Singleton instance
settings = Settings()
