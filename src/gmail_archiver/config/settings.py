"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GmailArchiverSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_ARCHIVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Gmail API settings
    user_id: str = "me"
    max_results_per_page: int = Field(default=500, ge=1, le=500)
    include_spam_trash: bool = True
    archive_labels: bool = True

    # Archive location
    archive_dir: Path = Path("archive")

    # Concurrency
    workers: int = Field(default=1, ge=1)

    # Rate limiting & retry
    max_retries: int = Field(default=5, ge=0)
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    max_total_wait_seconds: float = 300.0
    inter_page_delay_seconds: float = 0.2
    num_retries: int = 0
    http_timeout_seconds: float = Field(default=60.0, gt=0)

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create archive and credential directories if they don't exist."""
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        self.token_path.parent.mkdir(parents=True, exist_ok=True)
