"""RecordSync configuration via pydantic-settings."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="RECORDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Backend
    environment: Literal["development", "production"] = "development"
    dev_base_url: str = "http://localhost:9527/api"
    prod_base_url: str = "https://api.recordanalyzer.app/api"

    # HTTP timeouts; large uploads on slow links need minutes
    request_timeout_secs: float = 30.0
    upload_timeout_secs: float = 300.0

    # Upload
    max_upload_bytes: int = 100 * 1024 * 1024
    upload_chunk_size: int = 64 * 1024

    # Status polling
    poll_interval_secs: float = 30.0
    poll_debounce_secs: float = 15.0
    poll_max_backoff_secs: float = 240.0
    summary_page_size: int = 50

    # Local bridge API for the UI process
    api_host: str = "127.0.0.1"
    api_port: int = 8767

    # Storage
    db_path: Path = Path.home() / "Documents" / "RecordSync" / "recordsync.db"

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return self.prod_base_url.rstrip("/")
        return self.dev_base_url.rstrip("/")


settings = Settings()
