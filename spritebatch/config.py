import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ludo.ai Configuration
    ludo_api_key: Optional[str] = None
    ludo_base_url: str = "https://api.ludo.ai/api"
    request_timeout: float = 300.0

    # Storage Configuration
    data_dir: str = "/app/data"
    queue_storage: str = "sqlite"  # "sqlite", "file" or "memory"
    queue_storage_key: str = "spritebatch_queue"
    preview_max_chars: int = 100
    downloads_dir: Optional[str] = None

    # Logging Configuration
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def sqlite_path(self) -> str:
        """Return path to SQLite database."""
        return os.path.join(self.data_dir, "spritebatch.db")

    @property
    def downloads_path(self) -> str:
        """Return directory where result artifacts are written."""
        return self.downloads_dir or os.path.join(self.data_dir, "downloads")


# Global settings instance
settings = Settings()
