"""
Application configuration using Pydantic Settings
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./catalog.db"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Catalog source
    CATALOG_ARCHIVE_URL: Optional[str] = None
    CATALOG_ARCHIVE_SHA256: Optional[str] = None
    CATALOG_ARCHIVE_SIZE: Optional[int] = None
    CATALOG_RELEASES_URL: str = "https://api.github.com/repos/ds17f/dead-metadata/releases/latest"
    CATALOG_SCHEMA_VERSION: str = "2.0.0"

    # Staging
    STAGING_DIR: str = "./staging"
    CATALOG_LOCAL_ARCHIVE: Optional[str] = None  # data.zip, or a directory holding data*.zip
    WRITER_LOCK_TTL_SECONDS: float = 300.0

    # Bootstrap Configuration
    ETL_BATCH_SIZE: int = 500
    PARSER_SKIP_TOLERANCE: int = 100
    MAX_RETRIES: int = 3
    RETRY_DELAY: float = 1.0
    DOWNLOAD_TIMEOUT: float = 30.0
    DOWNLOAD_CHUNK_SIZE: int = 64 * 1024
    PROGRESS_BUFFER_SIZE: int = 32
    REFRESH_INTERVAL_MINUTES: int = 0
    BOOTSTRAP_ON_STARTUP: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
