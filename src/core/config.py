"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Batch Compositor"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    UPLOAD_DIR: str = "./data/uploads"
    OUTPUT_DIR: str = "./data/sessions"
    MAX_UPLOAD_SIZE_BYTES: int = 50 * 1024 * 1024  # 50MB per file
    MAX_FOREGROUND_FILES: int = 100

    # ==========================================================================
    # Compositing API
    # ==========================================================================
    COMPOSITING_API_URL: str = "https://api.jasper.ai/v1/image/packshot-compositing"
    COMPOSITING_API_KEY: Optional[str] = None
    COMPOSITING_TIMEOUT_SECONDS: float = 120.0

    # ==========================================================================
    # Batch Processing
    # ==========================================================================
    CONCURRENCY_LIMIT: int = 3  # Parallel API calls
    CHUNK_SIZE: int = 10  # Images per memory chunk
    MAX_RETRIES: int = 3  # Attempts per API call
    RETRY_BASE_DELAY_SECONDS: float = 2.0  # 4s, 8s, 16s
    RESIZE_WORKERS: int = 2  # Threads for CPU-bound resizing

    # Remote limit is 5 megapixels per image; stay a margin below it
    MAX_MEGAPIXELS: int = 5_000_000
    PIXEL_SAFETY_MARGIN: float = 0.9

    # ==========================================================================
    # Session Lifecycle
    # ==========================================================================
    SESSION_TTL_SECONDS: int = 3600
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300
    DOWNLOAD_CLEANUP_DELAY_SECONDS: float = 5.0

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    @property
    def pixel_budget(self) -> int:
        """Pixel count actually sent downstream (hard limit minus margin)."""
        return int(self.MAX_MEGAPIXELS * self.PIXEL_SAFETY_MARGIN)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
