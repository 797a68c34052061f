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
    APP_NAME: str = "Photobooth Job Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Broker (Celery on Redis)
    # ==========================================================================
    # Unset or empty means direct processing mode
    REDIS_URL: Optional[str] = None
    BROKER_CONNECT_TIMEOUT_SECONDS: float = 2.0
    QUEUE_NAME: str = "photo-processing-queue"
    WORKER_CONCURRENCY: int = 2
    RESULT_EXPIRES_SECONDS: int = 86400  # 24 hours

    # "async" returns 202 and the client polls; "wait" blocks until the job finishes
    JOB_SUBMIT_MODE: str = "async"
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    QUEUE_POLL_MAX_ATTEMPTS: int = 300  # ~5 minutes

    # Threads running direct jobs and wait-mode polls; status reads stay off this pool
    PIPELINE_MAX_WORKERS: int = 4

    # In-memory status store (direct mode)
    JOB_STATUS_TTL_SECONDS: int = 3600
    JOB_STATUS_SWEEP_INTERVAL_SECONDS: int = 1800

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    UPLOADS_DIR: str = "./uploads"
    ASSETS_DIR: str = "./assets"
    MAX_UPLOAD_SIZE_BYTES: int = 10485760  # 10MB

    # ==========================================================================
    # Image Pipeline Settings
    # ==========================================================================
    # Green screen box, inclusive bounds per channel
    CHROMA_R_MIN: int = 0
    CHROMA_R_MAX: int = 100
    CHROMA_G_MIN: int = 120
    CHROMA_G_MAX: int = 255
    CHROMA_B_MIN: int = 0
    CHROMA_B_MAX: int = 120

    # 0 for x centers horizontally, 0 for y anchors to the bottom margin
    COMPOSITE_X: int = 0
    COMPOSITE_Y: int = 0
    COMPOSITE_SCALE: float = 1.0
    COMPOSITE_BOTTOM_MARGIN: int = 50

    # ==========================================================================
    # Gemini Enhancement API
    # ==========================================================================
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash-image"
    GEMINI_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    ENHANCEMENT_TIMEOUT_SECONDS: float = 120.0
    ENHANCEMENT_MAX_ATTEMPTS: int = 3
    ENHANCEMENT_RETRY_DELAY_MS: int = 2000

    # ==========================================================================
    # Email Settings
    # ==========================================================================
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    EMAIL_USER: Optional[str] = None
    EMAIL_PASS: Optional[str] = None
    FRONTEND_URL: Optional[str] = None

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
    def broker_configured(self) -> bool:
        return bool(self.REDIS_URL)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
