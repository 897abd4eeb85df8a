"""Shared configuration management for the document intake service.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_OCR_TIMEOUT_SECONDS=120
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="document-intake",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # OCR configuration (external tesseract / pdftoppm binaries)
    ocr_language: str = Field(
        default="deu",
        description="Tesseract language code",
    )
    ocr_pdf_dpi: int = Field(
        default=300,
        gt=0,
        description="Resolution used when rasterizing the first PDF page",
    )
    ocr_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Wall-clock limit for each external tool invocation",
    )
    tesseract_cmd: str = Field(
        default="tesseract",
        description="Tesseract executable (name on PATH or absolute path)",
    )
    pdftoppm_cmd: str = Field(
        default="pdftoppm",
        description="pdftoppm executable from poppler-utils",
    )
    ocr_temp_dir: str | None = Field(
        default=None,
        description="Parent directory for per-call temp directories (None = system temp)",
    )

    # Pattern extraction
    pattern_match_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Deadline for a single regex match",
    )
    pattern_context_length: int = Field(
        default=20,
        gt=0,
        description="Characters of text before a confirmed value kept as learned context",
    )
    extraction_max_text_chars: int = Field(
        default=100_000,
        gt=0,
        description="Upper bound on OCR text length fed to the regex engine",
    )

    # Pattern store
    pattern_store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Pattern store: memory (process-local) or redis (shared)",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (for pattern_store_backend='redis')",
    )
    redis_key_prefix: str = Field(
        default="intake:patterns",
        description="Key prefix for supplier pattern hashes",
    )

    # Suppliers
    suppliers_file: str | None = Field(
        default=None,
        description="JSON file with the supplier directory (list of suppliers)",
    )

    # API
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum accepted upload size in bytes",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
