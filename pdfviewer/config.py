"""Configuration utilities for the PDF viewer service."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


def _env_flag(name: str, default: bool) -> bool:
    """Return a boolean flag derived from environment variables."""

    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    """Return a tuple parsed from a comma-delimited environment variable."""

    return tuple(
        item.strip() for item in os.getenv(name, default).split(",") if item.strip()
    )


BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent


def _load_environment() -> None:
    """Load environment variables from a ``.env`` file if present."""

    explicit_path = os.getenv("PDFVIEWER_ENV_FILE")
    candidates = []

    if explicit_path:
        candidates.append(Path(explicit_path))

    candidates.append(PROJECT_ROOT / ".env")

    for candidate in candidates:
        try_path = candidate.expanduser()
        if try_path.exists():
            load_dotenv(try_path, override=False)


_load_environment()


def _database_url_default() -> str:
    """Return the configured database URL using legacy fallbacks."""

    return (
        os.getenv("DATABASE_URL") or os.getenv("DB_URL") or "sqlite:///./pdfviewer.db"
    )


class Settings(BaseModel):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(default_factory=_database_url_default)
    storage_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("STORAGE_DIR", str(PROJECT_ROOT / "storage"))
        )
    )
    host: str = Field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "info"))
    cors_allow_origins: Tuple[str, ...] = Field(
        default_factory=lambda: _env_list("CORS_ALLOW_ORIGINS", "*")
    )

    max_upload_size: int = Field(
        default_factory=lambda: int(
            os.getenv("MAX_UPLOAD_SIZE", str(100 * 1024 * 1024))
        )
    )
    allowed_mimetypes: Tuple[str, ...] = Field(
        default_factory=lambda: _env_list("ALLOWED_MIMETYPES", "application/pdf")
    )
    allowed_extensions: Tuple[str, ...] = Field(
        default_factory=lambda: _env_list("ALLOWED_EXTENSIONS", "pdf")
    )
    hash_salt: str = Field(default_factory=lambda: os.getenv("HASH_SALT", ""))

    worker_concurrency: int = Field(
        default_factory=lambda: int(os.getenv("WORKER_CONCURRENCY", "4"))
    )
    queue_capacity: int = Field(
        default_factory=lambda: int(os.getenv("QUEUE_CAPACITY", "64"))
    )
    page_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("PAGE_MAX_ATTEMPTS", "3"))
    )
    retry_backoff_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5"))
    )
    retry_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", "10"))
    )
    resume_on_startup: bool = Field(
        default_factory=lambda: _env_flag("RESUME_ON_STARTUP", True)
    )

    thumbnail_width: int = Field(
        default_factory=lambda: int(os.getenv("THUMBNAIL_WIDTH", "300"))
    )
    thumbnail_height: int = Field(
        default_factory=lambda: int(os.getenv("THUMBNAIL_HEIGHT", "400"))
    )
    thumbnail_quality: int = Field(
        default_factory=lambda: int(os.getenv("THUMBNAIL_QUALITY", "80"))
    )

    cache_backend: str = Field(
        default_factory=lambda: os.getenv("CACHE_BACKEND", "memory")
    )
    redis_url: str = Field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    cache_prefix: str = Field(
        default_factory=lambda: os.getenv("CACHE_PREFIX", "pdf_viewer")
    )
    cache_metadata_ttl: int = Field(
        default_factory=lambda: int(os.getenv("CACHE_METADATA_TTL", "3600"))
    )
    cache_page_ttl: int = Field(
        default_factory=lambda: int(os.getenv("CACHE_PAGE_TTL", "7200"))
    )
    cache_search_ttl: int = Field(
        default_factory=lambda: int(os.getenv("CACHE_SEARCH_TTL", "1800"))
    )
    cache_max_entries: int = Field(
        default_factory=lambda: int(os.getenv("CACHE_MAX_ENTRIES", "10000"))
    )

    search_min_query_length: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_MIN_QUERY_LENGTH", "3"))
    )
    search_max_query_length: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_MAX_QUERY_LENGTH", "255"))
    )
    search_results_per_page: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_RESULTS_PER_PAGE", "15"))
    )
    search_snippet_length: int = Field(
        default_factory=lambda: int(os.getenv("SEARCH_SNIPPET_LENGTH", "200"))
    )
    search_highlight_tag: str = Field(
        default_factory=lambda: os.getenv("SEARCH_HIGHLIGHT_TAG", "mark")
    )

    @field_validator("storage_dir", mode="after")
    @classmethod
    def _ensure_storage_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @field_validator("allowed_mimetypes", mode="after")
    @classmethod
    def _normalise_mimetypes(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value:
            return ("application/pdf",)
        return tuple(dict.fromkeys(item.lower() for item in value))

    @field_validator("allowed_extensions", mode="after")
    @classmethod
    def _normalise_extensions(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if not value:
            return ("pdf",)
        return tuple(dict.fromkeys(item.lower().lstrip(".") for item in value))

    @field_validator("worker_concurrency", "page_max_attempts", mode="after")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)

    @field_validator("queue_capacity", mode="after")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(0, value)

    @field_validator("retry_backoff_seconds", "retry_backoff_max_seconds", mode="after")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        return max(0.0, value)

    @field_validator("thumbnail_quality", mode="after")
    @classmethod
    def _clamp_quality(cls, value: int) -> int:
        return max(1, min(95, value))

    @field_validator("cache_backend", mode="after")
    @classmethod
    def _normalise_cache_backend(cls, value: str) -> str:
        return value.strip().lower() or "memory"


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached settings so that subsequent calls reload from the environment."""

    get_settings.cache_clear()
