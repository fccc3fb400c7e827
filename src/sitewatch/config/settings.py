"""Pydantic settings models for configuration management."""

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .types import ConfigError

DEFAULT_LOCALE_SEGMENTS = ["fr", "en", "es", "de", "it", "pt", "zh", "ja", "ko", "ar", "ru"]


class StorageSettings(BaseModel):
    """Key-value store backend configuration."""

    url: str = "sqlite:///./data/sitewatch.db"
    echo: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        if not v:
            raise ValueError("Storage URL cannot be empty")
        return v


class CrawlSettings(BaseModel):
    """Batch crawl limits and state lifetimes."""

    default_batch_size: int = 25
    # Each URL costs one fetch plus several store operations per invocation
    max_batch_size: int = 30
    max_concurrency: int = 5
    listener_threshold: int = 100
    sitemap_max_depth: int = 3
    sitemap_timeout: float = 10.0  # seconds
    max_redirects: int = 5
    backoff_base: float = 1.0  # seconds
    url_cache_chunk_size: int = 2000
    progress_ttl: int = 86400  # seconds
    url_cache_ttl: int = 86400
    sitemap_state_ttl: int = 7 * 86400
    full_scan_ttl: int = 14 * 86400
    user_agent: str = "MultiSiteBackup/1.0"
    default_exclude_patterns: list[str] = Field(
        default_factory=lambda: [f"^.*/{seg}/.*$" for seg in DEFAULT_LOCALE_SEGMENTS]
    )

    @field_validator("default_batch_size", "max_batch_size", "max_concurrency")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Batch sizes and concurrency must be at least 1")
        return v

    @field_validator("sitemap_max_depth", "max_redirects", "listener_threshold")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Limits cannot be negative")
        return v

    @field_validator("backoff_base", "sitemap_timeout")
    @classmethod
    def validate_durations(cls, v):
        if v < 0:
            raise ValueError("Durations cannot be negative")
        return v


class DiffSettings(BaseModel):
    """Diff generation and caching configuration."""

    cache_ttl: int = 3600  # seconds
    max_cache_bytes: int = 100 * 1024
    partial_threshold: int = 100_000  # characters
    partial_chunk_size: int = 50_000
    max_displayed_words: int = 20
    snippet_length: int = 200
    batch_size: int = 5
    # Share of max_changes kept for content, style and structure
    limit_split: tuple[float, float, float] = (0.6, 0.2, 0.2)

    @field_validator("limit_split")
    @classmethod
    def validate_split(cls, v):
        if any(share < 0 for share in v) or sum(v) > 1.0 + 1e-9:
            raise ValueError("Limit split shares must be non-negative and sum to at most 1")
        return v

    @field_validator("partial_chunk_size")
    @classmethod
    def validate_chunk(cls, v):
        if v <= 0:
            raise ValueError("Partial chunk size must be positive")
        return v


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="SITEWATCH_",
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    json_logs: bool = False
    hash_algorithm: str = "sha256"
    sites_file: str = "sites.yaml"

    storage: StorageSettings = Field(default_factory=StorageSettings)
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    diff: DiffSettings = Field(default_factory=DiffSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("hash_algorithm")
    @classmethod
    def validate_hash_algorithm(cls, v):
        if v.lower() not in ("sha256", "blake3"):
            raise ValueError("Hash algorithm must be 'sha256' or 'blake3'")
        return v.lower()


_settings: Optional[AppSettings] = None


@lru_cache
def get_settings() -> AppSettings:
    """Get the application settings instance."""
    global _settings

    if _settings is None:
        try:
            _settings = AppSettings()
        except Exception as e:
            raise ConfigError(f"Failed to load settings: {str(e)}") from e

    return _settings


def reload_settings() -> AppSettings:
    """Force reload of settings (useful for testing)."""
    global _settings
    _settings = None
    get_settings.cache_clear()
    return get_settings()


def ensure_storage_directory(settings: AppSettings) -> None:
    """Create the directory holding a file-backed SQLite store."""
    if settings.storage.url.startswith("sqlite:") and ":memory:" not in settings.storage.url:
        db_path = settings.storage.url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Cannot create storage directory: {str(e)}") from e
