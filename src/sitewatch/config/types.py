"""Type definitions for configuration system."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ConfigError(Exception):
    """Base exception for configuration-related errors."""

    pass


class ConfigLoadError(ConfigError):
    """Exception raised when configuration loading fails."""

    pass


class _CamelModel(BaseModel):
    """Accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FetchOptions(_CamelModel):
    """Per-site HTTP fetch behaviour."""

    timeout: float = 10.0  # seconds, per request
    retries: int = 3
    concurrency: int = 5

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0 or v > 30:
            raise ValueError("Timeout must be between 0 and 30 seconds")
        return v

    @field_validator("retries")
    @classmethod
    def validate_retries(cls, v):
        if v < 0 or v > 5:
            raise ValueError("Retries must be between 0 and 5")
        return v

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v):
        if v < 1 or v > 20:
            raise ValueError("Concurrency must be between 1 and 20")
        return v


class ChangeThreshold(_CamelModel):
    """What counts as a meaningful change for a site."""

    min_change_size: int = 0  # bytes
    ignore_patterns: list[str] = Field(default_factory=list)

    @field_validator("min_change_size")
    @classmethod
    def validate_min_change_size(cls, v):
        if v < 0:
            raise ValueError("Minimum change size cannot be negative")
        return v


class SiteConfig(_CamelModel):
    """Configuration for a monitored site.

    ``exclude_patterns`` of ``None`` means the default locale exclusions
    apply; an empty list disables exclusion entirely.
    """

    id: str
    name: str = ""
    base_url: str
    sitemap_url: Optional[str] = None
    urls: Optional[list[str]] = None
    retention_days: int = 7
    schedule: str = "0 2 * * *"
    fetch_options: FetchOptions = Field(default_factory=FetchOptions)
    change_threshold: ChangeThreshold = Field(default_factory=ChangeThreshold)
    exclude_patterns: Optional[list[str]] = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        if not v or ":" in v:
            raise ValueError("Site id must be non-empty and must not contain ':'")
        return v

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v):
        if v < 1 or v > 365:
            raise ValueError("Retention days must be between 1 and 365")
        return v

    @model_validator(mode="after")
    def default_name(self):
        if not self.name:
            self.name = self.id
        return self

    @property
    def uses_sitemap(self) -> bool:
        return not self.urls and bool(self.sitemap_url)
