"""Configuration management for Sitewatch."""

from .loader import ConfigLoader
from .settings import (
    AppSettings,
    CrawlSettings,
    DiffSettings,
    StorageSettings,
    get_settings,
    reload_settings,
)
from .types import (
    ChangeThreshold,
    ConfigError,
    ConfigLoadError,
    FetchOptions,
    SiteConfig,
)

__all__ = [
    "AppSettings",
    "CrawlSettings",
    "DiffSettings",
    "StorageSettings",
    "get_settings",
    "reload_settings",
    "ConfigLoader",
    "ConfigError",
    "ConfigLoadError",
    "SiteConfig",
    "FetchOptions",
    "ChangeThreshold",
]
