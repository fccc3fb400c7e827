"""Site configuration loading from YAML."""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from .types import ConfigError, ConfigLoadError, SiteConfig

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Loads monitored-site definitions from a YAML file.

    Expected layout::

        sites:
          - id: docs
            base_url: https://docs.example.com
            sitemap_url: https://docs.example.com/sitemap.xml
    """

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("sites.yaml")
        self._cache: Optional[dict[str, Any]] = None

    def load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if self._cache is not None:
            return self._cache

        if not self.config_file.exists():
            logger.warning(f"Config file {self.config_file} not found, using defaults")
            return {}

        try:
            with open(self.config_file, encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Failed to parse YAML config: {str(e)}") from e
        except OSError as e:
            raise ConfigLoadError(f"Failed to load config file: {str(e)}") from e

        if not isinstance(config, dict):
            raise ConfigLoadError("Config file must contain a mapping at the top level")

        logger.info(f"Loaded configuration from {self.config_file}")
        self._cache = config
        return config

    def get_sites_config(self) -> list[SiteConfig]:
        """Parse every site entry, skipping (and logging) invalid ones."""
        sites_data = self.load_yaml_config().get("sites", []) or []

        sites = []
        for site_data in sites_data:
            try:
                sites.append(SiteConfig.model_validate(site_data))
            except ValidationError as e:
                logger.error(
                    f"Failed to parse site config: {site_data}, error: {str(e)}"
                )

        return sites

    def get_site(self, site_id: str) -> SiteConfig:
        """Return the site with the given id."""
        for site in self.get_sites_config():
            if site.id == site_id:
                return site
        raise ConfigError(f"Site '{site_id}' is not configured in {self.config_file}")

    def validate_config(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        try:
            config = self.load_yaml_config()
        except ConfigLoadError as e:
            return [f"Failed to load config: {str(e)}"]

        seen_ids = set()
        for i, site in enumerate(config.get("sites", []) or []):
            if not isinstance(site, dict):
                issues.append(f"Site {i} is not a valid object")
                continue

            try:
                parsed = SiteConfig.model_validate(site)
            except ValidationError as e:
                issues.append(f"Site {i} is invalid: {e.error_count()} error(s)")
                continue

            if parsed.id in seen_ids:
                issues.append(f"Site {i} reuses id '{parsed.id}'")
            seen_ids.add(parsed.id)

            if not parsed.urls and not parsed.sitemap_url:
                issues.append(
                    f"Site '{parsed.id}' has neither urls nor sitemap_url; only base_url will be crawled"
                )

        return issues
