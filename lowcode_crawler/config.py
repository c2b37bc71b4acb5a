"""Service configuration for the structural extraction engine.

Dataclass sections with defaults, overridden from environment variables on
load and validated once. ``get_config()`` caches the instance for the process;
``reset_config()`` drops it (tests).
"""

from __future__ import annotations

import os
import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from enum import Enum


class DeploymentEnvironment(str, Enum):
    """Deployment environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class SystemConfig:
    """Paths, port and log level."""
    log_root: str = "/tmp/logs"
    data_root: str = "./uploads"
    service_port: int = 8004
    log_level: str = "INFO"


@dataclass
class SecurityConfig:
    """HTTP intake security."""
    api_key_required: bool = False
    api_key: str = ""  # CRAWLER_API_KEY
    cors_origins: List[str] = field(default_factory=list)


@dataclass
class BrowserConfig:
    """Browser session defaults, applied when a job does not set its own."""
    headless: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    launch_timeout_ms: int = 60000
    launch_args: List[str] = field(default_factory=lambda: [
        "--no-sandbox",
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
    ])


@dataclass
class CrawlerConfig:
    """Per-page timing defaults (milliseconds)."""
    navigation_timeout_ms: int = 30000
    wait_for_timeout_ms: int = 30000
    network_idle_timeout_ms: int = 10000
    settle_delay_ms: int = 2000
    scroll_distance: int = 1000
    scroll_delay_ms: int = 1000
    max_scroll_distance: int = 10000
    preview_timeout_ms: int = 10000


@dataclass
class PackagingConfig:
    """Download limits used when a package config leaves them unset."""
    max_file_size: int = 10 * 1024 * 1024
    download_timeout_ms: int = 30000
    sample_size: int = 5


class ServiceConfig:
    """Configuration manager."""

    def __init__(self, environment: DeploymentEnvironment = DeploymentEnvironment.PRODUCTION):
        self.environment = environment
        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load defaults, apply environment overrides and validate."""
        self.system = SystemConfig()
        self.security = SecurityConfig()
        self.browser = BrowserConfig()
        self.crawler = CrawlerConfig()
        self.packaging = PackagingConfig()

        self._load_from_environment()
        self._validate_configuration()

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        # System settings
        self.system.log_root = os.getenv("LOG_ROOT", self.system.log_root)
        self.system.data_root = os.getenv("OUTPUT_ROOT", self.system.data_root)
        self.system.service_port = self._get_int_env("SERVICE_PORT", self.system.service_port)
        self.system.log_level = os.getenv("LOG_LEVEL", self.system.log_level).upper()

        # Security settings
        self.security.api_key = os.getenv("CRAWLER_API_KEY", self.security.api_key)
        self.security.api_key_required = self._get_bool_env(
            "API_KEY_REQUIRED", bool(self.security.api_key) or self.security.api_key_required
        )
        cors_origins_str = os.getenv("CORS_ORIGINS", "")
        if cors_origins_str:
            self.security.cors_origins = [origin.strip() for origin in cors_origins_str.split(",")]

        # Browser settings
        self.browser.headless = self._get_bool_env("BROWSER_HEADLESS", self.browser.headless)
        self.browser.viewport_width = self._get_int_env("VIEWPORT_WIDTH", self.browser.viewport_width)
        self.browser.viewport_height = self._get_int_env("VIEWPORT_HEIGHT", self.browser.viewport_height)

        # Crawler timing
        self.crawler.navigation_timeout_ms = self._get_int_env(
            "NAVIGATION_TIMEOUT_MS", self.crawler.navigation_timeout_ms
        )
        self.crawler.wait_for_timeout_ms = self._get_int_env(
            "WAIT_FOR_TIMEOUT_MS", self.crawler.wait_for_timeout_ms
        )
        self.crawler.network_idle_timeout_ms = self._get_int_env(
            "NETWORK_IDLE_TIMEOUT_MS", self.crawler.network_idle_timeout_ms
        )
        self.crawler.settle_delay_ms = self._get_int_env("SETTLE_DELAY_MS", self.crawler.settle_delay_ms)

        # Packaging
        self.packaging.max_file_size = self._get_int_env("MAX_FILE_SIZE", self.packaging.max_file_size)
        self.packaging.download_timeout_ms = self._get_int_env(
            "DOWNLOAD_TIMEOUT_MS", self.packaging.download_timeout_ms
        )

    def _get_bool_env(self, key: str, default: bool) -> bool:
        """Get boolean value from environment."""
        value = os.getenv(key, "").lower()
        if value in ("true", "1", "yes", "on"):
            return True
        elif value in ("false", "0", "no", "off"):
            return False
        return default

    def _get_int_env(self, key: str, default: int) -> int:
        """Get integer value from environment."""
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def _validate_configuration(self) -> None:
        """Validate configuration values."""
        if self.system.service_port < 1 or self.system.service_port > 65535:
            raise ValueError("SERVICE_PORT must be between 1 and 65535")

        if self.system.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {self.system.log_level}")

        if self.security.api_key_required and not self.security.api_key:
            raise ValueError("API_KEY_REQUIRED is set but CRAWLER_API_KEY is empty")

        for name in ("navigation_timeout_ms", "wait_for_timeout_ms", "network_idle_timeout_ms"):
            if getattr(self.crawler, name) <= 0:
                raise ValueError(f"{name} must be positive")

        if self.packaging.max_file_size <= 0:
            raise ValueError("MAX_FILE_SIZE must be positive")

    def get_configuration_summary(self) -> Dict[str, Any]:
        """Get configuration summary for logging/debugging."""
        return {
            "environment": self.environment.value,
            "system": {
                "data_root": self.system.data_root,
                "log_root": self.system.log_root,
                "log_level": self.system.log_level,
            },
            "security": {
                "api_key_required": self.security.api_key_required,
                "cors_origins_count": len(self.security.cors_origins),
            },
            "browser": {
                "headless": self.browser.headless,
                "viewport": f"{self.browser.viewport_width}x{self.browser.viewport_height}",
            },
            "crawler": {
                "navigation_timeout_ms": self.crawler.navigation_timeout_ms,
                "network_idle_timeout_ms": self.crawler.network_idle_timeout_ms,
            },
        }


# Global configuration instance
_config_instance: Optional[ServiceConfig] = None


def get_config(environment: Optional[DeploymentEnvironment] = None) -> ServiceConfig:
    """Get or create global configuration instance."""
    global _config_instance

    if _config_instance is None or (environment and environment != _config_instance.environment):
        if environment is None:
            env_str = os.getenv("DEPLOYMENT_ENVIRONMENT", "production").lower()
            try:
                environment = DeploymentEnvironment(env_str)
            except ValueError:
                environment = DeploymentEnvironment.PRODUCTION

        _config_instance = ServiceConfig(environment)
        logging.getLogger("crawler.config").debug(
            f"Loaded configuration: {_config_instance.get_configuration_summary()}"
        )

    return _config_instance


def reset_config() -> None:
    """Reset global configuration instance (useful for testing)."""
    global _config_instance
    _config_instance = None
