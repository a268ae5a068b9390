"""Configuration management for the shiftclock service.

Loads YAML configuration and provides type-safe access to settings
via Pydantic BaseSettings integration. Thresholds used by verification
and reconciliation live here as single named values.
"""

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from .logger import setup_logger

logger = setup_logger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment and config file."""

    config_path: Path = Field(default=Path("configs/config.yaml"))

    model_config = {"env_prefix": "SHIFTCLOCK_"}

    def load_config(self) -> dict:
        """Load and return the YAML configuration.

        Sections missing from the file are filled from the defaults.

        Returns:
            Parsed configuration as a dictionary.
        """
        if not self.config_path.exists():
            logger.warning("Config file not found at %s, using defaults", self.config_path)
            return _default_config()
        with open(self.config_path) as f:
            config = yaml.safe_load(f) or {}
        logger.info("Configuration loaded from %s", self.config_path)
        return _merge_defaults(config)


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton.

    Returns:
        Settings instance.
    """
    return Settings()


def _merge_defaults(config: dict) -> dict:
    merged = _default_config()
    for section, values in config.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def _default_config() -> dict:
    """Return default configuration when config file is missing.

    Returns:
        Dictionary with sensible default values.
    """
    return {
        "verification": {
            "descriptor_dim": 128,
            "distance_scale": 1.2,
            "min_face_confidence": 0.5,
            "bcrypt_rounds": 10,
        },
        "attendance": {
            "tolerance_minutes": 1,
            "no_show_grace_minutes": 30,
        },
        "reconciliation": {
            "cache_ttl_seconds": 30,
        },
        "ledger": {
            "lock_timeout_seconds": 5.0,
        },
        "database": {
            "path": "data/shiftclock.db",
        },
        "api": {
            "host": "0.0.0.0",
            "port": 8000,
            "reload": False,
        },
        "logging": {
            "level": "INFO",
        },
    }
