"""Configuration: environment-backed Settings and the YAML loader."""

from townplanner.config.loader import load_config, load_settings
from townplanner.config.settings import Settings

__all__ = ["Settings", "load_config", "load_settings"]
