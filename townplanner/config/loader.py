"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ───────────────────────────────────────────
#
#   1. config/config.yaml  -- static defaults checked into the repo
#   2. .env file           -- local developer overrides (not committed)
#   3. Environment vars    -- set at deploy time
#
# YAML sections are flattened into Settings field names by joining the
# section and key with "_":
#
#   retrieval:
#     top_k: 8          ->  retrieval_top_k = 8
#
# A field that was set explicitly through the environment is never
# replaced by the YAML value.
# ──────────────────────────────────────────────────────────────────────
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from townplanner.config.settings import Settings
from townplanner.utils.errors import ConfigurationError


def load_config(path: str = "config/config.yaml") -> dict[str, Any]:
    """Read the YAML file at *path* and return its flattened key/values.

    A missing file yields an empty dict.
    """
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return _flatten(raw)


def load_settings(path: str = "config/config.yaml") -> Settings:
    """Build :class:`Settings` from YAML defaults plus environment overrides."""
    yaml_values = load_config(path)
    try:
        env_settings = Settings()
        known = set(Settings.model_fields)
        unknown = sorted(k for k in yaml_values if k not in known)
        if unknown:
            raise ConfigurationError(f"{path}: unknown settings {unknown}")
        overrides = {
            key: value
            for key, value in yaml_values.items()
            if key not in env_settings.model_fields_set
        }
        return Settings(**{**env_settings.model_dump(), **overrides})
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat
