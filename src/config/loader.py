"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ───────────────────────────────────────────
#
# Configuration is loaded in layers (later layers override earlier):
#
#   1. config/config.yaml          — Static defaults checked into the repo
#   2. config/config.<env>.yaml    — Optional per-environment overlay
#   3. .env file / environment     — Deploy-time overrides
#
# YAML is organised in sections (``chunking``, ``retrieval``, ``cache``...).
# Each key resolves to a flat Settings field: ``retrieval.top_k`` becomes
# ``retrieval_top_k``; keys that already are field names
# (``chunking.chunk_size``) are used as-is.  The ``circuit_breakers``
# section maps onto ``circuit_breaker_overrides``.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from src.config.settings import Settings
from src.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)

_BREAKER_SECTION = "circuit_breakers"


def load_settings(path: str = "config/config.yaml") -> Settings:
    """Load YAML config and overlay explicitly set environment variables.

    Args:
        path: Path to the base YAML configuration file.  A sibling
              ``config.<APP_ENV>.yaml`` is deep-merged on top when present.

    Returns:
        A validated :class:`Settings` instance.

    Raises:
        ConfigurationError: If the YAML is malformed or a value is invalid.
    """
    yaml_config = _read_yaml(Path(path))

    env_name = os.environ.get("APP_ENV", "")
    if env_name:
        overlay_path = Path(path).with_name(f"config.{env_name}.yaml")
        _deep_merge(yaml_config, _read_yaml(overlay_path))

    flat = _flatten(yaml_config)

    try:
        env_settings = Settings()
        # Fields set through .env/environment take precedence over YAML.
        env_values = {name: getattr(env_settings, name) for name in env_settings.model_fields_set}
        settings = Settings(**{**flat, **env_values})
        settings.validate_all()
    except ValidationError as exc:
        raise ConfigurationError(message=f"Invalid configuration: {exc}") from exc

    logger.debug("settings_loaded", path=path, yaml_keys=sorted(flat))
    return settings


def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(message=f"Malformed YAML in {config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(message=f"Top level of {config_path} must be a mapping")
    return loaded


def _flatten(config: dict[str, Any]) -> dict[str, Any]:
    """Map sectioned YAML onto flat Settings field names."""
    fields = Settings.model_fields
    flat: dict[str, Any] = {}
    for section, values in config.items():
        if section == _BREAKER_SECTION:
            flat["circuit_breaker_overrides"] = dict(values or {})
            continue
        if not isinstance(values, dict):
            if section in fields:
                flat[section] = values
            else:
                logger.warning("unknown_config_key", key=section)
            continue
        for key, value in values.items():
            prefixed = f"{section}_{key}"
            if prefixed in fields:
                flat[prefixed] = value
            elif key in fields:
                flat[key] = value
            else:
                logger.warning("unknown_config_key", key=f"{section}.{key}")
    return flat


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
