"""
Settings loader: reads config.yml into the Settings model.

Lookup order for the file: explicit path, PKGBRIDGE_CONFIG,
~/.config/pkgbridge/config.yml, /etc/pkgbridge/config.yml.  A missing
file is not an error; defaults apply.  Environment overrides are
applied on top of whatever the file says.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from pkgbridge.core.models.settings import Settings

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yml"
ENV_CONFIG = "PKGBRIDGE_CONFIG"

# env var -> dotted settings key
_ENV_OVERRIDES = {
    "PKGBRIDGE_DATA_DIR": "data_dir",
    "PKGBRIDGE_STAGING_ROOT": "staging_root",
    "PKGBRIDGE_BACKEND": "backend",
    "PKGBRIDGE_LOCK_TIMEOUT": "lock.timeout",
}


class ConfigError(Exception):
    """Raised when the settings file is unreadable or invalid."""


def find_config_file() -> Path | None:
    """Return the first existing config file in the lookup order."""
    env_path = os.environ.get(ENV_CONFIG)
    if env_path:
        return Path(env_path)

    candidates = (
        Path.home() / ".config" / "pkgbridge" / CONFIG_FILE,
        Path("/etc/pkgbridge") / CONFIG_FILE,
    )
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_settings(path: Path | None = None, *, env: dict[str, str] | None = None) -> Settings:
    """Load and validate settings.

    Args:
        path: Explicit config file. If None, the lookup order applies.
        env: Environment to read overrides from (default: os.environ).

    Raises:
        ConfigError: If the file is unreadable, not YAML, or fails validation.
    """
    if path is None:
        path = find_config_file()

    data: dict[str, Any] = {}
    if path is not None:
        data = _read_yaml(path)

    _apply_env_overrides(data, os.environ if env is None else env)

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        "Settings: data_dir=%s staging_root=%s backend=%s",
        settings.data_dir, settings.staging_root, settings.backend or "auto",
    )
    return settings


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading settings from %s", path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def _apply_env_overrides(data: dict[str, Any], env: Any) -> None:
    for var, key in _ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        *parents, leaf = key.split(".")
        target = data
        for part in parents:
            target = target.setdefault(part, {})
        target[leaf] = value
        logger.debug("Override %s from %s", key, var)
