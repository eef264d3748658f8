"""Configuration manager for crate-indexer using TOML files."""

from __future__ import annotations

import logging
from typing import Any, Dict

import toml

from . import config

logger = logging.getLogger(__name__)

SECTION = "indexer"

DEFAULT_CONFIG: Dict[str, Any] = {
    "max_workers": 8,
    # Waves crawled after the seed wave; 0 means unlimited.
    "max_depth": 5,
    # Crates indexed per crawl; 0 means unlimited.
    "max_crates": 50,
    "http_timeout": 30.0,
    "api_url": "https://crates.io/api/v1",
    "download_url": "https://static.crates.io/crates",
    "user_agent": "crate-indexer/0.1.0",
}


def _coerce(key: str, value: Any) -> Any:
    default = DEFAULT_CONFIG[key]
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        coerced = int(value)
        if coerced < 0:
            raise ValueError(f"{key} must be >= 0")
        return coerced
    if isinstance(default, float):
        return float(value)
    return str(value)


def load_config() -> Dict[str, Any]:
    """Load the ``[indexer]`` table from the TOML config file.

    Returns:
        Settings dictionary. Keys missing from the file, or holding values
        that cannot be coerced, fall back to :data:`DEFAULT_CONFIG`. A
        missing or malformed file yields the defaults.
    """
    settings = DEFAULT_CONFIG.copy()
    if not config.CONFIG_FILE.exists():
        return settings

    try:
        with open(config.CONFIG_FILE, "r", encoding="utf-8") as f:
            data = toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", config.CONFIG_FILE, exc)
        return settings

    section = data.get(SECTION, {})
    if not isinstance(section, dict):
        return settings

    for key, value in section.items():
        if key not in DEFAULT_CONFIG:
            logger.debug("Ignoring unknown config key '%s'", key)
            continue
        try:
            settings[key] = _coerce(key, value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for '%s' in %s: %r", key, config.CONFIG_FILE, value)
    return settings


def save_config(values: Dict[str, Any]) -> None:
    """Merge ``values`` into the ``[indexer]`` table and write the file."""
    config.ensure_base_dirs()
    data: Dict[str, Any] = {}
    if config.CONFIG_FILE.exists():
        try:
            with open(config.CONFIG_FILE, "r", encoding="utf-8") as f:
                data = toml.load(f)
        except (OSError, toml.TomlDecodeError):
            data = {}

    section = dict(data.get(SECTION, {}))
    for key, value in values.items():
        if key not in DEFAULT_CONFIG:
            raise KeyError(f"Unknown config key '{key}'")
        section[key] = _coerce(key, value)
    data[SECTION] = section

    with open(config.CONFIG_FILE, "w", encoding="utf-8") as f:
        toml.dump(data, f)
