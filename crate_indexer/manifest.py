"""Read declared dependency names from a crate's Cargo.toml."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Set

import toml

from .config import MANIFEST_FILE

logger = logging.getLogger(__name__)

DEPENDENCY_SECTIONS = ("dependencies", "dev-dependencies", "build-dependencies")


def normalize_crate_name(name: str) -> str:
    """crates.io treats ``-`` and ``_`` as equivalent in crate names."""
    return name.replace("_", "-")


def read_dependencies(crate_path: Path) -> Set[str]:
    """Return the names of regular, dev and build dependencies.

    Only the keys of each table are read. A missing or malformed manifest
    yields an empty set.
    """
    manifest = crate_path / MANIFEST_FILE
    try:
        data = toml.loads(manifest.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.debug("No %s in %s", MANIFEST_FILE, crate_path)
        return set()
    except (OSError, ValueError, IndexError) as exc:
        # TomlDecodeError and UnicodeDecodeError are both ValueErrors.
        logger.debug("Unreadable manifest %s: %s", manifest, exc)
        return set()

    deps: Set[str] = set()
    for section in DEPENDENCY_SECTIONS:
        table = data.get(section)
        if isinstance(table, dict):
            deps.update(table.keys())
    return deps
