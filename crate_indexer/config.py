"""Filesystem locations for the local crate index."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("CRATE_INDEXER_HOME", str(Path.home() / ".crate-indexer"))).expanduser()
DB_FILE = BASE_DIR / "index.db"
CRATES_DIR = BASE_DIR / "crates"
CONFIG_FILE = BASE_DIR / "config.toml"

SOURCE_EXTENSION = ".rs"
MANIFEST_FILE = "Cargo.toml"


def crate_dir(name: str, version: str) -> Path:
    """Directory holding the unpacked sources of ``name`` at ``version``."""
    return CRATES_DIR / f"{name}-{version}"


def ensure_base_dirs() -> None:
    """Create base directories for local storage if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    CRATES_DIR.mkdir(parents=True, exist_ok=True)
