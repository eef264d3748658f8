"""crates.io client: latest-version lookup and .crate download/extraction."""

from __future__ import annotations

import gzip
import http.client
import io
import json
import logging
import shutil
import tarfile
import tempfile
import urllib.error
import urllib.parse
import urllib.request
import zlib
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Optional, Protocol

from . import config
from .config_manager import DEFAULT_CONFIG
from .errors import ArchiveFormatError, NetworkError, NotFoundError

logger = logging.getLogger(__name__)


class ArchiveResolver(Protocol):
    """What the crawl orchestrator needs from a package registry."""

    def get_latest_version(self, name: str) -> str:
        ...

    def fetch_crate(self, name: str, version: str) -> Path:
        ...


class CratesIoFetcher:
    """Resolve versions and download crates from crates.io."""

    def __init__(
        self,
        api_url: str = DEFAULT_CONFIG["api_url"],
        download_url: str = DEFAULT_CONFIG["download_url"],
        crates_dir: Optional[Path] = None,
        user_agent: str = DEFAULT_CONFIG["user_agent"],
        timeout: float = DEFAULT_CONFIG["http_timeout"],
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.download_url = download_url.rstrip("/")
        self.crates_dir = crates_dir
        self.user_agent = user_agent
        self.timeout = timeout

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "CratesIoFetcher":
        return cls(
            api_url=settings["api_url"],
            download_url=settings["download_url"],
            user_agent=settings["user_agent"],
            timeout=settings["http_timeout"],
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _get(self, url: str, what: str) -> bytes:
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise NotFoundError(f"{what} not found on crates.io") from exc
            raise NetworkError(f"Failed to fetch {what}: HTTP {exc.code}") from exc
        except (urllib.error.URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
            raise NetworkError(f"Failed to fetch {what}: {exc}") from exc

    def get_latest_version(self, name: str) -> str:
        """Return the newest stable version, or the newest version if none is stable."""
        body = self._get(f"{self.api_url}/crates/{urllib.parse.quote(name)}", f"crate '{name}'")
        try:
            info = json.loads(body.decode("utf-8"))["crate"]
            version = info.get("max_stable_version") or info["max_version"]
        except (ValueError, KeyError, TypeError) as exc:
            raise NetworkError(f"Failed to parse crate metadata for '{name}': {exc}") from exc
        return str(version)

    # ------------------------------------------------------------------
    # Download + extraction
    # ------------------------------------------------------------------

    def crate_path(self, name: str, version: str) -> Path:
        if self.crates_dir is None:
            return config.crate_dir(name, version)
        return self.crates_dir / f"{name}-{version}"

    def fetch_crate(self, name: str, version: str) -> Path:
        """Return the unpacked source directory, downloading it if needed."""
        dest = self.crate_path(name, version)
        if dest.exists():
            logger.info("Crate %s v%s already downloaded", name, version)
            return dest

        quoted = urllib.parse.quote(name)
        url = f"{self.download_url}/{quoted}/{quoted}-{urllib.parse.quote(version)}.crate"
        logger.info("Downloading %s v%s from crates.io...", name, version)
        data = self._get(url, f"{name}-{version}.crate")
        extract_crate(data, dest, name, version)
        return dest


def _safe_member_path(member: tarfile.TarInfo, prefix: str) -> Optional[PurePosixPath]:
    """Path of *member* below the ``name-version/`` prefix, or ``None``."""
    if not (member.isfile() or member.isdir()):
        return None
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        return None
    if not path.parts or path.parts[0] != prefix:
        return None
    stripped = PurePosixPath(*path.parts[1:]) if len(path.parts) > 1 else None
    return stripped


def extract_crate(data: bytes, dest: Path, name: str, version: str) -> int:
    """Unpack a .crate (gzip tarball) into *dest*.

    The archive's single ``name-version/`` directory is stripped. Entries
    outside it, absolute or ``..`` paths, links and devices are skipped.
    Extraction happens in a temporary sibling directory that is renamed
    into place, so *dest* is either complete or absent.

    Returns:
        Number of files written.
    """
    prefix = f"{name}-{version}"
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{prefix}-", dir=str(dest.parent)))
    except OSError as exc:
        raise ArchiveFormatError(f"Cannot unpack {prefix} into {dest.parent}: {exc}") from exc
    file_count = 0
    try:
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                for member in tar:
                    rel = _safe_member_path(member, prefix)
                    if rel is None:
                        if member.name.rstrip("/") != prefix:
                            logger.warning("Skipping unsafe archive entry: %s", member.name)
                        continue
                    target = staging.joinpath(*rel.parts)
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    source = tar.extractfile(member)
                    if source is None:
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with source, open(target, "wb") as out:
                        shutil.copyfileobj(source, out)
                    file_count += 1
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as exc:
            raise ArchiveFormatError(f"Invalid archive for {prefix}: {exc}") from exc
        except OSError as exc:
            raise ArchiveFormatError(f"Cannot unpack {prefix}: {exc}") from exc

        try:
            if dest.exists():
                # Another worker finished the same crate first.
                shutil.rmtree(staging, ignore_errors=True)
            else:
                staging.rename(dest)
        except OSError as exc:
            if not dest.is_dir():
                raise ArchiveFormatError(f"Cannot move {prefix} into place: {exc}") from exc
            # Lost the rename race; the other copy is complete.
            shutil.rmtree(staging, ignore_errors=True)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    logger.info("Extracted %d files to %s", file_count, dest)
    return file_count
