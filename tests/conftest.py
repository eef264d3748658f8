"""Pytest configuration and fixtures for crate-indexer tests."""

import io
import shutil
import tarfile
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Generator, Iterable, List, Optional

import pytest

from crate_indexer.errors import ArchiveFormatError, NetworkError, NotFoundError
from crate_indexer.storage import CrateStore, close_store


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def crate_home(temp_dir: Path, monkeypatch) -> Generator[Path, None, None]:
    """Point every configured location at a temporary home directory."""
    home = temp_dir / "home"
    monkeypatch.setattr("crate_indexer.config.BASE_DIR", home)
    monkeypatch.setattr("crate_indexer.config.DB_FILE", home / "index.db")
    monkeypatch.setattr("crate_indexer.config.CRATES_DIR", home / "crates")
    monkeypatch.setattr("crate_indexer.config.CONFIG_FILE", home / "config.toml")
    yield home
    close_store()


@pytest.fixture
def store(temp_dir: Path) -> Generator[CrateStore, None, None]:
    """A CrateStore backed by a temporary database."""
    crate_store = CrateStore(temp_dir / "index.db")
    yield crate_store
    crate_store.close()


@pytest.fixture
def sample_crate_path() -> Path:
    """Get path to the sample crate fixture."""
    return Path(__file__).parent / "fixtures" / "sample_crate"


def write_crate(root: Path, files: Dict[str, str], dependencies: Iterable[str] = ()) -> Path:
    """Write a minimal crate tree (Cargo.toml plus *files*) under *root*."""
    root.mkdir(parents=True, exist_ok=True)
    manifest = ["[package]", f'name = "{root.name}"', 'version = "0.0.0"', "", "[dependencies]"]
    manifest.extend(f'{dep} = "1"' for dep in dependencies)
    (root / "Cargo.toml").write_text("\n".join(manifest) + "\n", encoding="utf-8")
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def make_crate(temp_dir: Path) -> Callable[..., Path]:
    """Factory writing crate trees below the temporary directory."""

    def _make(name: str, files: Dict[str, str], dependencies: Iterable[str] = ()) -> Path:
        return write_crate(temp_dir / "src" / name, files, dependencies)

    return _make


class FakeResolver:
    """In-memory registry standing in for crates.io.

    Each registered crate gets a ``src/lib.rs`` holding one function and a
    ``pub use`` line per re-exported crate, which is also declared as a
    dependency.
    """

    def __init__(self, crates_dir: Path) -> None:
        self.crates_dir = crates_dir
        self.registry: Dict[str, Dict] = {}
        self.broken: set = set()
        self.unfetchable: set = set()
        self.fetch_errors: Dict[str, Exception] = {}
        self.resolved: List[str] = []
        self.fetched: List[str] = []
        self._lock = threading.Lock()

    def add(
        self,
        name: str,
        version: str = "1.0.0",
        reexports: Iterable[str] = (),
        source: Optional[str] = None,
    ) -> None:
        self.registry[name] = {"version": version, "reexports": list(reexports), "source": source}

    def get_latest_version(self, name: str) -> str:
        with self._lock:
            self.resolved.append(name)
        if name in self.broken:
            raise NetworkError(f"Failed to fetch crate '{name}': connection refused")
        if name not in self.registry:
            raise NotFoundError(f"crate '{name}' not found on crates.io")
        return self.registry[name]["version"]

    def fetch_crate(self, name: str, version: str) -> Path:
        with self._lock:
            self.fetched.append(f"{name}-{version}")
        if name in self.unfetchable:
            raise ArchiveFormatError(f"Invalid archive for {name}-{version}")
        if name in self.fetch_errors:
            raise self.fetch_errors[name]
        entry = self.registry.get(name, {"reexports": [], "source": None})
        ident = name.replace("-", "_")
        source = entry["source"]
        if source is None:
            lines = [f"pub use {dep.replace('-', '_')};" for dep in entry["reexports"]]
            lines.append(f"pub fn {ident}_entry() {{}}")
            source = "\n".join(lines) + "\n"
        return write_crate(
            self.crates_dir / f"{name}-{version}",
            {"src/lib.rs": source},
            entry["reexports"],
        )


@pytest.fixture
def fake_registry(temp_dir: Path) -> FakeResolver:
    """An empty FakeResolver downloading into the temporary directory."""
    return FakeResolver(temp_dir / "crates")


@pytest.fixture
def build_tarball() -> Callable[..., bytes]:
    """Factory for gzip tarballs laid out like a .crate archive."""

    def _build(
        prefix: str,
        files: Dict[str, str],
        extra: Optional[Callable[[tarfile.TarFile], None]] = None,
    ) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for rel_path, content in files.items():
                data = content.encode("utf-8")
                info = tarfile.TarInfo(f"{prefix}/{rel_path}")
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            if extra is not None:
                extra(tar)
        return buf.getvalue()

    return _build
