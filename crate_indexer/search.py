"""Regex search and safe file access inside unpacked crates."""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import InvalidPathError, InvalidPatternError, NotFoundError
from .models import Declaration
from .parser import DEFAULT_MAX_WORKERS, discover_source_files

logger = logging.getLogger(__name__)

# Lines returned by a read without an explicit end line.
MAX_DEFAULT_LINES = 500

README_NAMES: Tuple[str, ...] = (
    "README.md",
    "README.markdown",
    "README.txt",
    "README",
    "readme.md",
    "readme.markdown",
    "readme.txt",
    "readme",
)


@dataclass
class SearchMatch:
    file: str
    line: int
    content: str


@dataclass
class SourceExcerpt:
    """A 1-based, inclusive line range of one file."""

    file: str
    start: int
    end: int
    total: int
    lines: List[str] = field(default_factory=list)
    truncated: bool = False

    def numbered(self) -> Iterator[Tuple[int, str]]:
        return zip(range(self.start, self.end + 1), self.lines)


def compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise InvalidPatternError(f"Invalid regex '{pattern}': {exc}") from exc


def _haystacks(record: Declaration) -> Sequence[str]:
    texts = [record.name]
    signature = getattr(record, "signature", None)
    if signature:
        texts.append(signature)
    return texts


def filter_items(records: Iterable[Declaration], pattern: Optional[str]) -> List[Declaration]:
    """Keep the records whose name (or function signature) matches *pattern*.

    ``None`` keeps everything. Impl blocks match on ``impl Trait for Type``.
    """
    if pattern is None:
        return list(records)
    regex = compile_pattern(pattern)
    return [r for r in records if any(regex.search(text) for text in _haystacks(r))]


def _search_file(path: Path, rel_path: str, regex: re.Pattern[str]) -> List[SearchMatch]:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return []
    return [
        SearchMatch(file=rel_path, line=lineno, content=line.strip())
        for lineno, line in enumerate(text.splitlines(), start=1)
        if regex.search(line)
    ]


def search_regex(
    crate_path: Path,
    pattern: str,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> List[SearchMatch]:
    """Search every ``.rs`` file of a crate line by line.

    Returns:
        Matches sorted by file, then line number.
    """
    regex = compile_pattern(pattern)
    files = discover_source_files(crate_path)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        per_file = pool.map(
            lambda path: _search_file(path, path.relative_to(crate_path).as_posix(), regex),
            files,
        )
        matches = [match for file_matches in per_file for match in file_matches]

    matches.sort(key=lambda m: (m.file, m.line))
    return matches


def safe_join(root: Path, rel_path: str) -> Path:
    """Resolve *rel_path* under *root*, refusing anything that escapes it.

    Raises:
        InvalidPathError: *rel_path* is absolute, contains ``..``, or
            resolves (through symlinks) to a location outside *root*.
    """
    rel = Path(rel_path)
    if rel.is_absolute() or rel.anchor:
        raise InvalidPathError(f"Invalid path '{rel_path}': absolute paths are not allowed")
    if ".." in rel.parts:
        raise InvalidPathError(f"Invalid path '{rel_path}': '..' is not allowed")

    base = root.resolve()
    full = (base / rel).resolve()
    if full != base and base not in full.parents:
        raise InvalidPathError(f"Invalid path '{rel_path}': outside of {root}")
    return full


def read_source_lines(
    root: Path,
    rel_path: str,
    start: Optional[int] = None,
    end: Optional[int] = None,
    max_lines: int = MAX_DEFAULT_LINES,
) -> SourceExcerpt:
    """Read lines ``start..end`` (1-based, inclusive) of a file under *root*.

    Without *end* at most *max_lines* lines are returned and the excerpt is
    flagged as truncated when the file continues past them.
    """
    path = safe_join(root, rel_path)
    if not path.is_file():
        raise NotFoundError(f"File '{rel_path}' not found in {root.name}")

    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    total = len(lines)
    first = max(1, start or 1)
    if end is not None:
        last, truncated = min(end, total), False
    else:
        last = min(first + max_lines - 1, total)
        truncated = last < total

    return SourceExcerpt(
        file=rel_path,
        start=first,
        end=max(last, first - 1),
        total=total,
        lines=lines[first - 1:last],
        truncated=truncated,
    )


def find_readme(root: Path) -> Optional[Path]:
    for name in README_NAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None
