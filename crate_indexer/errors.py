"""Error taxonomy shared by the fetcher, indexer, store and CLI."""

from __future__ import annotations

from typing import List


class CrateIndexerError(Exception):
    """Base class for every error raised by crate-indexer."""


class NotFoundError(CrateIndexerError):
    """A crate key, file or declaration identifier does not exist."""


class AmbiguousReferenceError(CrateIndexerError):
    """A bare crate name matches more than one stored version."""

    def __init__(self, name: str, candidates: List[str]) -> None:
        self.name = name
        self.candidates = list(candidates)
        example = self.candidates[0] if self.candidates else f"{name}-<version>"
        super().__init__(
            f"Multiple versions found for '{name}': {', '.join(self.candidates)}. "
            f"Specify a version, e.g. '{example}'."
        )


class NetworkError(CrateIndexerError):
    """The registry could not be reached or returned an unusable response."""


class ArchiveFormatError(CrateIndexerError):
    """A downloaded .crate archive is not a readable gzip tarball."""


class ParseError(CrateIndexerError):
    """A single source file could not be read or parsed."""


class StorageError(CrateIndexerError):
    """A catalog transaction failed and was rolled back."""


class InvalidPathError(CrateIndexerError):
    """A relative path tried to escape a crate's root directory."""


class InvalidPatternError(CrateIndexerError, ValueError):
    """A user supplied regular expression does not compile."""
