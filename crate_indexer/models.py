"""Declaration records, the per-crate catalog, and crawl reports."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from hashlib import blake2b
from typing import Dict, Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^(?P<name>.+?)-(?P<version>\d+\.\d+\.\d+(?:[-+].*)?)$")


def crate_key(name: str, version: str) -> str:
    return f"{name}-{version}"


def split_crate_key(key: str) -> Tuple[str, Optional[str]]:
    """Split ``"serde-json-1.0.0"`` into ``("serde-json", "1.0.0")``.

    The version starts at the first hyphen followed by a semver triple, so
    pre-release suffixes stay attached to it. Keys without one are treated
    as bare names.
    """
    match = _KEY_RE.match(key)
    if match is None:
        return key, None
    return match.group("name"), match.group("version")


def generate_id(crate: str, file: str, name: str, line: int, kind: str) -> str:
    """Return the 8-hex-character identifier of a declaration.

    The first 32 bits of a 64-bit BLAKE2b digest over the NUL separated
    inputs. Stable across processes and platforms; collisions are possible.
    """
    payload = "\x00".join((crate, file, name, str(line), kind)).encode("utf-8")
    return blake2b(payload, digest_size=8).hexdigest()[:8]


@dataclass
class FieldInfo:
    name: str
    type_str: str
    visibility: str
    docs: Optional[str] = None


@dataclass
class VariantInfo:
    name: str
    kind: str  # unit, tuple, struct
    fields: Optional[str] = None
    docs: Optional[str] = None


@dataclass
class FunctionInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    signature: str
    docs: Optional[str] = None


@dataclass
class StructInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    visibility: str
    fields: List[FieldInfo] = field(default_factory=list)
    docs: Optional[str] = None


@dataclass
class EnumInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    visibility: str
    variants: List[VariantInfo] = field(default_factory=list)
    docs: Optional[str] = None


@dataclass
class TraitInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    visibility: str
    docs: Optional[str] = None


@dataclass
class MacroInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    kind: str = "declarative"
    docs: Optional[str] = None


@dataclass
class TypeAliasInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    type_str: str
    visibility: str
    docs: Optional[str] = None


@dataclass
class ConstantInfo:
    id: str
    name: str
    file: str
    line: int
    end_line: Optional[int]
    kind: str  # const, static
    type_str: str
    visibility: str
    docs: Optional[str] = None


@dataclass
class ImplInfo:
    id: str
    file: str
    line: int
    end_line: Optional[int]
    self_type: str
    trait_name: Optional[str] = None

    @property
    def name(self) -> str:
        if self.trait_name:
            return f"impl {self.trait_name} for {self.self_type}"
        return f"impl {self.self_type}"


Declaration = Union[
    FunctionInfo, StructInfo, EnumInfo, TraitInfo, MacroInfo,
    TypeAliasInfo, ConstantInfo, ImplInfo,
]

# Catalog attribute name -> human label, in storage/lookup order.
ITEM_KINDS: Dict[str, str] = {
    "functions": "fns",
    "structs": "structs",
    "enums": "enums",
    "traits": "traits",
    "macros": "macros",
    "type_aliases": "types",
    "constants": "consts",
    "impls": "impls",
}


@dataclass
class CrateItems:
    """Every declaration extracted from one crate (the catalog)."""

    functions: List[FunctionInfo] = field(default_factory=list)
    structs: List[StructInfo] = field(default_factory=list)
    enums: List[EnumInfo] = field(default_factory=list)
    traits: List[TraitInfo] = field(default_factory=list)
    macros: List[MacroInfo] = field(default_factory=list)
    type_aliases: List[TypeAliasInfo] = field(default_factory=list)
    constants: List[ConstantInfo] = field(default_factory=list)
    impls: List[ImplInfo] = field(default_factory=list)
    collisions: List[Tuple[str, str]] = field(default_factory=list)

    def add(self, kind: str, record: Declaration) -> None:
        getattr(self, kind).append(record)

    def merge(self, other: "CrateItems") -> None:
        """Append ``other``'s records, dropping same-kind identifier repeats.

        The first record to claim an identifier within a kind wins; each
        dropped record is logged and remembered in :attr:`collisions`.
        """
        for kind in ITEM_KINDS:
            target = getattr(self, kind)
            taken = {item.id for item in target}
            for item in getattr(other, kind):
                if item.id in taken:
                    logger.warning(
                        "Identifier collision in %s: %s at %s:%d dropped",
                        kind, item.id, item.file, item.line,
                    )
                    self.collisions.append((kind, item.id))
                    continue
                taken.add(item.id)
                target.append(item)
        self.collisions.extend(other.collisions)

    def __iter__(self) -> Iterator[Tuple[str, Declaration]]:
        for kind in ITEM_KINDS:
            for item in getattr(self, kind):
                yield kind, item

    def counts(self) -> Dict[str, int]:
        return {kind: len(getattr(self, kind)) for kind in ITEM_KINDS}

    def total(self) -> int:
        return sum(self.counts().values())

    def summary(self) -> str:
        counts = self.counts()
        return ", ".join(f"{counts[kind]} {label}" for kind, label in ITEM_KINDS.items())


@dataclass
class IndexResult:
    items: CrateItems
    reexported_crates: List[str] = field(default_factory=list)


# Crawl outcome statuses.
INDEXED = "indexed"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class CrawlOutcome:
    name: str
    key: Optional[str]
    status: str
    detail: str = ""
    counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[Exception] = field(default=None, repr=False, compare=False)


@dataclass
class CrawlReport:
    """Per-package outcome summary of one crawl invocation."""

    seed: str
    outcomes: List[CrawlOutcome] = field(default_factory=list)
    waves: int = 0
    truncated: bool = False

    def record(self, outcome: CrawlOutcome) -> None:
        self.outcomes.append(outcome)

    def _with_status(self, status: str) -> List[CrawlOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def indexed(self) -> List[CrawlOutcome]:
        return self._with_status(INDEXED)

    @property
    def skipped(self) -> List[CrawlOutcome]:
        return self._with_status(SKIPPED)

    @property
    def failed(self) -> List[CrawlOutcome]:
        return self._with_status(FAILED)

    @property
    def indexed_keys(self) -> List[str]:
        return [o.key for o in self.indexed if o.key]
