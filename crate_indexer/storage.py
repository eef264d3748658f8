"""SQLite persistence for indexed crates and their declarations.

One parent table (``crates``) and one child table per declaration kind.
Struct fields and enum variants hang off their parent rows. Every child row
cascades away with its crate. :meth:`CrateStore.replace_crate` is the
single write path for catalog data: it swaps a crate's whole catalog inside
one transaction, so readers never see a half-replaced crate.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import config
from .errors import AmbiguousReferenceError, NotFoundError, StorageError
from .models import (
    ITEM_KINDS,
    ConstantInfo,
    CrateItems,
    Declaration,
    EnumInfo,
    FieldInfo,
    FunctionInfo,
    ImplInfo,
    MacroInfo,
    StructInfo,
    TraitInfo,
    TypeAliasInfo,
    VariantInfo,
    split_crate_key,
)

logger = logging.getLogger(__name__)

# Declaration columns per kind table; the catalog attribute names double as
# table names.
COLUMNS: Dict[str, Tuple[str, ...]] = {
    "functions": ("id", "name", "file", "line", "end_line", "signature", "docs"),
    "structs": ("id", "name", "file", "line", "end_line", "visibility", "docs"),
    "enums": ("id", "name", "file", "line", "end_line", "visibility", "docs"),
    "traits": ("id", "name", "file", "line", "end_line", "visibility", "docs"),
    "macros": ("id", "name", "file", "line", "end_line", "kind", "docs"),
    "type_aliases": ("id", "name", "file", "line", "end_line", "type_str", "visibility", "docs"),
    "constants": ("id", "name", "file", "line", "end_line", "kind", "type_str", "visibility", "docs"),
    "impls": ("id", "file", "line", "end_line", "self_type", "trait_name"),
}

MODELS: Dict[str, type] = {
    "functions": FunctionInfo,
    "structs": StructInfo,
    "enums": EnumInfo,
    "traits": TraitInfo,
    "macros": MacroInfo,
    "type_aliases": TypeAliasInfo,
    "constants": ConstantInfo,
    "impls": ImplInfo,
}

_COLUMN_TYPES = {"line": "INTEGER NOT NULL", "end_line": "INTEGER", "docs": "TEXT", "trait_name": "TEXT"}


def _kind_table_ddl(table: str) -> str:
    cols = ",\n    ".join(
        f"{col} {_COLUMN_TYPES.get(col, 'TEXT NOT NULL')}" for col in COLUMNS[table]
    )
    return f"""
CREATE TABLE IF NOT EXISTS {table} (
    row_id   INTEGER PRIMARY KEY,
    crate_id INTEGER NOT NULL REFERENCES crates(id) ON DELETE CASCADE,
    {cols},
    UNIQUE (crate_id, id)
);
CREATE INDEX IF NOT EXISTS idx_{table}_id ON {table}(id);
CREATE INDEX IF NOT EXISTS idx_{table}_crate ON {table}(crate_id);
"""


SCHEMA = (
    """
CREATE TABLE IF NOT EXISTS crates (
    id         INTEGER PRIMARY KEY,
    key        TEXT UNIQUE NOT NULL,
    path       TEXT NOT NULL,
    indexed_at TEXT
);
"""
    + "".join(_kind_table_ddl(table) for table in COLUMNS)
    + """
CREATE TABLE IF NOT EXISTS struct_fields (
    row_id     INTEGER PRIMARY KEY,
    struct_row INTEGER NOT NULL REFERENCES structs(row_id) ON DELETE CASCADE,
    position   INTEGER NOT NULL,
    name       TEXT NOT NULL,
    type_str   TEXT NOT NULL,
    visibility TEXT NOT NULL,
    docs       TEXT
);
CREATE TABLE IF NOT EXISTS enum_variants (
    row_id   INTEGER PRIMARY KEY,
    enum_row INTEGER NOT NULL REFERENCES enums(row_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    name     TEXT NOT NULL,
    kind     TEXT NOT NULL,
    fields   TEXT,
    docs     TEXT
);
CREATE TABLE IF NOT EXISTS reexports (
    crate_id         INTEGER NOT NULL REFERENCES crates(id) ON DELETE CASCADE,
    reexported_crate TEXT NOT NULL,
    PRIMARY KEY (crate_id, reexported_crate)
);
CREATE INDEX IF NOT EXISTS idx_functions_name ON functions(name);
CREATE INDEX IF NOT EXISTS idx_structs_name ON structs(name);
CREATE INDEX IF NOT EXISTS idx_enums_name ON enums(name);
CREATE INDEX IF NOT EXISTS idx_traits_name ON traits(name);
CREATE INDEX IF NOT EXISTS idx_macros_name ON macros(name);
CREATE INDEX IF NOT EXISTS idx_impls_self_type ON impls(self_type);
CREATE INDEX IF NOT EXISTS idx_struct_fields_parent ON struct_fields(struct_row);
CREATE INDEX IF NOT EXISTS idx_enum_variants_parent ON enum_variants(enum_row);
"""
)


class CrateStore:
    """Catalog of indexed crates backed by one shared SQLite connection.

    The connection may be used from any thread; an internal lock serializes
    access to it.
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or config.DB_FILE
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "CrateStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def replace_crate(
        self,
        key: str,
        path: Path,
        items: CrateItems,
        reexports: Iterable[str],
    ) -> None:
        """Store *items* as the complete catalog of crate *key*.

        Upserts the crate row, deletes every existing child row, and inserts
        the new declarations and re-export names, all in one transaction.

        Raises:
            StorageError: the transaction failed and was rolled back.
        """
        with self._lock:
            try:
                with self.conn:
                    cur = self.conn.cursor()
                    cur.execute(
                        """
                        INSERT INTO crates (key, path, indexed_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            path = excluded.path,
                            indexed_at = excluded.indexed_at
                        """,
                        (key, str(path), datetime.now().isoformat()),
                    )
                    crate_id = cur.execute(
                        "SELECT id FROM crates WHERE key = ?", (key,),
                    ).fetchone()[0]

                    for table in COLUMNS:
                        cur.execute(f"DELETE FROM {table} WHERE crate_id = ?", (crate_id,))
                    cur.execute("DELETE FROM reexports WHERE crate_id = ?", (crate_id,))

                    self._insert_items(cur, crate_id, items)
                    cur.executemany(
                        "INSERT INTO reexports (crate_id, reexported_crate) VALUES (?, ?)",
                        [(crate_id, name) for name in sorted(set(reexports))],
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to store {key}: {exc}") from exc

        logger.info("Stored %s: %s", key, items.summary())

    @staticmethod
    def _insert_items(cur: sqlite3.Cursor, crate_id: int, items: CrateItems) -> None:
        for table, columns in COLUMNS.items():
            sql = (
                f"INSERT INTO {table} (crate_id, {', '.join(columns)}) "
                f"VALUES (?, {', '.join('?' * len(columns))})"
            )
            for record in getattr(items, table):
                cur.execute(sql, (crate_id, *(getattr(record, col) for col in columns)))
                if table == "structs":
                    cur.executemany(
                        """
                        INSERT INTO struct_fields
                            (struct_row, position, name, type_str, visibility, docs)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (cur.lastrowid, pos, f.name, f.type_str, f.visibility, f.docs)
                            for pos, f in enumerate(record.fields)
                        ],
                    )
                elif table == "enums":
                    cur.executemany(
                        """
                        INSERT INTO enum_variants
                            (enum_row, position, name, kind, fields, docs)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (cur.lastrowid, pos, v.name, v.kind, v.fields, v.docs)
                            for pos, v in enumerate(record.variants)
                        ],
                    )

    def delete_crate(self, key: str) -> bool:
        """Remove a crate and, by cascade, everything it owns."""
        with self._lock:
            try:
                with self.conn:
                    deleted = self.conn.execute("DELETE FROM crates WHERE key = ?", (key,)).rowcount
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to delete {key}: {exc}") from exc
        return deleted > 0

    # ------------------------------------------------------------------
    # Crates
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def has_crate(self, key: str) -> bool:
        return bool(self._query("SELECT 1 FROM crates WHERE key = ?", (key,)))

    def list_crate_keys(self) -> List[str]:
        return [row["key"] for row in self._query("SELECT key FROM crates ORDER BY key")]

    def get_crate_path(self, key: str) -> Optional[Path]:
        rows = self._query("SELECT path FROM crates WHERE key = ?", (key,))
        return Path(rows[0]["path"]) if rows else None

    def get_reexports(self, key: str) -> List[str]:
        rows = self._query(
            """
            SELECT r.reexported_crate FROM reexports r
            JOIN crates c ON c.id = r.crate_id
            WHERE c.key = ? ORDER BY r.reexported_crate
            """,
            (key,),
        )
        return [row[0] for row in rows]

    def find_all_crate_keys(self, name: str) -> List[str]:
        """Every stored key that is *name* itself or ``name-<version>``."""
        if self.has_crate(name):
            return [name]
        rows = self._query(
            "SELECT key FROM crates WHERE key GLOB ? ORDER BY key", (f"{name}-[0-9]*",),
        )
        return [row["key"] for row in rows if split_crate_key(row["key"])[0] == name]

    def find_crate_key(self, name: str) -> Optional[str]:
        """Resolve a bare name or full key to one stored key.

        Raises:
            AmbiguousReferenceError: several versions of *name* are stored.
        """
        matches = self.find_all_crate_keys(name)
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousReferenceError(name, matches)
        return matches[0]

    def resolve_crate_key(self, name: str) -> str:
        key = self.find_crate_key(name)
        if key is None:
            raise NotFoundError(f"Crate '{name}' is not indexed")
        return key

    def crate_keys_with_reexports(
        self,
        key: str,
        max_depth: int = 0,
        max_crates: int = 0,
    ) -> List[str]:
        """*key* followed by the stored crates it transitively re-exports.

        Breadth-first; ``max_depth`` bounds the number of re-export hops and
        ``max_crates`` the length of the result (``0`` disables a bound).
        Re-exported names that are not stored are ignored.
        """
        keys = [key]
        seen = {key}
        frontier = [key]
        depth = 0
        while frontier and not (max_depth and depth >= max_depth):
            next_frontier: List[str] = []
            for current in frontier:
                for name in self.get_reexports(current):
                    found = self.find_crate_key(name)
                    if found is None or found in seen:
                        continue
                    if max_crates and len(keys) >= max_crates:
                        return keys
                    seen.add(found)
                    keys.append(found)
                    next_frontier.append(found)
            frontier = next_frontier
            depth += 1
        return keys

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def _record(self, table: str, row: sqlite3.Row) -> Declaration:
        record = MODELS[table](**{col: row[col] for col in COLUMNS[table]})
        if table == "structs":
            record.fields = [
                FieldInfo(name=r["name"], type_str=r["type_str"], visibility=r["visibility"], docs=r["docs"])
                for r in self._query(
                    "SELECT * FROM struct_fields WHERE struct_row = ? ORDER BY position",
                    (row["row_id"],),
                )
            ]
        elif table == "enums":
            record.variants = [
                VariantInfo(name=r["name"], kind=r["kind"], fields=r["fields"], docs=r["docs"])
                for r in self._query(
                    "SELECT * FROM enum_variants WHERE enum_row = ? ORDER BY position",
                    (row["row_id"],),
                )
            ]
        return record

    def get_items(self, key: str, kind: str) -> List[Declaration]:
        """All declarations of one kind (a :data:`ITEM_KINDS` key) in a crate."""
        if kind not in COLUMNS:
            raise ValueError(f"Unknown declaration kind '{kind}'")
        rows = self._query(
            f"""
            SELECT t.* FROM {kind} t JOIN crates c ON c.id = t.crate_id
            WHERE c.key = ? ORDER BY t.file, t.line, t.row_id
            """,
            (key,),
        )
        return [self._record(kind, row) for row in rows]

    def get_catalog(self, key: str) -> CrateItems:
        items = CrateItems()
        for kind in ITEM_KINDS:
            setattr(items, kind, self.get_items(key, kind))
        return items

    def get_item_by_id(self, item_id: str) -> Optional[Tuple[str, str, Declaration]]:
        """Global lookup of an 8-character identifier.

        Tables are searched in :data:`ITEM_KINDS` order and, within a table,
        by ascending crate key; the first hit wins.

        Returns:
            ``(kind, crate_key, record)`` or ``None``.
        """
        item_id = item_id.strip().lower()
        for table in ITEM_KINDS:
            rows = self._query(
                f"""
                SELECT c.key AS crate_key, t.* FROM {table} t
                JOIN crates c ON c.id = t.crate_id
                WHERE t.id = ? ORDER BY c.key LIMIT 1
                """,
                (item_id,),
            )
            if rows:
                return table, rows[0]["crate_key"], self._record(table, rows[0])
        return None

    def stats(self) -> Dict[str, int]:
        counts = {"crates": self._query("SELECT COUNT(*) FROM crates")[0][0]}
        for table in ITEM_KINDS:
            counts[table] = self._query(f"SELECT COUNT(*) FROM {table}")[0][0]
        return counts


# ===================================================================
# Process-wide store
# ===================================================================

_store: Optional[CrateStore] = None
_store_lock = threading.Lock()


def get_store() -> CrateStore:
    """Shared :class:`CrateStore`, opened on first use."""
    global _store
    with _store_lock:
        if _store is None:
            config.ensure_base_dirs()
            _store = CrateStore()
        return _store


def close_store() -> None:
    """Close the shared store; the next :func:`get_store` reopens it."""
    global _store
    with _store_lock:
        if _store is not None:
            _store.close()
            _store = None
