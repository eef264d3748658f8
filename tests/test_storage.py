"""Tests for the SQLite crate catalog."""

import sqlite3
import threading
from pathlib import Path

import pytest

from crate_indexer.errors import AmbiguousReferenceError, NotFoundError, StorageError
from crate_indexer.models import (
    CrateItems,
    EnumInfo,
    FieldInfo,
    FunctionInfo,
    ImplInfo,
    StructInfo,
    VariantInfo,
    generate_id,
)
from crate_indexer.parser import index_crate
from crate_indexer.storage import CrateStore, close_store, get_store


def _functions(key: str, names, file: str = "src/lib.rs") -> CrateItems:
    items = CrateItems()
    for index, name in enumerate(names):
        line = 1 + index * 10
        items.add("functions", FunctionInfo(
            id=generate_id(key, file, name, line, "fn"),
            name=name,
            file=file,
            line=line,
            end_line=line + 3,
            signature=f"fn {name}()",
            docs=f"Docs for {name}.",
        ))
    return items


def _rows(store: CrateStore, table: str) -> int:
    return store.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestReplaceCrate:
    """Tests for the atomic replace operation."""

    def test_stores_catalog(self, store: CrateStore, temp_dir: Path):
        items = _functions("demo-1.0.0", ["a", "b"])
        store.replace_crate("demo-1.0.0", temp_dir, items, ["log"])

        assert store.has_crate("demo-1.0.0")
        assert store.get_crate_path("demo-1.0.0") == temp_dir
        assert store.get_items("demo-1.0.0", "functions") == items.functions
        assert store.get_reexports("demo-1.0.0") == ["log"]

    def test_is_idempotent(self, store: CrateStore, temp_dir: Path):
        items = _functions("demo-1.0.0", ["a", "b", "c"])
        store.replace_crate("demo-1.0.0", temp_dir, items, ["log", "serde"])
        first = (store.get_catalog("demo-1.0.0"), store.get_reexports("demo-1.0.0"), store.stats())

        store.replace_crate("demo-1.0.0", temp_dir, items, ["log", "serde"])
        second = (store.get_catalog("demo-1.0.0"), store.get_reexports("demo-1.0.0"), store.stats())

        assert first == second
        assert store.list_crate_keys() == ["demo-1.0.0"]

    def test_replacement_shrinks_catalog(self, store: CrateStore, temp_dir: Path):
        key = "demo-1.0.0"
        store.replace_crate(key, temp_dir, _functions(key, ["a", "b", "c", "d", "e"]), ["log"])
        assert len(store.get_items(key, "functions")) == 5

        store.replace_crate(key, temp_dir, _functions(key, ["a", "x", "y"]), [])

        assert [f.name for f in store.get_items(key, "functions")] == ["a", "x", "y"]
        assert store.get_reexports(key) == []
        assert _rows(store, "functions") == 3

    def test_crate_row_is_preserved(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("demo-1.0.0", temp_dir, CrateItems(), [])
        row_id = store.conn.execute("SELECT id FROM crates WHERE key = 'demo-1.0.0'").fetchone()[0]
        store.replace_crate("demo-1.0.0", temp_dir / "moved", CrateItems(), [])
        assert store.conn.execute("SELECT id FROM crates WHERE key = 'demo-1.0.0'").fetchone()[0] == row_id
        assert store.get_crate_path("demo-1.0.0") == temp_dir / "moved"

    def test_failed_replace_rolls_back(self, store: CrateStore, temp_dir: Path):
        key = "demo-1.0.0"
        store.replace_crate(key, temp_dir, _functions(key, ["a", "b"]), ["log"])

        broken = _functions(key, ["x", "y"])
        broken.functions[1].id = broken.functions[0].id  # violates UNIQUE(crate_id, id)
        with pytest.raises(StorageError):
            store.replace_crate(key, temp_dir, broken, [])

        assert [f.name for f in store.get_items(key, "functions")] == ["a", "b"]
        assert store.get_reexports(key) == ["log"]

    def test_structs_and_enums_keep_children(self, store: CrateStore, temp_dir: Path):
        items = CrateItems()
        items.add("structs", StructInfo(
            id="00000001", name="Point", file="src/lib.rs", line=1, end_line=4, visibility="pub",
            fields=[FieldInfo("x", "i32", "pub", "X."), FieldInfo("y", "i32", "private")],
        ))
        items.add("enums", EnumInfo(
            id="00000002", name="Dir", file="src/lib.rs", line=6, end_line=9, visibility="pub",
            variants=[VariantInfo("Up", "unit"), VariantInfo("To", "tuple", "i32, i32", "Move.")],
        ))
        store.replace_crate("geo-0.1.0", temp_dir, items, [])

        assert store.get_items("geo-0.1.0", "structs") == items.structs
        assert store.get_items("geo-0.1.0", "enums") == items.enums

        store.replace_crate("geo-0.1.0", temp_dir, CrateItems(), [])
        assert _rows(store, "struct_fields") == 0
        assert _rows(store, "enum_variants") == 0

    def test_round_trips_indexed_crate(self, store: CrateStore, sample_crate_path: Path):
        result = index_crate(sample_crate_path, "sample-0.1.0")
        store.replace_crate("sample-0.1.0", sample_crate_path, result.items, result.reexported_crates)

        stored = store.get_catalog("sample-0.1.0")
        for kind in result.items.counts():
            assert sorted(getattr(stored, kind), key=lambda r: r.id) == \
                sorted(getattr(result.items, kind), key=lambda r: r.id)


class TestDeleteCrate:
    """Tests for crate removal."""

    def test_cascades(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("demo-1.0.0", temp_dir, _functions("demo-1.0.0", ["a"]), ["log"])
        assert store.delete_crate("demo-1.0.0") is True
        assert not store.has_crate("demo-1.0.0")
        assert _rows(store, "functions") == 0
        assert _rows(store, "reexports") == 0

    def test_missing(self, store: CrateStore):
        assert store.delete_crate("ghost-1.0.0") is False


class TestKeyResolution:
    """Tests for find_crate_key and friends."""

    def test_exact_key(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("serde-1.0.0", temp_dir, CrateItems(), [])
        assert store.find_crate_key("serde-1.0.0") == "serde-1.0.0"

    def test_bare_name_single_version(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("serde-1.0.0", temp_dir, CrateItems(), [])
        store.replace_crate("serde-json-1.0.0", temp_dir, CrateItems(), [])
        assert store.find_crate_key("serde") == "serde-1.0.0"
        assert store.find_crate_key("serde-json") == "serde-json-1.0.0"

    def test_unknown_name(self, store: CrateStore):
        assert store.find_crate_key("tokio") is None
        with pytest.raises(NotFoundError):
            store.resolve_crate_key("tokio")

    def test_ambiguous_name(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("foo-1.0.0", temp_dir, CrateItems(), [])
        store.replace_crate("foo-2.0.0", temp_dir, CrateItems(), [])

        with pytest.raises(AmbiguousReferenceError) as excinfo:
            store.find_crate_key("foo")

        assert excinfo.value.candidates == ["foo-1.0.0", "foo-2.0.0"]
        assert "foo-1.0.0" in str(excinfo.value)
        assert store.find_all_crate_keys("foo") == ["foo-1.0.0", "foo-2.0.0"]
        assert store.find_crate_key("foo-2.0.0") == "foo-2.0.0"

    def test_name_with_numeric_segment_is_not_a_version(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("md-5-0.10.6", temp_dir, CrateItems(), [])
        assert store.find_crate_key("md") is None
        assert store.find_crate_key("md-5") == "md-5-0.10.6"


class TestReexportClosure:
    """Tests for crate_keys_with_reexports."""

    def _chain(self, store: CrateStore, temp_dir: Path):
        store.replace_crate("a-1.0.0", temp_dir, CrateItems(), ["b", "missing"])
        store.replace_crate("b-1.0.0", temp_dir, CrateItems(), ["c", "a"])
        store.replace_crate("c-1.0.0", temp_dir, CrateItems(), ["d"])
        store.replace_crate("d-1.0.0", temp_dir, CrateItems(), [])

    def test_transitive(self, store: CrateStore, temp_dir: Path):
        self._chain(store, temp_dir)
        assert store.crate_keys_with_reexports("a-1.0.0") == ["a-1.0.0", "b-1.0.0", "c-1.0.0", "d-1.0.0"]

    def test_depth_cap(self, store: CrateStore, temp_dir: Path):
        self._chain(store, temp_dir)
        assert store.crate_keys_with_reexports("a-1.0.0", max_depth=2) == ["a-1.0.0", "b-1.0.0", "c-1.0.0"]

    def test_size_cap(self, store: CrateStore, temp_dir: Path):
        self._chain(store, temp_dir)
        assert store.crate_keys_with_reexports("a-1.0.0", max_crates=2) == ["a-1.0.0", "b-1.0.0"]


class TestLookupById:
    """Tests for global identifier lookup."""

    def test_finds_item_and_owner(self, store: CrateStore, temp_dir: Path):
        items = _functions("demo-1.0.0", ["a", "b"])
        store.replace_crate("demo-1.0.0", temp_dir, items, [])

        kind, key, record = store.get_item_by_id(items.functions[1].id)
        assert (kind, key, record) == ("functions", "demo-1.0.0", items.functions[1])
        assert store.get_item_by_id(items.functions[1].id.upper())[2] == items.functions[1]

    def test_unknown_id(self, store: CrateStore):
        assert store.get_item_by_id("ffffffff") is None

    def test_collision_resolved_by_table_order(self, store: CrateStore, temp_dir: Path):
        shared = "abcdef01"
        impls = CrateItems()
        impls.add("impls", ImplInfo(id=shared, file="src/lib.rs", line=1, end_line=2, self_type="X"))
        store.replace_crate("aaa-1.0.0", temp_dir, impls, [])

        structs = CrateItems()
        structs.add("structs", StructInfo(
            id=shared, name="S", file="src/lib.rs", line=1, end_line=None, visibility="pub",
        ))
        store.replace_crate("zzz-1.0.0", temp_dir, structs, [])

        kind, key, _ = store.get_item_by_id(shared)
        assert (kind, key) == ("structs", "zzz-1.0.0")

    def test_collision_across_crates_prefers_lowest_key(self, store: CrateStore, temp_dir: Path):
        for key in ("beta-1.0.0", "alpha-1.0.0"):
            items = CrateItems()
            items.add("functions", FunctionInfo(
                id="12345678", name="f", file="src/lib.rs", line=1, end_line=1, signature="fn f()",
            ))
            store.replace_crate(key, temp_dir, items, [])
        assert store.get_item_by_id("12345678")[1] == "alpha-1.0.0"


class TestStoreLifecycle:
    """Tests for the process-wide store and concurrent access."""

    def test_get_store_is_shared(self, crate_home: Path):
        first = get_store()
        assert get_store() is first
        assert first.db_path == crate_home / "index.db"
        close_store()
        assert get_store() is not first

    def test_usable_from_other_threads(self, store: CrateStore, temp_dir: Path):
        errors = []

        def write(n: int) -> None:
            try:
                key = f"crate{n}-1.0.0"
                store.replace_crate(key, temp_dir, _functions(key, ["a", "b"]), [])
            except Exception as exc:  # pragma: no cover - reported below
                errors.append(exc)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.list_crate_keys()) == 8

    def test_foreign_keys_enabled(self, store: CrateStore):
        with pytest.raises(sqlite3.IntegrityError):
            store.conn.execute(
                "INSERT INTO functions (crate_id, id, name, file, line, signature) "
                "VALUES (999, 'x', 'x', 'x', 1, 'fn x()')"
            )
