"""Tests for Cargo.toml dependency reading."""

from pathlib import Path

from crate_indexer.manifest import normalize_crate_name, read_dependencies


class TestReadDependencies:
    """Tests for read_dependencies."""

    def test_reads_all_dependency_sections(self, sample_crate_path: Path):
        assert read_dependencies(sample_crate_path) == {"serde_json", "log", "tempfile", "cc"}

    def test_missing_manifest_yields_empty_set(self, temp_dir: Path):
        assert read_dependencies(temp_dir) == set()

    def test_malformed_manifest_yields_empty_set(self, temp_dir: Path):
        (temp_dir / "Cargo.toml").write_text("[dependencies\nserde = ", encoding="utf-8")
        assert read_dependencies(temp_dir) == set()

    def test_ignores_other_sections_and_values(self, temp_dir: Path):
        (temp_dir / "Cargo.toml").write_text(
            '[package]\nname = "x"\n\n'
            '[features]\ndefault = ["serde"]\n\n'
            '[dependencies]\nserde = { version = "1", features = ["derive"] }\n',
            encoding="utf-8",
        )
        assert read_dependencies(temp_dir) == {"serde"}

    def test_non_table_section_is_ignored(self, temp_dir: Path):
        (temp_dir / "Cargo.toml").write_text('dependencies = "oops"\n', encoding="utf-8")
        assert read_dependencies(temp_dir) == set()


def test_normalize_crate_name():
    assert normalize_crate_name("serde_json") == "serde-json"
    assert normalize_crate_name("serde-json") == "serde-json"
