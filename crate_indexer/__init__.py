"""crate-indexer: index Rust crates from crates.io into a local catalog."""

__version__ = "0.1.0"
