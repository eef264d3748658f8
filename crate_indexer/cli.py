"""Typer-based CLI for indexing and browsing Rust crates."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__, config
from .config_manager import load_config, save_config
from .errors import AmbiguousReferenceError, CrateIndexerError, NotFoundError
from .fetcher import CratesIoFetcher
from .models import ITEM_KINDS, CrawlReport, Declaration
from .orchestrator import CrawlOrchestrator
from .search import filter_items, find_readme, read_source_lines, search_regex
from .storage import CrateStore, close_store, get_store

app = typer.Typer(
    help="Index Rust crates from crates.io and browse their declarations.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Lines of source shown by `show` when a declaration has no end line.
SHOW_CONTEXT_LINES = 30

KIND_LABELS = {
    "functions": "Function",
    "structs": "Struct",
    "enums": "Enum",
    "traits": "Trait",
    "macros": "Macro",
    "type_aliases": "Type alias",
    "constants": "Constant",
    "impls": "Impl",
}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"crate-indexer v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Log progress (-v) or debug output (-vv).",
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """Local index of Rust crate declarations."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.call_on_close(close_store)


@contextmanager
def _reported_errors() -> Iterator[None]:
    try:
        yield
    except AmbiguousReferenceError as exc:
        typer.echo(f"Error: {exc}", err=True)
        for candidate in exc.candidates:
            typer.echo(f"  {candidate}", err=True)
        raise typer.Exit(code=1)
    except CrateIndexerError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _orchestrator(store: CrateStore) -> CrawlOrchestrator:
    settings = load_config()
    return CrawlOrchestrator.from_config(store, CratesIoFetcher.from_config(settings), settings)


def _crate_path(store: CrateStore, key: str) -> Path:
    path = store.get_crate_path(key)
    if path is None:
        raise NotFoundError(f"Crate '{key}' is not indexed")
    return path


def describe(kind: str, record: Declaration) -> str:
    """One-line rendering of a declaration for listings."""
    if kind == "functions":
        return record.signature
    if kind == "macros":
        return f"macro_rules! {record.name}"
    if kind == "type_aliases":
        return f"type {record.name} = {record.type_str}"
    if kind == "constants":
        return f"{record.kind} {record.name}: {record.type_str}"
    if kind == "impls":
        return record.name
    keyword = {"structs": "struct", "enums": "enum", "traits": "trait"}[kind]
    return f"{keyword} {record.name}"


def _first_doc_line(docs: Optional[str], width: int = 80) -> str:
    if not docs:
        return ""
    first = docs.splitlines()[0].strip()
    if len(first) > width:
        first = first[: width - 3] + "..."
    return first


def _print_report(report: CrawlReport) -> None:
    table = Table(title=f"Crawl of {report.seed}", show_header=True)
    table.add_column("Crate", style="cyan")
    table.add_column("Status")
    table.add_column("Declarations", justify="right")
    table.add_column("Details", min_width=20)

    styles = {"indexed": "green", "skipped": "yellow", "failed": "red"}
    for outcome in report.outcomes:
        total = sum(outcome.counts.values()) if outcome.counts else ""
        detail = outcome.detail or ", ".join(
            f"{outcome.counts[kind]} {label}"
            for kind, label in ITEM_KINDS.items()
            if outcome.counts.get(kind)
        )
        table.add_row(
            outcome.key or outcome.name,
            f"[{styles[outcome.status]}]{outcome.status}[/{styles[outcome.status]}]",
            str(total),
            detail,
        )
    console.print(table)
    if report.truncated:
        console.print("[yellow]Crawl stopped at the configured depth/crate limit.[/yellow]")


# ===================================================================
# Commands
# ===================================================================


@app.command("fetch")
def fetch(
    name: str = typer.Argument(..., help="Crate name on crates.io."),
    version: Optional[str] = typer.Option(None, "--version", "-V", help="Exact version (default: latest)."),
):
    """Download and index a crate plus the crates it re-exports."""
    with _reported_errors():
        report = _orchestrator(get_store()).crawl(name, version)
    _print_report(report)
    if report.failed and not report.indexed and not report.skipped:
        raise typer.Exit(code=1)


@app.command("latest")
def latest(name: str = typer.Argument(..., help="Crate name on crates.io.")):
    """Print the latest published version of a crate."""
    with _reported_errors():
        typer.echo(CratesIoFetcher.from_config(load_config()).get_latest_version(name))


@app.command("list")
def list_crates():
    """List indexed crates."""
    keys = get_store().list_crate_keys()
    if not keys:
        typer.echo("No crates indexed yet.")
        raise typer.Exit(code=0)
    for key in keys:
        typer.echo(key)


def _list_items(name: str, kind: str, pattern: Optional[str], limit: int, update: bool) -> None:
    settings = load_config()
    store = get_store()
    with _reported_errors():
        key = _orchestrator(store).ensure_indexed(name, update)
        keys = store.crate_keys_with_reexports(key, settings["max_depth"], settings["max_crates"])
        groups = [(k, filter_items(store.get_items(k, kind), pattern)) for k in keys]

    label = ITEM_KINDS[kind]
    total = 0
    for crate_key, records in groups:
        if not records:
            continue
        typer.echo(f"── {crate_key} ──")
        shown = records if not limit else records[:limit]
        for record in shown:
            typer.echo(f"[{record.id}] {describe(kind, record)}")
            typer.echo(f"  {record.file}:{record.line}")
            doc = _first_doc_line(getattr(record, "docs", None))
            if doc:
                typer.echo(f"  /// {doc}")
        if len(records) > len(shown):
            typer.echo(f"... and {len(records) - len(shown)} more {label}")
        typer.echo("")
        total += len(records)
    typer.echo(f"Total: {total} {label}")


_UPDATE_OPTION = typer.Option(
    False, "--update", "-u", help="Index the latest version first if a newer one is published.",
)


_LISTINGS = {
    "functions": "functions",
    "structs": "structs",
    "enums": "enums",
    "traits": "traits",
    "macros": "macros",
    "types": "type_aliases",
    "consts": "constants",
    "impls": "impls",
}


def _register_listing(command: str, kind: str) -> None:
    def listing(
        name: str = typer.Argument(..., help="Crate name or name-version key."),
        pattern: Optional[str] = typer.Argument(None, help="Regex filter on names."),
        limit: int = typer.Option(50, "--limit", "-n", min=0, help="Entries per crate (0 = all)."),
        update: bool = _UPDATE_OPTION,
    ):
        _list_items(name, kind, pattern, limit, update)

    listing.__doc__ = f"List {command} of a crate and of the crates it re-exports."
    app.command(command)(listing)


for _command, _kind in _LISTINGS.items():
    _register_listing(_command, _kind)


@app.command("show")
def show(item_id: str = typer.Argument(..., help="8-character declaration ID.")):
    """Show a declaration by ID, with its source."""
    store = get_store()
    with _reported_errors():
        found = store.get_item_by_id(item_id)
        if found is None:
            raise NotFoundError(f"Item with ID '{item_id}' not found")
    kind, crate_key, record = found

    typer.echo(f"{KIND_LABELS[kind]}: {record.name}")
    typer.echo(f"Crate: {crate_key}")
    typer.echo(f"File: {record.file}:{record.line}")
    typer.echo(f"ID: {record.id}")
    typer.echo(f"\n  {describe(kind, record)}")

    if getattr(record, "docs", None):
        typer.echo("\nDocumentation:")
        for line in record.docs.splitlines():
            typer.echo(f"  /// {line}")
    if kind == "structs" and record.fields:
        typer.echo("\nFields:")
        for f in record.fields:
            typer.echo(f"  {f.name}: {f.type_str}")
    if kind == "enums" and record.variants:
        typer.echo("\nVariants:")
        for v in record.variants:
            fields = f"({v.fields})" if v.fields else ""
            typer.echo(f"  {v.name}{fields} [{v.kind}]")

    end = record.end_line or record.line + SHOW_CONTEXT_LINES
    try:
        excerpt = read_source_lines(_crate_path(store, crate_key), record.file, record.line, end)
    except CrateIndexerError as exc:
        typer.echo(f"\nSource unavailable: {exc}", err=True)
        return
    typer.echo("\nSource:")
    for number, line in excerpt.numbered():
        typer.echo(f"{number:4} | {line}")


@app.command("read")
def read(
    name: str = typer.Argument(..., help="Crate name or name-version key."),
    file: str = typer.Argument(..., help="Path relative to the crate root."),
    start: Optional[int] = typer.Option(None, "--start", "-s", min=1, help="First line (1-based)."),
    end: Optional[int] = typer.Option(None, "--end", "-e", min=1, help="Last line (inclusive)."),
    update: bool = _UPDATE_OPTION,
):
    """Print a file of an indexed crate."""
    store = get_store()
    with _reported_errors():
        key = _orchestrator(store).ensure_indexed(name, update)
        excerpt = read_source_lines(_crate_path(store, key), file, start, end)

    typer.echo(f"{key}:{file} ({excerpt.total} total lines)\n")
    for number, line in excerpt.numbered():
        typer.echo(f"{number:4} | {line}")
    if excerpt.truncated:
        typer.echo(
            f"\n... truncated at line {excerpt.end}; use --start {excerpt.end + 1} to continue"
        )


@app.command("readme")
def readme(
    name: str = typer.Argument(..., help="Crate name or name-version key."),
    update: bool = _UPDATE_OPTION,
):
    """Print the README of an indexed crate."""
    store = get_store()
    with _reported_errors():
        key = _orchestrator(store).ensure_indexed(name, update)
        path = find_readme(_crate_path(store, key))
        if path is None:
            raise NotFoundError(f"No README found in {key}")
    typer.echo(f"── {key} ({path.name}) ──\n")
    typer.echo(path.read_text(encoding="utf-8", errors="replace"))


@app.command("search")
def search(
    name: str = typer.Argument(..., help="Crate name or name-version key."),
    pattern: str = typer.Argument(..., help="Regex matched against each source line."),
    limit: int = typer.Option(50, "--limit", "-n", min=0, help="Matches to print (0 = all)."),
    update: bool = _UPDATE_OPTION,
):
    """Regex search over the source files of an indexed crate."""
    store = get_store()
    settings = load_config()
    with _reported_errors():
        key = _orchestrator(store).ensure_indexed(name, update)
        matches = search_regex(_crate_path(store, key), pattern, settings["max_workers"])

    shown = matches if not limit else matches[:limit]
    for m in shown:
        typer.echo(f"{m.file}:{m.line}: {m.content}")
    if len(matches) > len(shown):
        typer.echo(f"\n... and {len(matches) - len(shown)} more matches")
    typer.echo(f"\nTotal: {len(matches)} matches")


@app.command("remove")
def remove(key: str = typer.Argument(..., help="Crate name or name-version key.")):
    """Remove a crate from the index (downloaded sources are kept)."""
    store = get_store()
    with _reported_errors():
        resolved = store.resolve_crate_key(key)
        store.delete_crate(resolved)
    typer.echo(f"Removed '{resolved}'.")


@app.command("stats")
def stats():
    """Show row counts of the index."""
    counts = get_store().stats()
    table = Table(show_header=True)
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    for table_name, count in counts.items():
        table.add_row(table_name, str(count))
    console.print(table)


@app.command("config")
def config_cmd(
    key: Optional[str] = typer.Argument(None, help="Setting to change."),
    value: Optional[str] = typer.Argument(None, help="New value."),
):
    """Show the settings, or change one of them."""
    if key is None:
        table = Table(title=str(config.CONFIG_FILE), show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for name, current in load_config().items():
            table.add_row(name, str(current))
        console.print(table)
        return
    if value is None:
        typer.echo(f"Error: missing value for '{key}'", err=True)
        raise typer.Exit(code=1)
    try:
        save_config({key: value})
    except KeyError:
        typer.echo(f"Error: unknown setting '{key}'", err=True)
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"Error: invalid value for '{key}': {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Set {key} = {load_config()[key]}")


if __name__ == "__main__":
    app()
