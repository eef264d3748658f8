"""Wave-based crawl of a crate and the crates it publicly re-exports.

Each wave resolves, fetches and parses its packages on a thread pool, then
commits them one at a time. Names re-exported by committed crates form the
next wave; a name enters the crawl at most once, and not at all when some
version of it is already stored.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from .config_manager import DEFAULT_CONFIG
from .errors import CrateIndexerError, NotFoundError
from .fetcher import ArchiveResolver
from .manifest import normalize_crate_name
from .models import (
    FAILED,
    INDEXED,
    SKIPPED,
    CrawlOutcome,
    CrawlReport,
    IndexResult,
    crate_key,
    split_crate_key,
)
from .parser import index_crate
from .storage import CrateStore

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    name: str
    version: str
    key: str


@dataclass
class _Extracted:
    pending: _Pending
    path: Path
    result: IndexResult


class CrawlOrchestrator:
    """Index a seed crate plus the transitive closure of its re-exports.

    Args:
        store:       Catalog that receives every committed crate.
        fetcher:     Registry client (anything implementing
                     :class:`~crate_indexer.fetcher.ArchiveResolver`).
        max_workers: Thread pool size for resolving, fetching and parsing.
        max_depth:   Waves crawled after the seed wave (``0`` = unlimited).
        max_crates:  Crates indexed per crawl (``0`` = unlimited).
    """

    def __init__(
        self,
        store: CrateStore,
        fetcher: ArchiveResolver,
        max_workers: int = DEFAULT_CONFIG["max_workers"],
        max_depth: int = DEFAULT_CONFIG["max_depth"],
        max_crates: int = DEFAULT_CONFIG["max_crates"],
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.max_workers = max(1, max_workers)
        self.max_depth = max_depth
        self.max_crates = max_crates

    @classmethod
    def from_config(
        cls, store: CrateStore, fetcher: ArchiveResolver, settings: Dict[str, Any],
    ) -> "CrawlOrchestrator":
        return cls(
            store,
            fetcher,
            max_workers=settings["max_workers"],
            max_depth=settings["max_depth"],
            max_crates=settings["max_crates"],
        )

    # ------------------------------------------------------------------
    # Crawl
    # ------------------------------------------------------------------

    def crawl(self, name: str, version: Optional[str] = None) -> CrawlReport:
        """Index *name* (at *version*, or the latest) and its re-exports.

        Resolution, download and parsing failures are recorded in the report
        and never abort the crawl. A :class:`StorageError` raised while
        committing propagates; crates committed before it stay stored.
        """
        report = CrawlReport(seed=name)
        seen: Set[str] = {normalize_crate_name(name)}
        frontier: List[Tuple[str, Optional[str]]] = [(name, version)]

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while frontier:
                if self.max_depth and report.waves > self.max_depth:
                    logger.warning(
                        "Depth limit %d reached; %d crate(s) not crawled",
                        self.max_depth, len(frontier),
                    )
                    report.truncated = True
                    break

                logger.info("Wave %d: %d crate(s)", report.waves, len(frontier))
                report.waves += 1

                pending = self._resolve_wave(pool, frontier, report)
                pending = self._apply_budget(pending, report)
                extracted = self._extract_wave(pool, pending, report)

                frontier = []
                for item in extracted:
                    self.store.replace_crate(
                        item.pending.key,
                        item.path,
                        item.result.items,
                        item.result.reexported_crates,
                    )
                    report.record(CrawlOutcome(
                        name=item.pending.name,
                        key=item.pending.key,
                        status=INDEXED,
                        counts=item.result.items.counts(),
                    ))
                    for reexport in item.result.reexported_crates:
                        normalized = normalize_crate_name(reexport)
                        if normalized in seen:
                            continue
                        seen.add(normalized)
                        # Any stored version satisfies a re-export.
                        stored = self.store.find_all_crate_keys(reexport)
                        if stored:
                            logger.debug("%s already stored as %s", reexport, ", ".join(stored))
                            continue
                        frontier.append((reexport, None))

                if frontier and self._budget_left(report) == 0:
                    logger.warning(
                        "Crate limit %d reached; %d crate(s) not crawled",
                        self.max_crates, len(frontier),
                    )
                    report.truncated = True
                    break

        logger.info(
            "Crawl of %s finished: %d indexed, %d skipped, %d failed",
            name, len(report.indexed), len(report.skipped), len(report.failed),
        )
        return report

    def _resolve(self, name: str, version: Optional[str]) -> Tuple[str, str]:
        if version is None:
            version = self.fetcher.get_latest_version(name)
        return name, version

    def _resolve_wave(
        self,
        pool: ThreadPoolExecutor,
        frontier: List[Tuple[str, Optional[str]]],
        report: CrawlReport,
    ) -> List[_Pending]:
        futures = [(name, pool.submit(self._resolve, name, version)) for name, version in frontier]

        pending: List[_Pending] = []
        keys: Set[str] = set()
        for name, future in futures:
            try:
                resolved_name, resolved_version = future.result()
            except CrateIndexerError as exc:
                logger.warning("Could not resolve %s: %s", name, exc)
                report.record(CrawlOutcome(name=name, key=None, status=FAILED, detail=str(exc), error=exc))
                continue
            except Exception as exc:
                logger.warning("Unexpected error resolving %s: %r", name, exc)
                report.record(CrawlOutcome(name=name, key=None, status=FAILED, detail=repr(exc), error=exc))
                continue

            key = crate_key(resolved_name, resolved_version)
            if key in keys:
                continue
            keys.add(key)
            if self.store.has_crate(key):
                logger.info("%s is already indexed", key)
                report.record(CrawlOutcome(name=name, key=key, status=SKIPPED, detail="already indexed"))
                continue
            pending.append(_Pending(resolved_name, resolved_version, key))
        return pending

    def _budget_left(self, report: CrawlReport) -> Optional[int]:
        if not self.max_crates:
            return None
        return max(0, self.max_crates - len(report.indexed))

    def _apply_budget(self, pending: List[_Pending], report: CrawlReport) -> List[_Pending]:
        budget = self._budget_left(report)
        if budget is None or len(pending) <= budget:
            return pending
        logger.warning(
            "Crate limit %d reached; skipping %s",
            self.max_crates, ", ".join(p.key for p in pending[budget:]),
        )
        report.truncated = True
        return pending[:budget]

    def _extract(self, pending: _Pending) -> _Extracted:
        path = self.fetcher.fetch_crate(pending.name, pending.version)
        result = index_crate(path, pending.key, max_workers=self.max_workers)
        return _Extracted(pending, path, result)

    def _extract_wave(
        self,
        pool: ThreadPoolExecutor,
        pending: List[_Pending],
        report: CrawlReport,
    ) -> List[_Extracted]:
        futures = [(p, pool.submit(self._extract, p)) for p in pending]

        extracted: List[_Extracted] = []
        for p, future in futures:
            try:
                extracted.append(future.result())
            except CrateIndexerError as exc:
                logger.warning("Could not index %s: %s", p.key, exc)
                report.record(CrawlOutcome(name=p.name, key=p.key, status=FAILED, detail=str(exc), error=exc))
            except Exception as exc:
                logger.warning("Unexpected error indexing %s: %r", p.key, exc)
                report.record(CrawlOutcome(name=p.name, key=p.key, status=FAILED, detail=repr(exc), error=exc))
        return extracted

    async def crawl_async(self, name: str, version: Optional[str] = None) -> CrawlReport:
        """:meth:`crawl` on a worker thread, for use inside an event loop."""
        return await asyncio.to_thread(self.crawl, name, version)

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def ensure_indexed(self, name: str, update: bool = False) -> str:
        """Return the stored key for *name*, crawling it first if needed.

        With *update*, a bare name is checked against the registry and its
        latest version is indexed when it is not stored yet. If the registry
        cannot be reached the stored version is used.

        Raises:
            AmbiguousReferenceError: several stored versions match *name*.
            CrateIndexerError: the crate could not be indexed.
        """
        if update and split_crate_key(name)[1] is None:
            latest = self._latest_key(name)
            if latest is not None:
                return latest

        key = self.store.find_crate_key(name)
        if key is not None:
            return key

        self._raise_seed_failure(name, self.crawl(name))
        key = self.store.find_crate_key(name)
        if key is None:
            raise NotFoundError(f"Crate '{name}' could not be indexed")
        return key

    def _latest_key(self, name: str) -> Optional[str]:
        try:
            version = self.fetcher.get_latest_version(name)
        except CrateIndexerError as exc:
            logger.warning("Could not check %s for a newer version: %s", name, exc)
            return None

        key = crate_key(name, version)
        if not self.store.has_crate(key):
            logger.info("Fetching latest version %s", key)
            self._raise_seed_failure(name, self.crawl(name, version))
        return key

    @staticmethod
    def _raise_seed_failure(name: str, report: CrawlReport) -> None:
        seed = normalize_crate_name(name)
        for outcome in report.failed:
            if normalize_crate_name(outcome.name) == seed and outcome.error is not None:
                raise outcome.error
