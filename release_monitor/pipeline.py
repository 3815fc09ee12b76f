"""High-level orchestration of a single monitoring run."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from .config import Settings, load_sources
from .errors import DeliveryFailure
from .fetcher import fetch_all
from .scorer import ScoredItem, SummaryStats, score_all_items, summary_stats
from .state import WatermarkStore, build_snapshot, diff_new_items

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunReport:
    """Outcome of one run, for the CLI and tests."""

    is_first_run: bool
    fetched: int
    scored: List[ScoredItem]
    new_items: List[ScoredItem]
    stats: Optional[SummaryStats]
    delivered: bool


async def run_pipeline(
    settings: Settings,
    store: Optional[WatermarkStore] = None,
    notifier: Optional[Any] = None,
) -> RunReport:
    """Execute fetch, score, diff, persist and deliver in sequence.

    Args:
        settings: Paths, limits and delivery flags for this run.
        store: Watermark store; defaults to one at ``settings.state_path``.
        notifier: Object with an async ``send(new_items, stats)``. When
            omitted, delivery is skipped as in a dry run.

    Returns:
        A ``RunReport`` describing what was fetched and reported.

    Configuration errors propagate before any fetch and before state is
    written. Delivery failures are logged; the snapshot is already saved.
    """

    sources = load_sources(settings.sources_path)
    enabled = [source for source in sources if source.enabled]
    logger.info("Loaded %d enabled sources (%d total)", len(enabled), len(sources))

    results = await fetch_all(sources, concurrency=settings.concurrency, options=settings.fetch)
    fetched = sum(len(items) for items in results.values())

    scored = score_all_items(results, sources)

    store = store or WatermarkStore(settings.state_path)
    previous = store.load()
    if settings.force_notify:
        logger.warning("FORCE_NOTIFY enabled - treating every item as new")
        new_items, is_first_run = list(scored), False
    else:
        diff = diff_new_items(scored, previous)
        new_items, is_first_run = diff.new_items, diff.is_first_run
    logger.info(
        "Previous state: %s, first run: %s, new items: %d",
        "initialized" if previous.initialized else "not initialized",
        is_first_run,
        len(new_items),
    )

    store.persist(build_snapshot(scored))

    if is_first_run:
        logger.info("First run: baseline recorded, skipping notification")
        return RunReport(True, fetched, scored, [], None, False)

    stats = summary_stats(new_items)
    logger.info(
        "New items - total: %d, critical: %d, high: %d, medium: %d, low: %d",
        stats.total,
        stats.critical,
        stats.high,
        stats.medium,
        stats.low,
    )

    delivered = False
    if settings.dry_run or notifier is None:
        logger.info("Dry run: would send notification with %s", stats.as_dict())
    else:
        try:
            await notifier.send(new_items, stats)
            delivered = True
        except DeliveryFailure as exc:
            logger.error("Delivery failed: %s", exc)

    return RunReport(False, fetched, scored, new_items, stats, delivered)


__all__ = ["RunReport", "run_pipeline"]
