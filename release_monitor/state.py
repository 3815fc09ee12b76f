"""Watermark persistence and new-item detection between runs."""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import StateCorrupt
from .scorer import ScoredItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LatestItem:
    id: str
    title: str
    published_at: int


@dataclass
class SourceWatermark:
    """What a single source reported during the last run."""

    last_updated: str
    item_count: int
    seen_ids: List[str]
    latest_item: Optional[LatestItem] = None


@dataclass
class WatermarkState:
    """The single persisted snapshot. ``initialized`` flips once, after the first run."""

    last_run: Optional[str] = None
    initialized: bool = False
    sources: Dict[str, SourceWatermark] = field(default_factory=dict)

    def seen_ids(self) -> set:
        seen: set = set()
        for watermark in self.sources.values():
            seen.update(watermark.seen_ids)
        return seen


@dataclass(frozen=True)
class DiffResult:
    new_items: List[ScoredItem]
    is_first_run: bool


@dataclass(frozen=True)
class SourceSummary:
    identifier: str
    last_updated: str
    item_count: int
    latest_title: Optional[str]


@dataclass(frozen=True)
class CacheStats:
    initialized: bool
    last_run: Optional[str] = None
    source_count: int = 0
    total_items: int = 0
    sources: List[SourceSummary] = field(default_factory=list)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def diff_new_items(scored_items: Sequence[ScoredItem], previous: WatermarkState) -> DiffResult:
    """Return the items not present in the previous snapshot.

    Nothing is reported while the store is uninitialised, so the first run
    only establishes a baseline. Batch order is preserved.
    """

    if not previous.initialized:
        logger.info("First run detected - initialising watermark only")
        return DiffResult(new_items=[], is_first_run=True)

    seen = previous.seen_ids()
    new_items = [entry for entry in scored_items if entry.id not in seen]
    return DiffResult(new_items=new_items, is_first_run=False)


def build_snapshot(scored_items: Sequence[ScoredItem], now: Optional[str] = None) -> WatermarkState:
    """Build a fresh snapshot from the complete batch of this run.

    The snapshot replaces the previous one; ids seen only in earlier runs
    are forgotten.
    """

    timestamp = now or _utc_now()
    grouped: Dict[str, List[ScoredItem]] = {}
    for entry in scored_items:
        grouped.setdefault(entry.source_id, []).append(entry)

    sources: Dict[str, SourceWatermark] = {}
    for source_id, entries in grouped.items():
        head = entries[0]
        sources[source_id] = SourceWatermark(
            last_updated=timestamp,
            item_count=len(entries),
            seen_ids=list(dict.fromkeys(entry.id for entry in entries)),
            latest_item=LatestItem(id=head.id, title=head.title, published_at=head.published_at),
        )
    return WatermarkState(last_run=timestamp, initialized=True, sources=sources)


def encode_state(state: WatermarkState) -> Dict[str, object]:
    return {
        "lastRun": state.last_run,
        "initialized": state.initialized,
        "sources": {
            source_id: {
                "lastUpdated": watermark.last_updated,
                "itemCount": watermark.item_count,
                "seenIds": list(watermark.seen_ids),
                "latestItem": (
                    {
                        "id": watermark.latest_item.id,
                        "title": watermark.latest_item.title,
                        "publishedAt": watermark.latest_item.published_at,
                    }
                    if watermark.latest_item
                    else None
                ),
            }
            for source_id, watermark in state.sources.items()
        },
    }


def decode_state(data: object) -> WatermarkState:
    """Turn decoded JSON into a ``WatermarkState``; raises ``StateCorrupt``."""

    if not isinstance(data, Mapping):
        raise StateCorrupt("State root is not an object")
    raw_sources = data.get("sources")
    if raw_sources is None:
        raw_sources = {}
    if not isinstance(raw_sources, Mapping):
        raise StateCorrupt("State 'sources' is not an object")

    sources: Dict[str, SourceWatermark] = {}
    try:
        for source_id, info in raw_sources.items():
            latest = info.get("latestItem")
            sources[str(source_id)] = SourceWatermark(
                last_updated=str(info.get("lastUpdated", "")),
                item_count=int(info.get("itemCount", 0)),
                seen_ids=[str(item_id) for item_id in info.get("seenIds") or []],
                latest_item=(
                    LatestItem(
                        id=str(latest["id"]),
                        title=str(latest.get("title", "")),
                        published_at=int(latest.get("publishedAt") or 0),
                    )
                    if latest
                    else None
                ),
            )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise StateCorrupt(f"Malformed source entry: {exc}") from exc

    return WatermarkState(
        last_run=data.get("lastRun"),
        initialized=bool(data.get("initialized", False)),
        sources=sources,
    )


class WatermarkStore:
    """File-backed watermark, scoped to a single run.

    Assumes one writer at a time; nothing guards against concurrent runs.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> WatermarkState:
        """Read the snapshot, or a fresh uninitialised state if absent or corrupt."""

        if not self.path.exists():
            return WatermarkState()
        try:
            return decode_state(json.loads(self.path.read_text()))
        except (OSError, ValueError, StateCorrupt) as exc:
            logger.error("Failed to load watermark state from %s: %s", self.path, exc)
            return WatermarkState()

    def persist(self, state: WatermarkState) -> None:
        """Overwrite the stored snapshot via a temp file and rename."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(encode_state(state), indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info("Watermark state saved to %s", self.path)

    def stats(self) -> CacheStats:
        state = self.load()
        if not state.initialized:
            return CacheStats(initialized=False)
        summaries = [
            SourceSummary(
                identifier=source_id,
                last_updated=watermark.last_updated,
                item_count=watermark.item_count,
                latest_title=watermark.latest_item.title if watermark.latest_item else None,
            )
            for source_id, watermark in state.sources.items()
        ]
        return CacheStats(
            initialized=True,
            last_run=state.last_run,
            source_count=len(summaries),
            total_items=sum(summary.item_count for summary in summaries),
            sources=summaries,
        )

    def reset(self) -> Optional[Path]:
        """Back up and remove the stored snapshot; returns the backup path."""

        if not self.path.exists():
            logger.info("No watermark state at %s; nothing to reset", self.path)
            return None
        backup = self.path.with_name(f"state_backup_{int(time.time() * 1000)}.json")
        shutil.copyfile(self.path, backup)
        self.path.unlink()
        logger.info("Watermark state backed up to %s and reset", backup)
        return backup


__all__ = [
    "CacheStats",
    "DiffResult",
    "LatestItem",
    "SourceSummary",
    "SourceWatermark",
    "WatermarkState",
    "WatermarkStore",
    "build_snapshot",
    "decode_state",
    "diff_new_items",
    "encode_state",
]
