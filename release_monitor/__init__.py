"""Release monitor package: fetch, score and diff release sources."""

from .config import FetchOptions, Settings, Source, SourceCategory, SourceType, load_sources
from .fetcher import Item, RawItem, fetch_all, fetch_content, fetch_source, identity_of
from .notifier import SlackNotifier, format_message
from .pipeline import RunReport, run_pipeline
from .scorer import (
    ScoredItem,
    Severity,
    SummaryStats,
    score_all_items,
    score_item,
    summary_stats,
)
from .state import DiffResult, WatermarkState, WatermarkStore, build_snapshot, diff_new_items

__all__ = [
    "FetchOptions",
    "Settings",
    "Source",
    "SourceCategory",
    "SourceType",
    "load_sources",
    "Item",
    "RawItem",
    "fetch_all",
    "fetch_content",
    "fetch_source",
    "identity_of",
    "SlackNotifier",
    "format_message",
    "RunReport",
    "run_pipeline",
    "ScoredItem",
    "Severity",
    "SummaryStats",
    "score_all_items",
    "score_item",
    "summary_stats",
    "DiffResult",
    "WatermarkState",
    "WatermarkStore",
    "build_snapshot",
    "diff_new_items",
]
