"""Rule-based severity scoring for fetched items."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import Source
from .fetcher import Item

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_SCORES: Dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}

# Evaluated top tier first; the first tier with any match decides.
KEYWORD_TIERS: Tuple[Tuple[Severity, Tuple[str, ...]], ...] = (
    (
        Severity.CRITICAL,
        (
            "security vulnerability",
            "security issue",
            "vulnerability",
            "cve-",
            "remote code execution",
            "rce",
            "certificate expir",
            "service disruption",
            "outage",
            "forced upgrade",
            "end-of-life",
            "eol imminent",
            "critical security",
            "zero-day",
            "exploit",
            "malicious",
            "data breach",
            "unauthorized access",
        ),
    ),
    (
        Severity.HIGH,
        (
            "breaking change",
            "breaking:",
            "deprecated",
            "deprecation",
            "removal",
            "removed",
            "required action",
            "action required",
            "must upgrade",
            "must update",
            "major version",
            "api removal",
            "pricing change",
            "price increase",
            "end of support",
            "migration required",
            "incompatible",
            "required update",
            "urgent",
        ),
    ),
    (
        Severity.MEDIUM,
        (
            "minor version",
            "new feature",
            "enhancement",
            "improvement",
            "performance",
            "bug fix",
            "known issue",
            "workaround",
            "recommended update",
            "update available",
            "patch",
            "maintenance",
        ),
    ),
    (
        Severity.LOW,
        (
            "documentation",
            "informational",
            "announce",
            "note",
            "preview",
            "beta",
            "alpha",
        ),
    ),
)

DEFAULT_REASON = "default from source"
MAJOR_VERSION_REASON = "major version bump"
PRERELEASE_REASON = "pre-release (reduced severity)"
MAX_REASONS = 3

_MAJOR_VERSION_RE = re.compile(r"^v?\d+\.0\.0")

_ESCALATE = {Severity.LOW: Severity.MEDIUM, Severity.MEDIUM: Severity.HIGH}
_DEESCALATE = {Severity.CRITICAL: Severity.HIGH, Severity.HIGH: Severity.MEDIUM}


@dataclass(frozen=True)
class ScoreResult:
    severity: Severity
    reasons: List[str]
    score: int


@dataclass(frozen=True)
class ScoredItem:
    """An ``Item`` with its severity and owning source metadata attached."""

    item: Item
    severity: Severity
    severity_score: int
    severity_reasons: Tuple[str, ...]
    category: str
    source_name: str

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def title(self) -> str:
        return self.item.title

    @property
    def url(self) -> str:
        return self.item.url

    @property
    def published_at(self) -> int:
        return self.item.published_at

    @property
    def source_id(self) -> str:
        return self.item.source_id


@dataclass
class CategoryStats:
    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    def add(self, severity: Severity) -> None:
        self.total += 1
        setattr(self, severity.value, getattr(self, severity.value) + 1)


@dataclass
class SummaryStats(CategoryStats):
    by_category: Dict[str, CategoryStats] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "critical": self.critical,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "byCategory": {
                category: vars(stats).copy() for category, stats in self.by_category.items()
            },
        }


@lru_cache(maxsize=None)
def _word_pattern(phrase: str) -> "re.Pattern[str]":
    return re.compile(rf"\b{re.escape(phrase)}\b", re.IGNORECASE)


def match_keyword(text: str, phrase: str) -> bool:
    """Return whether ``phrase`` occurs in ``text``.

    Phrases containing ``-`` or ``:`` match as plain substrings so that
    ``"cve-"`` hits ``"cve-2024-1234"``; everything else must sit on word
    boundaries, so ``"rce"`` does not fire inside ``"resource"``.
    """

    lowered = phrase.lower()
    if "-" in lowered or ":" in lowered:
        return lowered in text.lower()
    return _word_pattern(lowered).search(text) is not None


def severity_score(severity: Severity) -> int:
    return SEVERITY_SCORES.get(severity, 1)


def _keyword_severity(text: str) -> Tuple[Optional[Severity], List[str]]:
    for severity, phrases in KEYWORD_TIERS:
        matched = [phrase for phrase in phrases if match_keyword(text, phrase)]
        if matched:
            return severity, matched
    return None, []


def score_item(item: Item, source: Source) -> ScoreResult:
    """Classify ``item`` using keyword tiers and version adjustments."""

    text = f"{item.title} {item.description}".lower()
    severity, reasons = _keyword_severity(text)
    if severity is None:
        severity = Severity(source.severity_hint) if source.severity_hint else Severity.LOW
        reasons = [DEFAULT_REASON]

    if item.version and _MAJOR_VERSION_RE.match(item.version) and severity in _ESCALATE:
        severity = _ESCALATE[severity]
        reasons.append(MAJOR_VERSION_REASON)

    if item.prerelease and severity in _DEESCALATE:
        severity = _DEESCALATE[severity]
        reasons.append(PRERELEASE_REASON)

    unique = list(dict.fromkeys(reasons))[:MAX_REASONS]
    return ScoreResult(severity=severity, reasons=unique, score=severity_score(severity))


def score_all_items(
    source_results: Mapping[str, Iterable[Item]],
    sources: Sequence[Source],
) -> List[ScoredItem]:
    """Score every fetched item and sort by severity, then newest first.

    Items whose source is no longer configured are dropped.
    """

    lookup = {source.identifier: source for source in sources}
    scored: List[ScoredItem] = []
    for source_id, items in source_results.items():
        source = lookup.get(source_id)
        if source is None:
            logger.debug("Dropping items from unknown source %s", source_id)
            continue
        for item in items:
            result = score_item(item, source)
            scored.append(
                ScoredItem(
                    item=item,
                    severity=result.severity,
                    severity_score=result.score,
                    severity_reasons=tuple(result.reasons),
                    category=source.category.value,
                    source_name=source.name,
                )
            )

    scored.sort(key=lambda entry: (entry.severity_score, entry.published_at), reverse=True)
    logger.info("Scored %d items", len(scored))
    return scored


def summary_stats(scored_items: Iterable[ScoredItem]) -> SummaryStats:
    """Tally severities overall and per category, for reporting only."""

    stats = SummaryStats()
    for entry in scored_items:
        stats.add(entry.severity)
        stats.by_category.setdefault(entry.category, CategoryStats()).add(entry.severity)
    return stats


__all__ = [
    "Severity",
    "SEVERITY_SCORES",
    "KEYWORD_TIERS",
    "ScoreResult",
    "ScoredItem",
    "CategoryStats",
    "SummaryStats",
    "match_keyword",
    "severity_score",
    "score_item",
    "score_all_items",
    "summary_stats",
]
