"""Configuration helpers for the release monitor."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from .errors import ConfigInvalid, ConfigMissing


class SourceCategory(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    SERVER = "server"
    APP = "app"


class SourceType(str, Enum):
    FEED = "feed"
    RELEASE_API = "release_api"
    SCRAPE = "scrape"
    REFERENCE_ONLY = "reference_only"


# Spellings accepted in the ``type`` field of a source entry.
_TYPE_ALIASES: Dict[str, SourceType] = {
    "feed": SourceType.FEED,
    "rss": SourceType.FEED,
    "atom": SourceType.FEED,
    "release_api": SourceType.RELEASE_API,
    "releaseapi": SourceType.RELEASE_API,
    "github": SourceType.RELEASE_API,
    "scrape": SourceType.SCRAPE,
    "html": SourceType.SCRAPE,
    "reference_only": SourceType.REFERENCE_ONLY,
    "referenceonly": SourceType.REFERENCE_ONLY,
    "reference": SourceType.REFERENCE_ONLY,
}

_SEVERITY_HINTS = {"critical", "high", "medium", "low"}

DEFAULT_SOURCES_PATH = Path("config/sources.yaml")
DEFAULT_STATE_PATH = Path("cache/state.json")


@dataclass(frozen=True)
class Source:
    """Metadata describing a single monitored source."""

    identifier: str
    name: str
    category: SourceCategory
    source_type: SourceType
    url: str
    filter: Optional[str] = None
    severity_hint: Optional[str] = None
    selector: Optional[str] = None
    enabled: bool = True


@dataclass(frozen=True)
class FetchOptions:
    """Limits applied to every HTTP retrieval."""

    timeout: float = 10.0
    max_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 5


def _env_flag(key: str) -> bool:
    return os.getenv(key, "").strip().lower() in {"1", "true", "yes"}


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except (TypeError, ValueError):
        return default


@dataclass
class Settings:
    """Runtime settings for a single monitor run."""

    sources_path: Path = DEFAULT_SOURCES_PATH
    state_path: Path = DEFAULT_STATE_PATH
    webhook_url: Optional[str] = field(default=None, repr=False)
    dry_run: bool = False
    force_notify: bool = False
    concurrency: int = 2
    fetch: FetchOptions = field(default_factory=FetchOptions)

    @classmethod
    def from_env(cls, **overrides: object) -> "Settings":
        """Build settings from environment variables, then apply ``overrides``.

        ``None`` overrides are ignored so unset CLI flags keep the
        environment value.
        """

        values: Dict[str, object] = {
            "webhook_url": os.getenv("SLACK_WEBHOOK_URL") or None,
            "dry_run": _env_flag("DRY_RUN"),
            "force_notify": _env_flag("FORCE_NOTIFY"),
            "concurrency": _env_int("MONITOR_CONCURRENCY", 2),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]


def _parse_source(entry: Mapping[str, object], position: int) -> Source:
    if not isinstance(entry, Mapping):
        raise ConfigInvalid(f"Source #{position} is not a mapping")
    identifier = entry.get("id")
    url = entry.get("url")
    if not identifier:
        raise ConfigInvalid(f"Source #{position} has no id")
    if not url:
        raise ConfigInvalid(f"Source {identifier!r} has no url")

    raw_type = str(entry.get("type", "")).strip().lower()
    source_type = _TYPE_ALIASES.get(raw_type)
    if source_type is None:
        raise ConfigInvalid(f"Source {identifier!r} has unknown type {raw_type!r}")

    try:
        category = SourceCategory(str(entry.get("category", "")).strip().lower())
    except ValueError as exc:
        raise ConfigInvalid(f"Source {identifier!r} has unknown category") from exc

    hint = entry.get("severityHint", entry.get("severity_hint"))
    if hint is not None:
        hint = str(hint).lower()
        if hint not in _SEVERITY_HINTS:
            raise ConfigInvalid(f"Source {identifier!r} has unknown severity hint {hint!r}")

    enabled = entry.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigInvalid(f"Source {identifier!r} has non-boolean enabled flag {enabled!r}")

    filter_value = entry.get("filter")
    selector = entry.get("selector")
    return Source(
        identifier=str(identifier),
        name=str(entry.get("name") or identifier),
        category=category,
        source_type=source_type,
        url=str(url),
        filter=str(filter_value) if filter_value else None,
        severity_hint=hint,
        selector=str(selector) if selector else None,
        enabled=enabled,
    )


def load_sources(path: Path) -> List[Source]:
    """Load the ordered source definitions from a YAML or JSON file."""

    if not path.exists():
        raise ConfigMissing(f"Configuration file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigInvalid(f"Failed to parse {path}: {exc}") from exc

    if isinstance(raw, Mapping):
        raw = raw.get("sources")
    if not isinstance(raw, list):
        raise ConfigInvalid(f"{path} does not define a list of sources")

    sources: List[Source] = []
    seen: Dict[str, int] = {}
    for position, entry in enumerate(raw):
        source = _parse_source(entry, position)
        if source.identifier in seen:
            raise ConfigInvalid(f"Duplicate source id {source.identifier!r}")
        seen[source.identifier] = position
        sources.append(source)
    return sources


__all__ = [
    "FetchOptions",
    "Settings",
    "Source",
    "SourceCategory",
    "SourceType",
    "load_sources",
]
