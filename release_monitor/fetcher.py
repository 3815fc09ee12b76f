"""Asynchronous source fetching and payload normalisation."""
from __future__ import annotations

import asyncio
import calendar
import html
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

import aiohttp
import feedparser
from bs4 import BeautifulSoup

from .config import FetchOptions, Source, SourceType
from .errors import (
    FetchTimeout,
    FetchTransient,
    HttpError,
    MalformedRedirect,
    ResponseTooLarge,
    TooManyRedirects,
)

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; ReleaseMonitor/1.0)"
GITHUB_API = "https://api.github.com"
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

MAX_FEED_ENTRIES = 20
MAX_RELEASES = 10
MAX_SCRAPED_LINKS = 5
DESCRIPTION_LIMIT = 500
LINK_TEXT_BAND = (5, 200)
DAY_MS = 86_400_000
CHUNK_SIZE = 64 * 1024

_TAG_RE = re.compile(r"<[^>]+>")
_LETTER_RE = re.compile(r"[^\W\d_]")
_LOCATOR_PART_RE = re.compile(r"^[\w.-]+$")
_SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class RawItem:
    """Unnormalised record pulled out of a feed or page."""

    title: str
    link: str
    description: str
    published_raw: str


@dataclass(frozen=True)
class Item:
    """Normalised representation of a discovered item."""

    id: str
    title: str
    url: str
    description: str
    published_at: int
    source_id: str
    version: Optional[str] = None
    prerelease: Optional[bool] = None
    raw_data: Dict[str, Any] = field(default_factory=dict, compare=False)


def identity_of(value: str) -> str:
    """Return a short, stable base-36 token for ``value``.

    A 32-bit rolling hash (``h * 31 + c``). Collisions merge two items into
    one, which only ever costs a missed notification.
    """

    hashed = 0
    for char in value:
        hashed = (hashed * 31 + ord(char)) & 0xFFFFFFFF
    if hashed & 0x80000000:
        hashed -= 1 << 32
    hashed = abs(hashed)
    if hashed == 0:
        return "0"
    digits: List[str] = []
    while hashed:
        hashed, remainder = divmod(hashed, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def _now_ms() -> int:
    return int(time.time() * 1000)


def _clean_text(value: str) -> str:
    text = _TAG_RE.sub(" ", value or "")
    text = html.unescape(text)
    return " ".join(text.split())


async def _read_capped(response: Any, max_bytes: int, url: str) -> bytes:
    declared = getattr(response, "content_length", None)
    if declared is not None and declared > max_bytes:
        response.close()
        raise ResponseTooLarge(f"Response too large (>{max_bytes} bytes): {url}", url)

    chunks: List[bytes] = []
    size = 0
    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
        size += len(chunk)
        if size > max_bytes:
            response.close()
            raise ResponseTooLarge(f"Response too large (>{max_bytes} bytes): {url}", url)
        chunks.append(chunk)
    return b"".join(chunks)


def _decode(payload: bytes, charset: Optional[str]) -> str:
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


async def fetch_content(
    session: Any,
    url: str,
    options: Optional[FetchOptions] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> str:
    """Download ``url`` and return the decoded body.

    Redirects are followed by hand so the budget in ``options.max_redirects``
    is enforced. Raises a ``FetchTransient`` subclass on timeout, non-2xx
    status, exhausted or malformed redirect, or an oversized body.
    """

    options = options or FetchOptions()
    request_headers = {"User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)
    timeout = aiohttp.ClientTimeout(total=options.timeout)

    remaining = options.max_redirects
    current = url
    try:
        while True:
            async with session.get(
                current,
                headers=request_headers,
                timeout=timeout,
                allow_redirects=False,
            ) as response:
                if response.status in REDIRECT_STATUSES:
                    location = response.headers.get("Location")
                    if not location:
                        raise MalformedRedirect(f"Redirect without location header: {current}", current)
                    if remaining <= 0:
                        raise TooManyRedirects(
                            f"Too many redirects ({options.max_redirects}): {url}", url
                        )
                    remaining -= 1
                    target = urljoin(current, location)
                    logger.debug("Following redirect: %s -> %s", current, target)
                    current = target
                    continue
                if not 200 <= response.status < 300:
                    raise HttpError(response.status, current)
                payload = await _read_capped(response, options.max_bytes, current)
                return _decode(payload, getattr(response, "charset", None))
    except asyncio.TimeoutError as exc:
        raise FetchTimeout(f"Timeout after {options.timeout}s: {current}", current) from exc
    except aiohttp.ClientError as exc:
        raise FetchTransient(f"Request failed for {current}: {exc}", current) from exc


# -- feeds -----------------------------------------------------------------


def _entry_timestamp(entry: Mapping[str, Any]) -> Optional[int]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return calendar.timegm(parsed) * 1000


def parse_feed(payload: str, limit: int = MAX_FEED_ENTRIES) -> List[Tuple[RawItem, Optional[int]]]:
    """Extract up to ``limit`` entries from RSS/Atom markup.

    Entries with neither a title nor a link are dropped. Returns each raw
    record with its parsed publish time in epoch milliseconds, if any.
    """

    parsed = feedparser.parse(payload)
    if parsed.bozo and not parsed.entries:
        logger.debug("Feed parsing failed: %s", parsed.get("bozo_exception"))

    records: List[Tuple[RawItem, Optional[int]]] = []
    for entry in parsed.entries:
        if len(records) >= limit:
            break
        title = " ".join((entry.get("title") or "").split())
        link = (entry.get("link") or "").strip()
        if not title and not link:
            continue
        description = _clean_text(entry.get("summary") or entry.get("description") or "")
        published_raw = entry.get("published") or entry.get("updated") or ""
        raw = RawItem(
            title=title,
            link=link,
            description=description[:DESCRIPTION_LIMIT],
            published_raw=published_raw,
        )
        records.append((raw, _entry_timestamp(entry)))
    return records


def _matches_filter(raw: RawItem, needle: Optional[str]) -> bool:
    if not needle:
        return True
    return needle in raw.title or needle in raw.description


async def fetch_feed(session: Any, source: Source, options: FetchOptions) -> List[Item]:
    payload = await fetch_content(session, source.url, options)
    now = _now_ms()
    items: List[Item] = []
    for raw, published_at in parse_feed(payload):
        if not _matches_filter(raw, source.filter):
            continue
        items.append(
            Item(
                id=identity_of(raw.link or raw.title),
                title=raw.title or raw.link,
                url=raw.link,
                description=raw.description,
                published_at=published_at if published_at is not None else now,
                source_id=source.identifier,
                raw_data={
                    "title": raw.title,
                    "link": raw.link,
                    "description": raw.description,
                    "pubDate": raw.published_raw,
                },
            )
        )
    return items


# -- release API -----------------------------------------------------------


def split_repository(locator: str) -> Tuple[str, str]:
    """Return ``(owner, repo)`` from ``owner/repo`` or a repository URL."""

    path = urlparse(locator).path if "://" in locator else locator
    parts = [part for part in path.strip().strip("/").split("/") if part]
    if len(parts) < 2:
        raise ValueError(f"Expected an owner/repo locator, got {locator!r}")
    owner, repo = parts[-2], parts[-1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not (_LOCATOR_PART_RE.match(owner) and _LOCATOR_PART_RE.match(repo)):
        raise ValueError(f"Expected an owner/repo locator, got {locator!r}")
    return owner, repo


def _release_timestamp(value: Optional[str]) -> int:
    if not value:
        return _now_ms()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable release date %r", value)
        return _now_ms()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _release_to_item(release: Mapping[str, Any], source: Source) -> Item:
    tag = str(release.get("tag_name") or "")
    return Item(
        id=f"github-{release['id']}",
        title=f"{source.name} - {tag}",
        url=str(release.get("html_url") or ""),
        description=(release.get("body") or "")[:DESCRIPTION_LIMIT],
        published_at=_release_timestamp(release.get("published_at")),
        source_id=source.identifier,
        version=tag or None,
        prerelease=bool(release.get("prerelease", False)),
        raw_data=dict(release),
    )


async def fetch_releases(session: Any, source: Source, options: FetchOptions) -> List[Item]:
    owner, repo = split_repository(source.url)
    api_url = f"{GITHUB_API}/repos/{owner}/{repo}/releases?per_page={MAX_RELEASES}"
    headers = {"Accept": "application/vnd.github.v3+json"}
    token = os.getenv("GITHUB_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"

    payload = await fetch_content(session, api_url, options, headers=headers)
    releases = json.loads(payload)
    if not isinstance(releases, list):
        raise ValueError(f"Unexpected release payload for {owner}/{repo}")
    return [_release_to_item(release, source) for release in releases[:MAX_RELEASES]]


# -- scraped pages ---------------------------------------------------------


def _select_anchors(soup: BeautifulSoup, selector: Optional[str]) -> List[Any]:
    if selector:
        try:
            matches = soup.select(selector)
        except Exception as exc:  # soupsieve rejects selectors it cannot parse
            logger.debug("Ignoring selector %r: %s", selector, exc)
            matches = []
        anchors: List[Any] = []
        for element in matches:
            if element.name == "a" and element.get("href"):
                anchors.append(element)
            else:
                anchors.extend(element.find_all("a", href=True))
        if anchors:
            return anchors
    return soup.find_all("a", href=True)


def extract_links(
    markup: str,
    base_url: str,
    selector: Optional[str] = None,
    limit: int = MAX_SCRAPED_LINKS,
) -> List[RawItem]:
    """Pull candidate update links out of an HTML page, in page order."""

    soup = BeautifulSoup(markup, "html.parser")
    low, high = LINK_TEXT_BAND
    seen: set = set()
    links: List[RawItem] = []
    for anchor in _select_anchors(soup, selector):
        href = anchor["href"].strip()
        if not href or href.lower().startswith(_SKIPPED_HREF_PREFIXES):
            continue
        text = " ".join(anchor.get_text(" ").split())
        if not (low <= len(text) <= high) or not _LETTER_RE.search(text):
            continue
        absolute = urljoin(base_url, href)
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(RawItem(title=text, link=absolute, description="", published_raw=""))
        if len(links) >= limit:
            break
    return links


async def fetch_scrape(session: Any, source: Source, options: FetchOptions) -> List[Item]:
    markup = await fetch_content(session, source.url, options)
    now = _now_ms()
    items: List[Item] = []
    # Page order is taken as recency order; timestamps are estimates.
    for index, raw in enumerate(extract_links(markup, source.url, source.selector)):
        items.append(
            Item(
                id=identity_of(raw.link),
                title=raw.title,
                url=raw.link,
                description=f"Update from {source.name}",
                published_at=now - index * DAY_MS,
                source_id=source.identifier,
                raw_data={"text": raw.title, "url": raw.link, "timestamp_estimated": True},
            )
        )
    return items


async def fetch_reference(session: Any, source: Source, options: FetchOptions) -> List[Item]:
    logger.info("[%s] Reference only - manual check required", source.identifier)
    return []


Handler = Callable[[Any, Source, FetchOptions], Awaitable[List[Item]]]

HANDLERS: Dict[SourceType, Handler] = {
    SourceType.FEED: fetch_feed,
    SourceType.RELEASE_API: fetch_releases,
    SourceType.SCRAPE: fetch_scrape,
    SourceType.REFERENCE_ONLY: fetch_reference,
}


async def fetch_source(
    session: Any, source: Source, options: Optional[FetchOptions] = None
) -> List[Item]:
    """Fetch and normalise one source. Never raises; failures yield ``[]``."""

    if not source.enabled:
        logger.info("[%s] Skipped (disabled)", source.identifier)
        return []

    handler = HANDLERS[source.source_type]
    logger.info("[%s] Fetching %s...", source.identifier, source.source_type.value)
    try:
        items = await handler(session, source, options or FetchOptions())
    except FetchTransient as exc:
        logger.warning("[%s] Fetch failed: %s", source.identifier, exc)
        return []
    except Exception as exc:
        logger.warning("[%s] Could not process source: %s", source.identifier, exc)
        return []
    logger.debug("[%s] %d items", source.identifier, len(items))
    return items


async def fetch_all(
    sources: Sequence[Source],
    concurrency: int = 2,
    options: Optional[FetchOptions] = None,
    pause: float = 0.1,
) -> Dict[str, List[Item]]:
    """Fetch every source in waves of ``concurrency`` and key results by id."""

    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    results: Dict[str, List[Item]] = {}
    connector = aiohttp.TCPConnector(limit_per_host=5)
    async with aiohttp.ClientSession(connector=connector) as session:
        for start in range(0, len(sources), concurrency):
            wave = sources[start : start + concurrency]
            outcomes = await asyncio.gather(
                *(fetch_source(session, source, options) for source in wave)
            )
            for source, items in zip(wave, outcomes):
                results[source.identifier] = items
            if pause > 0 and start + concurrency < len(sources):
                await asyncio.sleep(pause)

    total = sum(len(items) for items in results.values())
    logger.info("Fetched %d items from %d sources", total, len(results))
    return results


__all__ = [
    "Item",
    "RawItem",
    "HANDLERS",
    "identity_of",
    "fetch_content",
    "parse_feed",
    "extract_links",
    "split_repository",
    "fetch_feed",
    "fetch_releases",
    "fetch_scrape",
    "fetch_reference",
    "fetch_source",
    "fetch_all",
]
