"""Slack delivery for aggregated alerts."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .errors import DeliveryFailure
from .scorer import ScoredItem, Severity, SummaryStats

logger = logging.getLogger(__name__)

CATEGORY_ORDER = ("infrastructure", "server", "app")

SEVERITY_EMOJI = {
    Severity.CRITICAL: ":red_circle:",
    Severity.HIGH: ":large_orange_diamond:",
    Severity.MEDIUM: ":large_blue_diamond:",
    Severity.LOW: ":white_circle:",
}

CATEGORY_EMOJI = {
    "infrastructure": ":gear:",
    "server": ":desktop_computer:",
    "app": ":iphone:",
}

CATEGORY_NAMES = {
    "infrastructure": "Infrastructure",
    "server": "Server",
    "app": "App",
}

CATEGORY_ACTIONS = {
    "infrastructure": [
        "check impact on servers and middleware",
        "consider applying security patches",
    ],
    "server": [
        "review API/SDK dependencies",
        "run compatibility tests",
        "update libraries where needed",
    ],
    "app": [
        "assess impact on iOS/Android apps",
        "verify builds and run tests",
        "check store submission requirements",
    ],
}

MEDIUM_PREVIEW = 3


def _label(category: str) -> str:
    emoji = CATEGORY_EMOJI.get(category, ":question:")
    return f"{emoji} {CATEGORY_NAMES.get(category, category)}"


def _by_category(items: Sequence[ScoredItem]) -> Dict[str, List[ScoredItem]]:
    grouped: Dict[str, List[ScoredItem]] = {}
    for entry in items:
        grouped.setdefault(entry.category, []).append(entry)
    ordered = [category for category in CATEGORY_ORDER if category in grouped]
    ordered += sorted(category for category in grouped if category not in CATEGORY_ORDER)
    return {category: grouped[category] for category in ordered}


def format_message(new_items: Sequence[ScoredItem], stats: SummaryStats) -> str:
    """Render the alert as Slack mrkdwn."""

    if stats.total == 0:
        return "*[Release Monitor] Updates this period: none*\n\nNo new updates were detected."

    lines: List[str] = [f"*[Release Monitor] Updates this period: {stats.total}*", ""]

    lines.append("*Summary by category*")
    for category, cat in stats.by_category.items():
        lines.append(
            f"{_label(category)}: {cat.total} "
            f"(Critical:{cat.critical} High:{cat.high} Medium:{cat.medium} Low:{cat.low})"
        )
    lines.append("")

    lines.append("*Summary by severity*")
    lines.append(
        " ".join(
            f"{SEVERITY_EMOJI[severity]} {severity.value.capitalize()}: "
            f"{getattr(stats, severity.value)}"
            for severity in Severity
        )
    )
    lines.append("")

    urgent = [entry for entry in new_items if entry.severity in (Severity.CRITICAL, Severity.HIGH)]
    if urgent:
        lines.append(f"*Important updates (Critical/High): {len(urgent)}*")
        lines.append("")
        for category, entries in _by_category(urgent).items():
            lines.append(f"{_label(category)} ({len(entries)})")
            for entry in entries:
                reasons = f" _[{', '.join(entry.severity_reasons)}]_" if entry.severity_reasons else ""
                lines.append(f"  {SEVERITY_EMOJI[entry.severity]} {entry.source_name}: {entry.title}{reasons}")
                lines.append(f"     <{entry.url}|Details>")
            lines.append("")

    medium = [entry for entry in new_items if entry.severity == Severity.MEDIUM]
    if medium:
        lines.append(f"*Medium priority updates: {len(medium)}*")
        lines.append("")
        for category, entries in _by_category(medium).items():
            lines.append(f"{_label(category)} ({len(entries)})")
            for entry in entries[:MEDIUM_PREVIEW]:
                lines.append(f"  • {entry.source_name}: {entry.title[:60]}")
            if len(entries) > MEDIUM_PREVIEW:
                lines.append(f"  _...and {len(entries) - MEDIUM_PREVIEW} more_")
            lines.append("")

    low = [entry for entry in new_items if entry.severity == Severity.LOW]
    if low:
        lines.append(f"*Other updates (Low): {len(low)}*")
        lines.append(
            "  ".join(
                f"{_label(category)}: {len(entries)}" for category, entries in _by_category(low).items()
            )
        )
        lines.append("_See the monitor log for details_")
        lines.append("")

    lines.append("*Recommended actions*")
    if stats.critical:
        lines.append("• :rotating_light: *Critical*: review and start remediation immediately")
    if stats.high:
        lines.append("• :warning: *High*: assess impact and deadlines")
    for category in _by_category(urgent):
        actions = CATEGORY_ACTIONS.get(category)
        if actions:
            lines.append(f"• {_label(category)}: {', '.join(actions)}")

    return "\n".join(lines).rstrip() + "\n"


class SlackNotifier:
    """Posts alerts to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, session: Optional[Any] = None, timeout: float = 10.0) -> None:
        if not webhook_url:
            raise ValueError("A Slack webhook URL is required")
        self.webhook_url = webhook_url
        self._session = session
        self._timeout = timeout

    async def _post(self, message: Dict[str, Any]) -> None:
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        if self._session is not None:
            await self._post_with(self._session, message, timeout)
            return
        async with aiohttp.ClientSession() as session:
            await self._post_with(session, message, timeout)

    async def _post_with(self, session: Any, message: Dict[str, Any], timeout: Any) -> None:
        async with session.post(self.webhook_url, json=message, timeout=timeout) as response:
            if response.status != 200:
                body = await response.text()
                raise DeliveryFailure(f"Slack webhook failed: {response.status} {body}")

    async def send(self, new_items: Sequence[ScoredItem], stats: SummaryStats) -> None:
        """Deliver the alert; raises ``DeliveryFailure`` on any error."""

        logger.info("Preparing Slack notification for %d items", stats.total)
        message = {"text": format_message(new_items, stats), "mrkdwn": True}
        try:
            await self._post(message)
        except DeliveryFailure:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise DeliveryFailure(f"Slack webhook request failed: {exc}") from exc
        logger.info("Slack notification sent")

    async def send_error(self, error: BaseException, context: str = "") -> None:
        """Best-effort error report; failures are logged, never raised."""

        text = (
            "*[Release Monitor] Error*\n\n"
            "The monitoring run failed.\n\n"
            f"*Error:*\n```{error}```\n\n"
            f"*Context:* {context}\n\n"
            "See the job logs for details."
        )
        try:
            await self._post({"text": text, "mrkdwn": True})
        except (DeliveryFailure, aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.error("Failed to send error notification: %s", exc)
            return
        logger.info("Error notification sent to Slack")


__all__ = ["SlackNotifier", "format_message"]
