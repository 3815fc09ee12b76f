from __future__ import annotations

import argparse
import logging

from ..config import FetchOptions, Settings
from ..notifier import SlackNotifier
from ..pipeline import run_pipeline
from . import Command, CommandResult, MaybeAwaitable

logger = logging.getLogger(__name__)


def _fetch_options(args: argparse.Namespace) -> FetchOptions:
    overrides = {
        "timeout": args.timeout,
        "max_bytes": args.max_bytes,
        "max_redirects": args.max_redirects,
    }
    return FetchOptions(**{key: value for key, value in overrides.items() if value is not None})


def build_settings(args: argparse.Namespace) -> Settings:
    return Settings.from_env(
        sources_path=args.sources,
        state_path=args.state,
        webhook_url=args.webhook_url,
        dry_run=True if args.dry_run else None,
        force_notify=True if args.force_notify else None,
        concurrency=args.concurrency,
        fetch=_fetch_options(args),
    )


class RunCommand(Command):
    name = "run"
    help = "Poll every source and report new items"
    uses_sources = True
    uses_state = True

    @classmethod
    def configure_parser(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--webhook-url",
            default=None,
            help="Slack incoming webhook URL (defaults to $SLACK_WEBHOOK_URL).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Run without sending the Slack notification.",
        )
        parser.add_argument(
            "--force-notify",
            action="store_true",
            help="Treat every fetched item as new.",
        )
        parser.add_argument(
            "--concurrency",
            type=int,
            default=None,
            help="Number of sources fetched at once (default 2).",
        )
        parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds.")
        parser.add_argument("--max-bytes", type=int, default=None, help="Response size cap in bytes.")
        parser.add_argument("--max-redirects", type=int, default=None, help="Redirect budget per request.")

    @classmethod
    def handle(cls, args: argparse.Namespace) -> MaybeAwaitable:
        async def _runner() -> CommandResult:
            settings = build_settings(args)
            if not settings.webhook_url and not settings.dry_run:
                logger.warning("SLACK_WEBHOOK_URL not set. Running in dry-run mode.")
            notifier = SlackNotifier(settings.webhook_url) if settings.webhook_url else None
            try:
                report = await run_pipeline(settings, notifier=notifier)
            except Exception as exc:
                logger.exception("Monitor run failed: %s", exc)
                if notifier is not None and not settings.dry_run:
                    await notifier.send_error(exc, "Main monitoring process")
                return 1
            if report.is_first_run:
                logger.info("Initialization complete - next run will report new items")
            else:
                logger.info("Monitor complete: %d new items", len(report.new_items))
            return 0

        return _runner()


__all__ = ["RunCommand", "build_settings"]
