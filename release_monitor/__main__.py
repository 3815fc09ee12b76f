"""Command-line entry point for the release monitor."""
from __future__ import annotations

import argparse
import asyncio
import importlib
import inspect
import logging
import os
import pkgutil
import sys
from typing import Awaitable, Dict, List, Optional, Sequence, Type

from .commands import Command, CommandResult, MaybeAwaitable, command_registry, discover_commands

logger = logging.getLogger("release_monitor")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
# Third-party loggers kept at WARNING unless --debug is given.
NOISY_LOGGERS = ("aiohttp", "asyncio", "charset_normalizer")


def load_commands() -> Dict[str, Type[Command]]:
    """Import every module under ``release_monitor.commands`` and index its commands."""

    package = importlib.import_module("release_monitor.commands")
    found: List[Type[Command]] = list(discover_commands(package))
    for module_info in pkgutil.iter_modules(package.__path__):
        module = importlib.import_module(f"{package.__name__}.{module_info.name}")
        found.extend(discover_commands(module))
    return command_registry(found)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="release-monitor",
        description="Poll release sources, score new items and send one alert",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=os.getenv("LOG_LEVEL", "INFO").upper(),
        help="Logging level applied to all commands (defaults to $LOG_LEVEL or INFO).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Shortcut for --log-level=DEBUG that also unmutes library loggers.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    for command_cls in sorted(set(load_commands().values()), key=lambda cls: cls.name):
        command_cls.attach(subparsers)
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.debug else getattr(logging, args.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if not args.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _resolve(result: MaybeAwaitable) -> int:
    outcome: CommandResult
    if inspect.isawaitable(result):
        outcome = asyncio.run(_await(result))
    else:
        outcome = result  # type: ignore[assignment]
    return int(outcome or 0)


async def _await(result: Awaitable[CommandResult]) -> CommandResult:
    return await result


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args)

    command_cls: Optional[Type[Command]] = getattr(args, "_command_cls", None)
    if command_cls is None:
        parser.print_help()
        return 1

    logger.debug("Dispatching %s command", command_cls.name)
    try:
        return _resolve(command_cls.handle(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    sys.exit(main())
