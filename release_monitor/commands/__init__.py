"""Command plugin infrastructure for the release monitor CLI."""
from __future__ import annotations

import argparse
import inspect
from pathlib import Path
from typing import Awaitable, Dict, Iterable, List, Optional, Sequence, Type, Union

from ..config import DEFAULT_SOURCES_PATH, DEFAULT_STATE_PATH

CommandResult = Optional[int]
MaybeAwaitable = Union[CommandResult, Awaitable[CommandResult]]


class Command:
    """Base class for CLI subcommands.

    Subclasses set ``uses_sources`` / ``uses_state`` to receive the shared
    ``--sources`` / ``--state`` path options before their own arguments.
    """

    name: str = ""
    help: str = ""
    aliases: Sequence[str] = ()
    uses_sources: bool = False
    uses_state: bool = False

    @classmethod
    def configure_parser(cls, parser: argparse.ArgumentParser) -> None:
        """Hook for subclasses to define command-specific arguments."""

    @classmethod
    def handle(cls, args: argparse.Namespace) -> MaybeAwaitable:
        """Execute the command using parsed ``argparse`` arguments."""
        raise NotImplementedError("Command subclasses must implement handle()")

    @classmethod
    def attach(cls, subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
        """Register the command and its shared options on ``subparsers``."""

        if not cls.name:
            raise ValueError("Command subclasses must define a non-empty 'name'")
        parser = subparsers.add_parser(
            cls.name,
            help=cls.help or None,
            description=cls.help or None,
            aliases=list(cls.aliases),
        )
        paths = parser.add_argument_group("paths")
        if cls.uses_sources:
            paths.add_argument(
                "--sources",
                type=Path,
                default=DEFAULT_SOURCES_PATH,
                help="Path to the source definition YAML or JSON file.",
            )
        if cls.uses_state:
            paths.add_argument(
                "--state",
                type=Path,
                default=DEFAULT_STATE_PATH,
                help="Path to the watermark state JSON file.",
            )
        cls.configure_parser(parser)
        parser.set_defaults(_command_cls=cls)
        return parser


def discover_commands(module: object) -> List[Type[Command]]:
    """Return every named ``Command`` subclass defined on ``module``."""

    commands: List[Type[Command]] = []
    for _, obj in inspect.getmembers(module, inspect.isclass):
        if not issubclass(obj, Command) or obj is Command:
            continue
        if not getattr(obj, "name", ""):
            continue
        commands.append(obj)
    commands.sort(key=lambda cls: cls.name)
    return commands


def command_registry(command_types: Iterable[Type[Command]]) -> Dict[str, Type[Command]]:
    """Index commands by name and alias, rejecting clashing registrations."""

    registry: Dict[str, Type[Command]] = {}
    for command_type in command_types:
        for label in (command_type.name, *command_type.aliases):
            existing = registry.get(label)
            if existing is not None and existing is not command_type:
                raise ValueError(
                    f"Command name {label!r} is claimed by both "
                    f"{existing.__name__} and {command_type.__name__}"
                )
            registry[label] = command_type
    return registry


__all__ = ["Command", "CommandResult", "MaybeAwaitable", "command_registry", "discover_commands"]
