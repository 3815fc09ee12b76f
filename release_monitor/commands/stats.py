from __future__ import annotations

import argparse

from ..state import WatermarkStore
from . import Command, MaybeAwaitable


class StatsCommand(Command):
    name = "stats"
    help = "Show watermark statistics"
    uses_state = True

    @classmethod
    def handle(cls, args: argparse.Namespace) -> MaybeAwaitable:
        stats = WatermarkStore(args.state).stats()
        if not stats.initialized:
            print("Watermark not initialized yet")
            return 0

        print(f"Last run: {stats.last_run}")
        print(f"Sources tracked: {stats.source_count}")
        print(f"Total items cached: {stats.total_items}")
        print()
        print("Sources:")
        for source in stats.sources:
            print(f"  {source.identifier}:")
            print(f"    Items: {source.item_count}")
            print(f"    Last updated: {source.last_updated}")
            if source.latest_title:
                print(f"    Latest: {source.latest_title[:60]}")
        return 0


class ResetCommand(Command):
    name = "reset"
    help = "Back up and clear the watermark state"
    uses_state = True

    @classmethod
    def handle(cls, args: argparse.Namespace) -> MaybeAwaitable:
        backup = WatermarkStore(args.state).reset()
        if backup is None:
            print("Nothing to reset")
        else:
            print(f"State backed up to {backup}")
        return 0


__all__ = ["StatsCommand", "ResetCommand"]
