import argparse
import importlib
from pathlib import Path

import pytest

from release_monitor.__main__ import build_parser, main
from release_monitor.commands import Command, command_registry, discover_commands
from release_monitor.commands.run import build_settings
from release_monitor.config import DEFAULT_SOURCES_PATH, DEFAULT_STATE_PATH
from release_monitor.fetcher import Item
from release_monitor.scorer import SEVERITY_SCORES, ScoredItem, Severity
from release_monitor.state import WatermarkStore, build_snapshot


def test_discover_commands_finds_all_subclasses():
    module = importlib.import_module("tests.sample_commands")
    commands = discover_commands(module)
    names = [command.name for command in commands]
    assert names == sorted(names)
    assert {"alpha", "beta"}.issubset(set(names))
    assert all(issubclass(command, Command) for command in commands)


def test_command_attach_registers_parser():
    module = importlib.import_module("tests.sample_commands")
    commands = discover_commands(module)
    parser = argparse.ArgumentParser(prog="test")
    subparsers = parser.add_subparsers(dest="command", required=True)
    for command in commands:
        command.attach(subparsers)

    help_text = parser.format_help()
    assert "alpha" in help_text
    assert "beta" in help_text


def test_builtin_commands_are_registered():
    help_text = build_parser().format_help()
    for name in ("run", "stats", "reset"):
        assert name in help_text


def test_shared_path_options_follow_command_flags():
    parser = build_parser()
    run_args = parser.parse_args(["run"])
    assert run_args.sources == DEFAULT_SOURCES_PATH
    assert run_args.state == DEFAULT_STATE_PATH

    stats_args = parser.parse_args(["stats", "--state", "elsewhere.json"])
    assert stats_args.state == Path("elsewhere.json")
    assert not hasattr(stats_args, "sources")


def test_command_registry_rejects_clashing_names():
    class First(Command):
        name = "sync"

    class Second(Command):
        name = "refresh"
        aliases = ("sync",)

    assert set(command_registry([First])) == {"sync"}
    with pytest.raises(ValueError):
        command_registry([First, Second])


def test_log_level_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    assert build_parser().parse_args(["stats"]).log_level == "WARNING"


def test_run_arguments_override_environment(monkeypatch):
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.example.com/env")
    monkeypatch.delenv("DRY_RUN", raising=False)
    args = build_parser().parse_args(
        ["run", "--dry-run", "--concurrency", "3", "--max-redirects", "2", "--state", "s.json"]
    )
    settings = build_settings(args)
    assert settings.dry_run is True
    assert settings.concurrency == 3
    assert settings.fetch.max_redirects == 2
    assert settings.fetch.timeout == 10.0
    assert settings.state_path == Path("s.json")
    assert settings.webhook_url == "https://hooks.example.com/env"


def test_run_returns_failure_and_reports_error(monkeypatch, tmp_path: Path):
    reported = []

    async def failing_pipeline(settings, store=None, notifier=None):
        raise RuntimeError("kaput")

    async def fake_send_error(self, error, context=""):
        reported.append((str(error), context))

    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.example.com/x")
    monkeypatch.delenv("DRY_RUN", raising=False)
    monkeypatch.setattr("release_monitor.commands.run.run_pipeline", failing_pipeline)
    monkeypatch.setattr("release_monitor.notifier.SlackNotifier.send_error", fake_send_error)

    assert main(["run", "--sources", str(tmp_path / "sources.yaml")]) == 1
    assert reported == [("kaput", "Main monitoring process")]


def test_run_with_missing_config_exits_non_zero(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    code = main(
        ["run", "--sources", str(tmp_path / "missing.yaml"), "--state", str(tmp_path / "state.json")]
    )
    assert code == 1
    assert not (tmp_path / "state.json").exists()


def test_stats_and_reset_commands(tmp_path: Path, capsys):
    state_path = tmp_path / "state.json"
    assert main(["stats", "--state", str(state_path)]) == 0
    assert "not initialized" in capsys.readouterr().out

    item = Item(id="x1", title="Release 1", url="https://example.com", description="", published_at=0, source_id="A")
    entry = ScoredItem(item, Severity.LOW, SEVERITY_SCORES[Severity.LOW], (), "server", "A")
    WatermarkStore(state_path).persist(build_snapshot([entry]))

    assert main(["stats", "--state", str(state_path)]) == 0
    out = capsys.readouterr().out
    assert "Sources tracked: 1" in out
    assert "Latest: Release 1" in out

    assert main(["reset", "--state", str(state_path)]) == 0
    assert "backed up" in capsys.readouterr().out
    assert not state_path.exists()
