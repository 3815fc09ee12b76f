from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List

import pytest

from release_monitor.config import Settings
from release_monitor.errors import ConfigMissing, DeliveryFailure
from release_monitor.fetcher import Item, identity_of
from release_monitor.pipeline import run_pipeline
from release_monitor.state import WatermarkStore

SOURCES = """
sources:
  - id: A
    name: Feed A
    category: server
    type: rss
    url: https://example.com/a.xml
"""


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[tuple] = []

    async def send(self, new_items, stats) -> None:
        self.calls.append((list(new_items), stats))
        if self.fail:
            raise DeliveryFailure("webhook down")


def feed_item(link: str, title: str, published_at: int) -> Item:
    return Item(
        id=identity_of(link),
        title=title,
        url=link,
        description="",
        published_at=published_at,
        source_id="A",
    )


X1 = feed_item("https://example.com/x1", "Deprecated flag removed", 1)
X2 = feed_item("https://example.com/x2", "Docs refresh", 2)
X3 = feed_item("https://example.com/x3", "Critical security fix", 3)


def install_fetch(monkeypatch: pytest.MonkeyPatch, batches: List[List[Item]]) -> List[list]:
    seen_sources: List[list] = []

    async def fake_fetch_all(sources, concurrency=2, options=None, pause=0.1) -> Dict[str, List[Item]]:
        seen_sources.append([source.identifier for source in sources])
        return {"A": batches.pop(0)}

    monkeypatch.setattr("release_monitor.pipeline.fetch_all", fake_fetch_all)
    return seen_sources


def make_settings(tmp_path: Path, **kwargs) -> Settings:
    sources_path = tmp_path / "sources.yaml"
    sources_path.write_text(SOURCES)
    return Settings(sources_path=sources_path, state_path=tmp_path / "cache" / "state.json", **kwargs)


def test_first_run_then_new_item(monkeypatch, tmp_path: Path):
    install_fetch(monkeypatch, [[X1, X2], [X1, X2, X3]])
    settings = make_settings(tmp_path)
    notifier = RecordingNotifier()

    first = asyncio.run(run_pipeline(settings, notifier=notifier))
    assert first.is_first_run is True
    assert first.new_items == []
    assert notifier.calls == []
    state = WatermarkStore(settings.state_path).load()
    assert set(state.sources["A"].seen_ids) == {X1.id, X2.id}

    second = asyncio.run(run_pipeline(settings, notifier=notifier))
    assert second.is_first_run is False
    assert [entry.id for entry in second.new_items] == [X3.id]
    assert second.new_items[0].severity.value == "critical"
    assert second.delivered is True
    delivered_items, stats = notifier.calls[0]
    assert [entry.id for entry in delivered_items] == [X3.id]
    assert stats.critical == 1
    assert WatermarkStore(settings.state_path).load().sources["A"].item_count == 3


def test_quiet_run_still_notifies_with_empty_batch(monkeypatch, tmp_path: Path):
    install_fetch(monkeypatch, [[X1], [X1]])
    settings = make_settings(tmp_path)
    notifier = RecordingNotifier()
    asyncio.run(run_pipeline(settings, notifier=notifier))
    report = asyncio.run(run_pipeline(settings, notifier=notifier))
    assert report.new_items == []
    assert notifier.calls[0][1].total == 0


def test_delivery_failure_keeps_snapshot(monkeypatch, tmp_path: Path):
    install_fetch(monkeypatch, [[X1], [X1, X3]])
    settings = make_settings(tmp_path)
    asyncio.run(run_pipeline(settings))

    report = asyncio.run(run_pipeline(settings, notifier=RecordingNotifier(fail=True)))

    assert report.delivered is False
    assert [entry.id for entry in report.new_items] == [X3.id]
    state = WatermarkStore(settings.state_path).load()
    assert X3.id in state.seen_ids()


def test_dry_run_skips_delivery(monkeypatch, tmp_path: Path):
    install_fetch(monkeypatch, [[X1], [X1, X2]])
    settings = make_settings(tmp_path, dry_run=True)
    notifier = RecordingNotifier()
    asyncio.run(run_pipeline(settings, notifier=notifier))
    report = asyncio.run(run_pipeline(settings, notifier=notifier))
    assert [entry.id for entry in report.new_items] == [X2.id]
    assert report.delivered is False
    assert notifier.calls == []


def test_force_notify_reports_everything_on_first_run(monkeypatch, tmp_path: Path):
    install_fetch(monkeypatch, [[X1, X2]])
    settings = make_settings(tmp_path, force_notify=True)
    notifier = RecordingNotifier()
    report = asyncio.run(run_pipeline(settings, notifier=notifier))
    assert report.is_first_run is False
    assert {entry.id for entry in report.new_items} == {X1.id, X2.id}
    assert len(notifier.calls) == 1


def test_missing_config_aborts_before_fetch(monkeypatch, tmp_path: Path):
    seen = install_fetch(monkeypatch, [[X1]])
    settings = Settings(sources_path=tmp_path / "missing.yaml", state_path=tmp_path / "state.json")
    with pytest.raises(ConfigMissing):
        asyncio.run(run_pipeline(settings))
    assert seen == []
    assert not settings.state_path.exists()


def test_store_can_be_injected(monkeypatch, tmp_path: Path):
    install_fetch(monkeypatch, [[X1]])
    settings = make_settings(tmp_path)
    store = WatermarkStore(tmp_path / "elsewhere.json")
    asyncio.run(run_pipeline(settings, store=store))
    assert store.path.exists()
    assert not settings.state_path.exists()
