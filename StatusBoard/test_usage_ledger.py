"""Tests for the usage ledger and today stats."""
import pytest
from datetime import datetime, timedelta
from unittest.mock import Mock
from device_data import UsageRecord
from json_store import JsonDocument
from test_device_presence import TZ, FakeNow, LockCheckingDocument
from usage_ledger import (
    DailyRolloverScheduler,
    TodayStatsStore,
    UsageLedger,
    format_duration,
    seconds_until_midnight,
)


@pytest.fixture
def clock():
    return FakeNow(datetime(2024, 5, 10, 15, 0, 0, tzinfo=TZ))


def record(app, when, duration_ms=60000, device_class="pc", device_id=None):
    return UsageRecord(
        id=f"{app}-{when.isoformat()}",
        device_id=device_id or device_class,
        device_class=device_class,
        app_name=app,
        start_time=(when - timedelta(milliseconds=duration_ms)).isoformat(),
        end_time=when.isoformat(),
        duration_ms=duration_ms,
        timestamp=when.isoformat(),
    )


@pytest.fixture
def ledger(tmp_path, clock):
    return UsageLedger(JsonDocument(str(tmp_path / "usage.json")), now_fn=clock)


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(59_999) == "59s"
    assert format_duration(60_000) == "1m"
    assert format_duration(3_600_000 + 5 * 60_000 + 59_000) == "1h 5m"


def test_seconds_until_midnight(clock):
    assert seconds_until_midnight(clock()) == 9 * 3600


def test_prune_by_age(ledger, clock):
    now = clock()
    ledger.extend([
        record("Old", now - timedelta(days=8)),
        record("Edge", datetime(2024, 5, 3, 0, 0, 0, tzinfo=TZ)),
        record("Recent", now - timedelta(days=1)),
    ])

    removed = ledger.prune()

    assert removed == 1
    assert [r.app_name for r in ledger.records()] == ["Edge", "Recent"]


def test_prune_keeps_most_recent_beyond_cap(tmp_path, clock):
    ledger = UsageLedger(JsonDocument(str(tmp_path / "usage.json")), max_records=3, now_fn=clock)
    now = clock()
    ledger.extend([record(f"App{i}", now - timedelta(minutes=10 * (5 - i))) for i in range(5)])

    ledger.prune()

    assert len(ledger) == 3
    assert [r.app_name for r in ledger.records()] == ["App2", "App3", "App4"]


def test_prune_drops_unparseable_timestamps(ledger, clock):
    broken = record("Broken", clock())
    broken.timestamp = "yesterday-ish"
    ledger.append(broken)

    ledger.prune()
    assert len(ledger) == 0


def test_save_and_reload(ledger, tmp_path, clock):
    ledger.append(record("Code", clock()))
    ledger.save()

    reloaded = UsageLedger(JsonDocument(str(tmp_path / "usage.json")), now_fn=clock)
    assert [r.app_name for r in reloaded.records()] == ["Code"]
    assert JsonDocument(str(tmp_path / "usage.json")).load()["lastUpdate"] == clock().isoformat()


def test_today_summary(ledger, clock):
    now = clock()
    ledger.extend([
        record("Code", now - timedelta(hours=2), duration_ms=3_600_000),
        record("Code", now - timedelta(hours=1), duration_ms=1_800_000),
        record("Browser", now, duration_ms=1_800_000),
        record("Yesterday", now - timedelta(days=1)),
        record("Phone", now, device_class="mobile"),
    ])

    summary = ledger.today_summary()

    assert summary["recordCount"] == 3
    assert summary["totalDuration"] == "2h 0m"
    code, browser = summary["data"]
    assert code["name"] == "Code"
    assert code["count"] == 2
    assert code["time"] == "1h 30m"
    assert code["percent"] == 75
    assert browser["percent"] == 25


def test_today_summary_by_device_id(ledger, clock):
    ledger.extend([
        record("Code", clock(), device_id="desk"),
        record("Game", clock(), device_id="laptop"),
    ])

    summary = ledger.today_summary(device_id="laptop")
    assert [entry["name"] for entry in summary["data"]] == ["Game"]


def test_today_stats_rollover(tmp_path, clock):
    store = TodayStatsStore(JsonDocument(str(tmp_path / "today.json")), now_fn=clock)
    store.add("Code", 30)
    store.add("Code", 15)
    store.add("Ignored", 0)

    assert store.current().apps == {"Code": 45}

    clock.advance(12 * 3600)
    assert store.rollover() is True
    assert store.current().date == "2024-05-11"
    assert store.current().apps == {}
    assert JsonDocument(str(tmp_path / "today.json")).load() == {"date": "2024-05-11", "apps": {}}


def test_today_stats_ranking(tmp_path, clock):
    store = TodayStatsStore(JsonDocument(str(tmp_path / "today.json")), now_fn=clock)
    store.add("Code", 75)
    store.add("Chat", 25)

    ranking = store.ranking()

    assert ranking["date"] == "2024-05-10"
    assert ranking["totalDuration"] == 100
    assert ranking["data"] == [
        {"name": "Code", "duration": 75, "percent": 75},
        {"name": "Chat", "duration": 25, "percent": 25},
    ]


def test_rollover_scheduler_runs_prune_then_reset():
    ledger = Mock()
    ledger.prune.return_value = 0
    today_stats = Mock()
    scheduler = DailyRolloverScheduler(ledger, today_stats)

    scheduler.run()

    ledger.prune.assert_called_once()
    ledger.save.assert_called_once()
    today_stats.rollover.assert_called_once()
    assert 0 < scheduler.task.next_delay() <= 24 * 3600 + 1


def test_today_stats_and_ledger_save_while_locked(tmp_path, clock):
    today_doc = LockCheckingDocument(str(tmp_path / "today.json"))
    today = TodayStatsStore(today_doc, now_fn=clock)
    today_doc.owner = today
    ledger_doc = LockCheckingDocument(str(tmp_path / "usage.json"))
    ledger = UsageLedger(ledger_doc, now_fn=clock)
    ledger_doc.owner = ledger

    today.add("Code", 30)
    clock.advance(86400)
    today.rollover()
    ledger.append(record("Code", clock()))
    ledger.save()

    assert today_doc.saves_under_lock == [True, True]
    assert ledger_doc.saves_under_lock == [True]
