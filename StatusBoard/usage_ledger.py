"""Usage ledger, per-day app totals and the midnight rollover job."""
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from background import PeriodicTask
from device_data import TodayStats, UsageRecord
from json_store import JsonDocument

DEFAULT_RETENTION_DAYS = 7
DEFAULT_MAX_RECORDS = 1000
TOP_APPS = 10

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def seconds_until_midnight(now: Optional[datetime] = None) -> float:
    now = now or local_now()
    return ((start_of_day(now) + timedelta(days=1)) - now).total_seconds()


def format_duration(ms: float) -> str:
    """``"Xh Ym"``, ``"Ym"`` or ``"Zs"``; truncates."""
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{seconds}s"


def with_percent(entries: List[Dict[str, Any]], total: float) -> List[Dict[str, Any]]:
    for entry in entries:
        entry["percent"] = round(entry["duration"] / total * 100) if total > 0 else 0
    return entries


class UsageLedger:
    """
    Append-only list of UsageRecords bounded by age and count.

    Records are kept in arrival order. ``prune`` drops everything older than
    local midnight ``retention_days`` ago, then, when more than
    ``max_records`` remain, keeps only the most recent by timestamp.
    """

    def __init__(
        self,
        document: JsonDocument,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        max_records: int = DEFAULT_MAX_RECORDS,
        now_fn: Clock = local_now,
    ):
        self.document = document
        self.retention_days = retention_days
        self.max_records = max_records
        self._now = now_fn
        self._lock = threading.Lock()
        stored = document.load(default=dict) or {}
        self._records: List[UsageRecord] = [
            UsageRecord.from_dict(entry) for entry in stored.get("records", []) if isinstance(entry, dict)
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    def append(self, record: UsageRecord) -> None:
        self.extend([record])

    def extend(self, records: Iterable[UsageRecord]) -> None:
        with self._lock:
            self._records.extend(records)

    def prune(self) -> int:
        """Apply retention and size caps; returns the number of records removed."""
        cutoff = start_of_day(self._now()) - timedelta(days=self.retention_days)
        with self._lock:
            before = len(self._records)
            kept = [r for r in self._records if r.recorded_at is not None and r.recorded_at >= cutoff]
            if len(kept) > self.max_records:
                kept = sorted(kept, key=lambda r: r.recorded_at)[-self.max_records:]
            self._records = kept
            removed = before - len(kept)
        if removed:
            logging.info(f"Pruned {removed} usage records older than {self.retention_days} days or beyond {self.max_records}")
        return removed

    def save(self) -> None:
        with self._lock:
            payload = {
                "records": [r.to_dict() for r in self._records],
                "lastUpdate": self._now().isoformat(),
            }
            self.document.save(payload)

    def clear(self) -> None:
        with self._lock:
            self._records = []

    def today_summary(self, device_type: str = "pc", device_id: Optional[str] = None) -> Dict[str, Any]:
        """Top apps by duration for the current local day, for one device slot."""
        today_start = start_of_day(self._now())
        selected = [
            r for r in self.records()
            if (r.device_id == device_id if device_id else r.device_class == device_type)
            and r.recorded_at is not None
            and r.recorded_at >= today_start
        ]

        per_app: Dict[str, Dict[str, Any]] = {}
        for record in selected:
            stat = per_app.setdefault(record.app_name, {"name": record.app_name, "duration": 0, "count": 0})
            stat["duration"] += record.duration_ms or 0
            stat["count"] += 1

        top = sorted(per_app.values(), key=lambda s: s["duration"], reverse=True)[:TOP_APPS]
        total = sum(s["duration"] for s in top)
        for stat in top:
            stat["time"] = format_duration(stat["duration"])
            stat["icon"] = "💻"
            stat["category"] = "Unknown"
        return {
            "data": with_percent(top, total),
            "totalDuration": format_duration(total),
            "recordCount": len(selected),
        }


class TodayStatsStore:
    """Owns the TodayStats document; resets it whenever the local date changes."""

    def __init__(self, document: JsonDocument, now_fn: Clock = local_now):
        self.document = document
        self._now = now_fn
        self._lock = threading.Lock()
        self._stats = self._load()

    def today(self) -> str:
        return self._now().strftime("%Y-%m-%d")

    def _load(self) -> TodayStats:
        stored = self.document.load()
        if isinstance(stored, dict):
            try:
                return TodayStats.from_dict(stored)
            except (TypeError, ValueError) as e:
                logging.warning(f"Ignoring unreadable today stats: {e}")
        return TodayStats(date=self.today())

    def _roll(self) -> bool:
        today = self.today()
        if self._stats.date == today:
            return False
        logging.info(f"Today stats rolled over: {self._stats.date} -> {today}")
        self._stats = TodayStats(date=today)
        return True

    def add(self, app_name: str, seconds: float) -> None:
        if not app_name or seconds <= 0:
            return
        with self._lock:
            self._roll()
            self._stats.add(app_name, seconds)
            self.document.save(self._stats.to_dict())

    def rollover(self) -> bool:
        with self._lock:
            rolled = self._roll()
            if rolled:
                self.document.save(self._stats.to_dict())
        return rolled

    def reset(self) -> None:
        with self._lock:
            self._stats = TodayStats(date=self.today())

    def current(self) -> TodayStats:
        with self._lock:
            self._roll()
            return TodayStats(date=self._stats.date, apps=dict(self._stats.apps))

    def ranking(self) -> Dict[str, Any]:
        stats = self.current()
        top = stats.top(TOP_APPS)
        total = round(sum(seconds for seconds in stats.apps.values() if seconds > 0), 2)
        return {"data": with_percent(top, total), "totalDuration": total, "date": stats.date}


class DailyRolloverScheduler:
    """Prunes the ledger and resets TodayStats at every local midnight."""

    def __init__(self, ledger: UsageLedger, today_stats: TodayStatsStore):
        self.ledger = ledger
        self.today_stats = today_stats
        self.task = PeriodicTask("daily-rollover", self.run, lambda: seconds_until_midnight() + 1)

    def start(self) -> None:
        self.task.start()
        logging.info(f"Daily rollover scheduled in {seconds_until_midnight() / 60:.0f} minutes")

    def stop(self) -> None:
        self.task.stop()

    def run(self) -> None:
        removed = self.ledger.prune()
        self.ledger.save()
        self.today_stats.rollover()
        logging.info(f"Daily rollover complete ({removed} usage records pruned)")
