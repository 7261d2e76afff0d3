"""Device presence engine: ingest agent reports, derive status, track today's usage."""
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from device_data import (
    DEFAULT_APP_ICONS,
    DEFAULT_DEVICE_NAMES,
    DEFAULT_DEVICE_OS,
    DEVICE_MOBILE,
    DEVICE_PC,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_SLEEP,
    AppUsage,
    CurrentApp,
    DeviceState,
    UsageRecord,
    parse_timestamp,
)
from json_store import JsonDocument
from status_provider import InvalidInputError
from usage_ledger import TodayStatsStore, UsageLedger, local_now, start_of_day

ONLINE_WINDOW_SECONDS = 60
SLEEP_WINDOW_SECONDS = 24 * 60 * 60
# Longer gaps between reports mean the agent was suspended, not in use.
RESUME_GAP_SECONDS = 300
DEFAULT_APP_DURATION_SECONDS = 10
TOP_APPS = 10

Listener = Callable[[Dict[str, Any]], None]


def normalize_device(identity: Mapping[str, Any]) -> str:
    """
    Map a reporting identity onto its device slot.

    Every identity collapses to ``"mobile"`` or ``"pc"``; only a
    ``deviceType`` of "mobile" (any case) selects the mobile slot.
    """
    device_type = identity.get("deviceType") if isinstance(identity, Mapping) else None
    if isinstance(device_type, str) and device_type.strip().lower() == DEVICE_MOBILE:
        return DEVICE_MOBILE
    return DEVICE_PC


def classify_status(reported_status: Optional[str], last_update: Optional[datetime], now: datetime) -> str:
    """Derive the displayed status from the raw report and its age."""
    if last_update is None:
        return STATUS_OFFLINE
    elapsed = (now - last_update).total_seconds()
    if reported_status == STATUS_SLEEP and elapsed < SLEEP_WINDOW_SECONDS:
        return STATUS_SLEEP
    if elapsed <= ONLINE_WINDOW_SECONDS:
        return reported_status or STATUS_ONLINE
    return STATUS_OFFLINE


def format_uptime(seconds: float) -> str:
    seconds = max(int(seconds or 0), 0)
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def _app_duration(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_APP_DURATION_SECONDS
    if value != value or value <= 0:  # NaN
        return DEFAULT_APP_DURATION_SECONDS
    if value > RESUME_GAP_SECONDS:
        return 1
    return float(value)


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DevicePresenceEngine:
    """
    In-memory table of device slots, persisted on every mutation.

    Status reports update a slot, add to today's online seconds and per-app
    totals, and notify listeners (the realtime broadcaster and optional log
    sinks) with a fresh snapshot. Usage batches only feed the ledger.
    """

    def __init__(
        self,
        document: JsonDocument,
        ledger: UsageLedger,
        today_stats: TodayStatsStore,
        now_fn: Callable[[], datetime] = local_now,
    ):
        """
        Initialize engine.

        Args:
            document: Persisted device table
            ledger: Usage ledger receiving batches and synthesized mobile records
            today_stats: Per-day app totals store
            now_fn: Clock returning an aware datetime (injectable for tests)
        """
        self.document = document
        self.ledger = ledger
        self.today_stats = today_stats
        self._now = now_fn
        self._lock = threading.Lock()
        # Held while a snapshot is computed and handed to listeners, so they see snapshots in order.
        self._notify_lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._devices: Dict[str, DeviceState] = self._load()

    def _load(self) -> Dict[str, DeviceState]:
        stored = self.document.load(default=dict) or {}
        devices = {}
        for slot, data in stored.items():
            try:
                devices[slot] = DeviceState.from_dict(data)
            except (TypeError, ValueError) as e:
                logging.warning(f"Ignoring unreadable device state for {slot}: {e}")
        return devices

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def device(self, slot: str) -> Optional[DeviceState]:
        with self._lock:
            return self._devices.get(slot)

    def report_device(self, payload: Any) -> str:
        """
        Ingest one agent report.

        Returns:
            "status", "usage" or "ignored" depending on the payload shape

        Raises:
            InvalidInputError: If the payload is not a JSON object
        """
        if not isinstance(payload, dict):
            raise InvalidInputError("Report body must be a JSON object", "INVALID_PAYLOAD")

        if payload.get("type") == "status":
            self._report_status(payload)
            kind = "status"
        elif isinstance(payload.get("usageRecords"), list):
            self._report_usage(payload["usageRecords"])
            kind = "usage"
        else:
            logging.warning(f"Ignoring device report with unknown shape: keys={sorted(payload)}")
            return "ignored"

        self.ledger.prune()
        self.ledger.save()
        if kind == "status":
            self._notify()
        return kind

    def _report_status(self, payload: Dict[str, Any]) -> None:
        slot = normalize_device(payload)
        now = self._now()
        status = str(payload.get("status") or STATUS_ONLINE)
        app = CurrentApp.from_payload(payload.get("currentApp"), DEFAULT_APP_ICONS[slot])
        duration = _app_duration(payload.get("duration")) if app else 0

        with self._lock:
            previous = self._devices.get(slot)
            online_seconds, app_stats = self._carry_over(previous, status, now)
            state = DeviceState(
                device_id=slot,
                device_class=slot,
                device_name=payload.get("deviceName") or DEFAULT_DEVICE_NAMES[slot],
                os=payload.get("deviceOS") or DEFAULT_DEVICE_OS[slot],
                reported_status=status,
                last_update=now.isoformat(),
                today_online_seconds=online_seconds,
                current_app=app,
                battery=_optional_int(payload.get("battery")),
                is_charging=payload.get("isCharging") if isinstance(payload.get("isCharging"), bool) else None,
                network_type=payload.get("networkType"),
                today_app_stats=app_stats,
            )
            if app:
                state.add_app_time(app.name, duration)
            self._devices[slot] = state
            # Saved under the lock so the file never goes back to an older table
            self.document.save({name: device.to_dict() for name, device in self._devices.items()})

        if app:
            self.today_stats.add(app.name, duration)
            if slot != DEVICE_PC:
                self.ledger.append(self._synthesize_record(slot, payload, app, duration, now))
        logging.debug(f"Status report: {slot} {status} app={app.name if app else '-'} online={online_seconds:.0f}s")

    def _carry_over(self, previous: Optional[DeviceState], status: str, now: datetime):
        """Online seconds and per-app totals carried into the new state."""
        if previous is None:
            return 0.0, []

        previous_time = parse_timestamp(previous.last_update)
        rolled_over = previous_time is None or previous_time.astimezone(now.tzinfo).date() != now.date()
        online_seconds = 0.0 if rolled_over else previous.today_online_seconds
        app_stats = [] if rolled_over else [AppUsage(e.name, e.duration_seconds) for e in previous.today_app_stats]

        was_online = (previous.reported_status or STATUS_ONLINE) != STATUS_OFFLINE
        is_online = status != STATUS_OFFLINE
        if was_online and is_online and previous_time is not None:
            delta = max(0, int((now - previous_time).total_seconds()))
            if delta > RESUME_GAP_SECONDS:
                logging.info(f"Report gap of {delta}s treated as resume from suspend; not credited")
                delta = 0
            elif rolled_over:
                delta = min(delta, int((now - start_of_day(now)).total_seconds()))
            online_seconds += delta
        return online_seconds, app_stats

    def _synthesize_record(
        self, slot: str, payload: Dict[str, Any], app: CurrentApp, duration: float, now: datetime
    ) -> UsageRecord:
        return UsageRecord(
            id=f"{slot}-{uuid.uuid4().hex}",
            device_id=slot,
            device_class=slot,
            app_name=app.name,
            window_title=app.title,
            start_time=(now - timedelta(seconds=duration)).isoformat(),
            end_time=now.isoformat(),
            duration_ms=duration * 1000,
            timestamp=now.isoformat(),
            device_name=payload.get("deviceName"),
        )

    def _report_usage(self, entries: List[Any]) -> None:
        now = self._now().isoformat()
        records = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("appName"):
                logging.warning("Skipping malformed usage record")
                continue
            slot = normalize_device(entry)
            duration = entry.get("duration")
            records.append(
                UsageRecord(
                    id=f"{slot}-{uuid.uuid4().hex}",
                    device_id=slot,
                    device_class=slot,
                    device_name=entry.get("deviceName") or DEFAULT_DEVICE_NAMES[slot],
                    app_name=str(entry["appName"]),
                    window_title=entry.get("windowTitle"),
                    start_time=entry.get("startTime") or now,
                    end_time=entry.get("endTime") or now,
                    duration_ms=max(float(duration), 0.0) if isinstance(duration, (int, float)) else 0.0,
                    timestamp=entry.get("timestamp") or now,
                )
            )
        self.ledger.extend(records)
        logging.info(f"Received {len(records)} usage records")

    def snapshot(self) -> Dict[str, Any]:
        """Every known slot with the derived status applied."""
        now = self._now()
        with self._lock:
            devices = list(self._devices.items())

        fallback_stats = None
        snapshot: Dict[str, Any] = {}
        for slot, state in devices:
            today_stats = [
                {"name": entry.name, "duration": round(entry.duration_seconds, 2), "icon": DEFAULT_APP_ICONS.get(slot, "📱")}
                for entry in sorted(state.today_app_stats, key=lambda e: e.duration_seconds, reverse=True)[:TOP_APPS]
            ]
            if not today_stats:
                if fallback_stats is None:
                    fallback_stats = [
                        dict(entry, icon="📱") for entry in self.today_stats.current().top(TOP_APPS)
                    ]
                today_stats = fallback_stats

            snapshot[slot] = {
                "id": state.device_id,
                "name": state.device_name,
                "type": state.device_class,
                "os": state.os,
                "status": classify_status(state.reported_status, parse_timestamp(state.last_update), now),
                "battery": state.battery,
                "isCharging": state.is_charging,
                "networkType": state.network_type,
                "todayOnlineSeconds": state.today_online_seconds,
                "uptime": format_uptime(state.today_online_seconds),
                "currentApp": (
                    state.current_app.to_dict()
                    if state.current_app
                    else {"name": "Unknown", "icon": DEFAULT_APP_ICONS.get(slot, "📱")}
                ),
                "lastUpdate": state.last_update,
                "todayStats": today_stats,
            }

        if not snapshot:
            snapshot[DEVICE_PC] = {
                "id": DEVICE_PC,
                "name": DEFAULT_DEVICE_NAMES[DEVICE_PC],
                "type": DEVICE_PC,
                "os": DEFAULT_DEVICE_OS[DEVICE_PC],
                "status": STATUS_OFFLINE,
                "currentApp": {"name": "Unknown", "icon": DEFAULT_APP_ICONS[DEVICE_PC]},
            }
        return snapshot

    def latest_update(self) -> Optional[str]:
        with self._lock:
            stamps = [(parse_timestamp(s.last_update), s.last_update) for s in self._devices.values()]
        stamps = [pair for pair in stamps if pair[0] is not None]
        if not stamps:
            return None
        return max(stamps, key=lambda pair: pair[0])[1]

    def reset(self) -> None:
        with self._lock:
            self._devices = {}

    def _notify(self) -> None:
        if not self._listeners:
            return
        with self._notify_lock:
            snapshot = self.snapshot()
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception as exc:
                    logging.exception(f"Device status listener failed: {exc}")
