"""Device presence and usage domain models."""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEVICE_PC = "pc"
DEVICE_MOBILE = "mobile"

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_SLEEP = "sleep"

DEFAULT_DEVICE_NAMES = {DEVICE_PC: "Workstation", DEVICE_MOBILE: "Mobile"}
DEFAULT_DEVICE_OS = {DEVICE_PC: "Windows 11", DEVICE_MOBILE: "Android"}
DEFAULT_APP_ICONS = {DEVICE_PC: "💻", DEVICE_MOBILE: "📱"}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp into an aware datetime.

    Agents send JavaScript ``toISOString()`` values ("...Z"); naive values
    are taken as local time. Returns None for anything unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


@dataclass
class CurrentApp:
    name: str
    icon: str = "📱"
    title: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any, default_icon: str = "📱") -> Optional["CurrentApp"]:
        if not isinstance(payload, dict) or not payload.get("name"):
            return None
        title = payload.get("title") or payload.get("windowTitle") or payload.get("packageName")
        return cls(name=str(payload["name"]), icon=payload.get("icon") or default_icon, title=title)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "icon": self.icon}
        if self.title:
            data["title"] = self.title
        return data


@dataclass
class AppUsage:
    name: str
    duration_seconds: float


@dataclass
class DeviceState:
    """Last known state of one device slot."""
    device_id: str
    device_class: str  # "pc" or "mobile"
    device_name: str
    os: str
    reported_status: str
    last_update: str  # ISO 8601 with offset
    today_online_seconds: float = 0.0
    current_app: Optional[CurrentApp] = None
    battery: Optional[int] = None
    is_charging: Optional[bool] = None
    network_type: Optional[str] = None
    today_app_stats: List[AppUsage] = field(default_factory=list)

    def add_app_time(self, name: str, seconds: float) -> None:
        for entry in self.today_app_stats:
            if entry.name == name:
                entry.duration_seconds += seconds
                return
        self.today_app_stats.append(AppUsage(name=name, duration_seconds=seconds))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["current_app"] = self.current_app.to_dict() if self.current_app else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceState":
        data = dict(data)
        app = data.pop("current_app", None)
        stats = data.pop("today_app_stats", None) or []
        state = cls(**data)
        state.current_app = CurrentApp(**app) if app else None
        state.today_app_stats = [AppUsage(**entry) for entry in stats]
        return state


@dataclass
class UsageRecord:
    """One completed interval of foreground app usage."""
    id: str
    device_id: str
    device_class: str
    app_name: str
    start_time: str
    end_time: str
    duration_ms: float
    timestamp: str
    window_title: Optional[str] = None
    device_name: Optional[str] = None

    @property
    def recorded_at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(**data)


@dataclass
class TodayStats:
    """Per-app seconds for one local calendar day."""
    date: str  # YYYY-MM-DD
    apps: Dict[str, float] = field(default_factory=dict)

    def add(self, app_name: str, seconds: float) -> None:
        self.apps[app_name] = self.apps.get(app_name, 0) + seconds

    def top(self, limit: int = 10) -> List[Dict[str, Any]]:
        ranked = sorted(
            ({"name": name, "duration": round(seconds, 2)} for name, seconds in self.apps.items() if seconds > 0),
            key=lambda app: app["duration"],
            reverse=True,
        )
        return ranked[:limit]

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "apps": dict(self.apps)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TodayStats":
        apps = data.get("apps") or {}
        return cls(date=str(data.get("date", "")), apps={str(k): float(v) for k, v in apps.items()})


def utc_timestamp() -> str:
    """Current UTC time as ISO 8601 with a ``Z`` suffix, the form agents and browsers send."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
