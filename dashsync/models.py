from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any


SOURCE_MAIL = "mail"
SOURCE_CALENDAR = "calendar"
SOURCE_FILES = "files"
ALL_SOURCES = (SOURCE_MAIL, SOURCE_CALENDAR, SOURCE_FILES)

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"
CONNECTION_STATUSES = {STATUS_CONNECTED, STATUS_DISCONNECTED, STATUS_ERROR}

TRIGGER_CONNECT = "connect"
TRIGGER_DISCONNECT = "disconnect"
TRIGGER_MANUAL = "manual"
TRIGGER_AUTO = "auto"
TRIGGER_DATE_BOUNDARY = "date_boundary"
TRIGGERS = {TRIGGER_CONNECT, TRIGGER_DISCONNECT, TRIGGER_MANUAL, TRIGGER_AUTO, TRIGGER_DATE_BOUNDARY}

DEFAULT_SYNC_PATHS = {
    SOURCE_MAIL: "/api/integrations/gmail/sync",
    SOURCE_CALENDAR: "/api/integrations/calendar/sync",
    SOURCE_FILES: "/api/integrations/drive/sync",
}


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO datetime string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def utc_date(value: datetime) -> date:
    return _ensure_tz(value).astimezone(timezone.utc).date()


def normalize_source(value: Any) -> str:
    source = str(value or "").strip().lower()
    if source not in ALL_SOURCES:
        raise ValueError(f"Unknown source: {value!r}")
    return source


@dataclass
class ServicesConfig:
    base_url: str = ""
    api_token: str = ""
    timeout_seconds: int = 120
    job_timeout_seconds: float = 120.0
    job_poll_interval_seconds: float = 0.5
    sync_paths: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SYNC_PATHS))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServicesConfig":
        data = data or {}
        paths = dict(DEFAULT_SYNC_PATHS)
        raw_paths = data.get("sync_paths", {})
        if isinstance(raw_paths, dict):
            for key, value in raw_paths.items():
                source = str(key).strip().lower()
                path = str(value or "").strip()
                if source in ALL_SOURCES and path:
                    paths[source] = path if path.startswith("/") else f"/{path}"
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            api_token=str(data.get("api_token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 120))),
            job_timeout_seconds=max(0.0, float(data.get("job_timeout_seconds", 120.0))),
            job_poll_interval_seconds=max(0.05, float(data.get("job_poll_interval_seconds", 0.5))),
            sync_paths=paths,
        )


@dataclass
class SyncConfig:
    interval_minutes: int = 10
    dedup_window_seconds: float = 2.0
    max_queue_length: int = 3
    imminent_threshold_minutes: int = 30
    auto_sync_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        interval = int(data.get("interval_minutes", 10))
        # Ticks must divide the hour so that every tick lands on the same wall-clock grid.
        if interval < 1 or 60 % interval != 0:
            interval = 10
        return cls(
            interval_minutes=interval,
            dedup_window_seconds=max(0.0, float(data.get("dedup_window_seconds", 2.0))),
            max_queue_length=max(1, int(data.get("max_queue_length", 3))),
            imminent_threshold_minutes=min(1440, max(1, int(data.get("imminent_threshold_minutes", 30)))),
            auto_sync_enabled=bool(data.get("auto_sync_enabled", True)),
        )


@dataclass
class NotificationsConfig:
    os_notifications: bool = False
    app_name: str = "dashsync"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NotificationsConfig":
        data = data or {}
        return cls(
            os_notifications=bool(data.get("os_notifications", False)),
            app_name=str(data.get("app_name", "dashsync")).strip() or "dashsync",
        )


@dataclass
class AppConfig:
    services: ServicesConfig = field(default_factory=ServicesConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            services=ServicesConfig.from_dict(data.get("services")),
            sync=SyncConfig.from_dict(data.get("sync")),
            notifications=NotificationsConfig.from_dict(data.get("notifications")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class SourceState:
    connection_status: str = STATUS_DISCONNECTED
    last_synced_at: datetime | None = None
    is_syncing: bool = False
    error: str | None = None

    @property
    def connected(self) -> bool:
        return self.connection_status == STATUS_CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_status": self.connection_status,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "is_syncing": self.is_syncing,
            "error": self.error,
        }


@dataclass(frozen=True)
class SyncRequest:
    id: str
    sources: frozenset[str]
    trigger: str
    enqueued_at: datetime
    force: bool = False

    @property
    def dedup_key(self) -> tuple[str, ...]:
        return tuple(sorted(self.sources))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sources": list(self.dedup_key),
            "trigger": self.trigger,
            "enqueued_at": serialize_datetime(self.enqueued_at),
            "force": self.force,
        }


@dataclass
class CalendarEvent:
    id: str
    title: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    location: str = ""
    attendee_count: int = 0
    is_all_day: bool = False
    status: str = "confirmed"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CalendarEvent":
        attendees = payload.get("attendees")
        if isinstance(attendees, list):
            attendee_count = len(attendees)
        else:
            attendee_count = int(payload.get("attendee_count", 0) or 0)
        return cls(
            id=str(payload.get("id", payload.get("event_id", ""))).strip(),
            title=str(payload.get("title", "") or ""),
            start_time=parse_iso_datetime(payload.get("start_time")),
            end_time=parse_iso_datetime(payload.get("end_time")),
            location=str(payload.get("location", "") or ""),
            attendee_count=attendee_count,
            is_all_day=bool(payload.get("is_all_day", False)),
            status=str(payload.get("status", "confirmed") or "confirmed").strip().lower(),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        return payload


@dataclass
class ConflictRecord:
    anchor_event_id: str
    related_event_ids: list[str]
    kind: str
    severity: str
    explanation: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImminentEvent:
    event_id: str
    title: str
    start_time: datetime | None
    location: str = ""
    minutes_until: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, Any], now: datetime | None = None) -> "ImminentEvent":
        start_time = parse_iso_datetime(payload.get("start_time"))
        minutes_until = payload.get("minutesUntil", payload.get("minutes_until"))
        if minutes_until is None and start_time is not None:
            reference = now or utc_now()
            minutes_until = round((start_time - reference).total_seconds() / 60)
        return cls(
            event_id=str(payload.get("event_id", payload.get("id", ""))).strip(),
            title=str(payload.get("title", "") or ""),
            start_time=start_time,
            location=str(payload.get("location", "") or ""),
            minutes_until=int(minutes_until or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "title": self.title,
            "start_time": serialize_datetime(self.start_time),
            "location": self.location,
            "minutes_until": self.minutes_until,
        }


@dataclass
class InvokeResult:
    source: str
    ok: bool
    data_changed: bool = False
    time_changed: bool = False
    items_synced: int = 0
    error: str | None = None
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncOutcome:
    request_id: str
    sources: list[str]
    trigger: str
    status: str
    message: str
    data_changed: bool = False
    time_changed: bool = False
    calendar_time_changed: bool = False
    regenerated: bool = False
    duration_ms: int = 0
    results: list[InvokeResult] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "sources": list(self.sources),
            "trigger": self.trigger,
            "status": self.status,
            "message": self.message,
            "data_changed": self.data_changed,
            "time_changed": self.time_changed,
            "calendar_time_changed": self.calendar_time_changed,
            "regenerated": self.regenerated,
            "duration_ms": self.duration_ms,
            "results": [item.to_dict() for item in self.results],
            "run_at": serialize_datetime(self.run_at),
        }
