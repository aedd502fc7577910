from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from icsync.identity import identity_key


DEFAULT_TIMEZONE_MAP = {
    "Tokyo Standard Time": "Asia/Tokyo",
    "Pacific Standard Time": "America/Los_Angeles",
    "Eastern Standard Time": "America/New_York",
    "GMT Standard Time": "Europe/London",
    "W. Europe Standard Time": "Europe/Paris",
    "Central Standard Time": "America/Chicago",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Korea Standard Time": "Asia/Seoul",
    "India Standard Time": "Asia/Kolkata",
    "Australia Eastern Standard Time": "Australia/Sydney",
}

DEFAULT_TITLE = "Untitled Event"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _as_float(value: Any, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(value))
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_id: str = ""
    calendar_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", "")).strip(),
        )


@dataclass
class SourceConfig:
    kind: str = "folder"
    location: str = ""
    document_name: str = "latest_cal.ics"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SourceConfig":
        data = data or {}
        kind = str(data.get("kind", "folder")).strip().lower()
        if kind not in {"folder", "http"}:
            kind = "folder"
        return cls(
            kind=kind,
            location=str(data.get("location", "")).strip(),
            document_name=str(data.get("document_name", "latest_cal.ics")).strip() or "latest_cal.ics",
            timeout_seconds=_as_int(data.get("timeout_seconds", 30), 30, minimum=1),
        )


@dataclass
class OwnershipConfig:
    tag_key: str = "sourceFile"
    tag_value: str = "LATEST_CAL"
    identity_tag_key: str = "icsUid"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OwnershipConfig":
        data = data or {}
        return cls(
            tag_key=str(data.get("tag_key", "sourceFile")).strip() or "sourceFile",
            tag_value=str(data.get("tag_value", "LATEST_CAL")).strip() or "LATEST_CAL",
            identity_tag_key=str(data.get("identity_tag_key", "icsUid")).strip() or "icsUid",
        )


@dataclass
class SyncConfig:
    dry_run: bool = False
    interval_seconds: int = 3600
    timezone: str = "UTC"
    max_duplicate_keys: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            dry_run=_as_bool(data.get("dry_run"), False),
            interval_seconds=_as_int(data.get("interval_seconds", 3600), 3600, minimum=30),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            max_duplicate_keys=_as_int(data.get("max_duplicate_keys", 1), 1),
        )


@dataclass
class ThrottleConfig:
    pause_seconds: float = 1.0
    burst_every: int = 20
    burst_pause_seconds: float = 5.0
    error_pause_seconds: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ThrottleConfig":
        data = data or {}
        return cls(
            pause_seconds=_as_float(data.get("pause_seconds", 1.0), 1.0),
            burst_every=_as_int(data.get("burst_every", 20), 20, minimum=1),
            burst_pause_seconds=_as_float(data.get("burst_pause_seconds", 5.0), 5.0),
            error_pause_seconds=_as_float(data.get("error_pause_seconds", 10.0), 10.0),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    ownership: OwnershipConfig = field(default_factory=OwnershipConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    timezone_map: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TIMEZONE_MAP))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_map = data.get("timezone_map")
        timezone_map = dict(DEFAULT_TIMEZONE_MAP)
        if isinstance(raw_map, dict):
            timezone_map = {
                str(key).strip(): str(value).strip()
                for key, value in raw_map.items()
                if str(key).strip() and str(value).strip()
            }
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            source=SourceConfig.from_dict(data.get("source")),
            ownership=OwnershipConfig.from_dict(data.get("ownership")),
            sync=SyncConfig.from_dict(data.get("sync")),
            throttle=ThrottleConfig.from_dict(data.get("throttle")),
            timezone_map=timezone_map,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class EventRecord:
    uid: str = ""
    summary: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    recurrence_override_id: str = ""
    recurrence_rule: str = ""
    excluded_occurrence_ids: list[str] = field(default_factory=list)
    start_raw: str = ""
    start_params: str = ""

    @property
    def identity_key(self) -> str:
        return identity_key(self.uid, self.recurrence_override_id)

    @property
    def is_master(self) -> bool:
        return bool(self.recurrence_rule) and not self.recurrence_override_id

    @property
    def is_exception(self) -> bool:
        return bool(self.recurrence_override_id)

    @property
    def title(self) -> str:
        return self.summary or DEFAULT_TITLE

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = replace(self, excluded_occurrence_ids=list(self.excluded_occurrence_ids))
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["identity_key"] = self.identity_key
        return payload


@dataclass(frozen=True)
class WeekdaySpec:
    weekday: int
    ordinal: int | None = None


@dataclass
class RecurrenceRule:
    frequency: str = ""
    interval: int = 1
    until: datetime | None = None
    by_day: list[WeekdaySpec] = field(default_factory=list)
    week_start: int = 6


@dataclass
class Occurrence:
    occurrence_id: str
    start: datetime
    end: datetime


@dataclass
class TargetEvent:
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    description: str = ""
    location: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    uid: str = ""
    href: str = ""
    etag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class PlanEntry:
    action: str
    key: str
    record: EventRecord
    target: TargetEvent | None = None


@dataclass
class ReconciliationPlan:
    entries: list[PlanEntry] = field(default_factory=list)
    deletes: list[tuple[str, TargetEvent]] = field(default_factory=list)
    owned_count: int = 0
    foreign_count: int = 0
    untagged_owned: int = 0
    duplicate_keys: list[str] = field(default_factory=list)

    def count(self, action: str) -> int:
        if action == "delete":
            return len(self.deletes)
        return sum(1 for entry in self.entries if entry.action == action)


@dataclass
class SyncResult:
    status: str
    message: str
    trigger: str
    dry_run: bool = False
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: int = 0
    duration_ms: int = 0
    actions: list[dict[str, Any]] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "trigger": self.trigger,
            "dry_run": self.dry_run,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "actions": list(self.actions),
            "run_at": serialize_datetime(self.run_at),
        }
