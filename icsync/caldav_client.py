from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Protocol

import caldav
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from icsync.errors import StoreOperationError, StoreUnavailableError
from icsync.models import CalDAVConfig, TargetEvent


logger = logging.getLogger(__name__)

TAG_PROPERTY = "X-ICSYNC-TAG"
PRODID = "-//icsync//Calendar Sync//EN"


class EventStore(Protocol):
    def query_events(self, window_start: datetime, window_end: datetime) -> list[TargetEvent]:
        ...

    def create_event(
        self, title: str, start: datetime, end: datetime, description: str, location: str
    ) -> TargetEvent:
        ...

    def set_tag(self, event: TargetEvent, key: str, value: str) -> None:
        ...

    def get_tag(self, event: TargetEvent, key: str) -> str | None:
        ...

    def update_event(
        self,
        event: TargetEvent,
        title: str,
        start: datetime,
        end: datetime,
        description: str,
        location: str,
    ) -> None:
        ...

    def delete_event(self, event: TargetEvent) -> None:
        ...


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _read_tags(vevent: ICEvent) -> dict[str, str]:
    raw = vevent.get(TAG_PROPERTY)
    if raw is None:
        return {}
    values = raw if isinstance(raw, list) else [raw]
    tags: dict[str, str] = {}
    for value in values:
        key = str(getattr(value, "params", {}).get("KEY", "")).strip()
        if key:
            tags[key] = str(value)
    return tags


def build_ical(event: TargetEvent) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", event.uid)
    vevent.add("SUMMARY", event.title or "")
    vevent.add("DESCRIPTION", event.description or "")
    if event.location:
        vevent.add("LOCATION", event.location)
    if event.start is not None:
        vevent.add("DTSTART", event.start.astimezone(timezone.utc))
    if event.end is not None:
        vevent.add("DTEND", event.end.astimezone(timezone.utc))
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    for key, value in event.tags.items():
        vevent.add(TAG_PROPERTY, value, parameters={"KEY": key})
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def parse_resource(resource: Any) -> TargetEvent:
    raw_ical = _decode_raw_ical(resource.data)
    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        raise ValueError("VEVENT missing in calendar resource.")

    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    start = _coerce_datetime(dtstart_raw)
    end = _coerce_datetime(dtend_raw)
    if start and end is None:
        end = start + timedelta(hours=1)
    return TargetEvent(
        title=str(vevent.get("SUMMARY", "")),
        start=start,
        end=end,
        description=str(vevent.get("DESCRIPTION", "")),
        location=str(vevent.get("LOCATION", "")),
        tags=_read_tags(vevent),
        uid=str(vevent.get("UID", "")).strip(),
        href=str(getattr(resource, "url", "") or ""),
        etag=_data_hash(raw_ical),
    )


class CalDAVService:
    """Event store backed by one CalDAV calendar.

    Tags are kept on the VEVENT itself as ``X-ICSYNC-TAG;KEY=<key>:<value>``, so
    ownership survives on the server between runs.
    """

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar: Any = None

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise StoreUnavailableError("CalDAV config is incomplete.")
        try:
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            self._principal = self._client.principal()
        except Exception as exc:
            raise StoreUnavailableError(f"Could not connect to CalDAV server: {exc}") from exc

    def open(self) -> None:
        """Connect and resolve the target calendar; raises StoreUnavailableError."""
        if self._calendar is not None:
            return
        self._connect()
        wanted_id = _normalize_calendar_id(self.config.calendar_id)
        wanted_name = _normalize_calendar_name(self.config.calendar_name)
        if not wanted_id and not wanted_name:
            raise StoreUnavailableError("No target calendar configured.")
        try:
            calendars = list(self._principal.calendars())
        except Exception as exc:
            raise StoreUnavailableError(f"Could not list calendars: {exc}") from exc

        for calendar in calendars:
            if wanted_id and _normalize_calendar_id(str(calendar.url)) == wanted_id:
                self._calendar = calendar
                return
        if wanted_name:
            same_name = [
                calendar
                for calendar in calendars
                if _normalize_calendar_name(getattr(calendar, "name", "") or "") == wanted_name
            ]
            if same_name:
                same_name.sort(key=lambda item: str(item.url))
                self._calendar = same_name[0]
                return
        raise StoreUnavailableError(
            f"Could not access calendar: {self.config.calendar_id or self.config.calendar_name}"
        )

    def query_events(self, window_start: datetime, window_end: datetime) -> list[TargetEvent]:
        self.open()
        try:
            resources = self._calendar.search(start=window_start, end=window_end, event=True, expand=True)
        except Exception as exc:
            raise StoreUnavailableError(f"Could not query calendar events: {exc}") from exc
        events: list[TargetEvent] = []
        for resource in resources:
            try:
                events.append(parse_resource(resource))
            except ValueError as exc:
                logger.warning("Skipping unreadable calendar resource %s: %s", getattr(resource, "url", ""), exc)
        return events

    def create_event(
        self, title: str, start: datetime, end: datetime, description: str, location: str
    ) -> TargetEvent:
        self.open()
        event = TargetEvent(
            title=title,
            start=start,
            end=end,
            description=description,
            location=location,
            uid=f"{uuid.uuid4()}@icsync",
        )
        raw_ical = build_ical(event)
        try:
            resource = self._calendar.save_event(raw_ical)
        except Exception as exc:
            raise StoreOperationError(f"create failed for {title!r}: {exc}") from exc
        event.href = str(getattr(resource, "url", "") or "")
        event.etag = _data_hash(raw_ical)
        return event

    def get_tag(self, event: TargetEvent, key: str) -> str | None:
        return event.tags.get(key)

    def set_tag(self, event: TargetEvent, key: str, value: str) -> None:
        event.tags[key] = value
        self._save(event)

    def update_event(
        self,
        event: TargetEvent,
        title: str,
        start: datetime,
        end: datetime,
        description: str,
        location: str,
    ) -> None:
        event.title = title
        event.start = start
        event.end = end
        event.description = description
        event.location = location
        self._save(event)

    def delete_event(self, event: TargetEvent) -> None:
        self.open()
        try:
            self._resource_for(event).delete()
        except Exception as exc:
            raise StoreOperationError(f"delete failed for {event.title!r}: {exc}") from exc

    def _resource_for(self, event: TargetEvent) -> Any:
        if event.href:
            return self._calendar.event_by_url(event.href)
        return self._calendar.event_by_uid(event.uid)

    def _save(self, event: TargetEvent) -> None:
        self.open()
        raw_ical = build_ical(event)
        try:
            resource = self._resource_for(event)
            resource.data = raw_ical
            resource.save()
        except Exception as exc:
            raise StoreOperationError(f"save failed for {event.title!r}: {exc}") from exc
        event.etag = _data_hash(raw_ical)
