from __future__ import annotations

import enum
import logging
import re
from datetime import datetime, timezone, tzinfo
from typing import Callable, Iterator
from zoneinfo import ZoneInfo

from icsync.models import DEFAULT_TIMEZONE_MAP, EventRecord


logger = logging.getLogger(__name__)

ZonedTimeResolver = Callable[[datetime, str], datetime]

TEXT_ESCAPES = (
    ("\\n", "\n"),
    ("\\,", ","),
    ("\\;", ";"),
    ("\\\\", "\\"),
)
TEXT_PROPERTIES = {"SUMMARY", "DESCRIPTION", "LOCATION", "UID"}

DATE_VALUE_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})(Z)?)?$")


def unescape_text(value: str) -> str:
    # Fixed order: the escaped backslash is always decoded last.
    for sequence, replacement in TEXT_ESCAPES:
        value = value.replace(sequence, replacement)
    return value


def unfold_lines(text: str) -> Iterator[str]:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    current: str | None = None
    for line in normalized.split("\n"):
        if current is not None and line[:1] in (" ", "\t"):
            current += line[1:]
            continue
        if current is not None:
            yield current
        current = line
    if current is not None:
        yield current


def split_property_line(line: str) -> tuple[str, str] | None:
    """Split ``NAME;PARAM=x:value`` at the first colon outside a quoted parameter."""
    in_quotes = False
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ":" and not in_quotes:
            if index == 0:
                return None
            return line[:index], line[index + 1 :]
    return None


def parse_parameters(property_text: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for part in property_text.split(";")[1:]:
        key, sep, value = part.partition("=")
        if not sep:
            continue
        params[key.strip().upper()] = value.strip().strip('"')
    return params


def resolve_zoned_time(wall_clock: datetime, zone_id: str) -> datetime:
    return wall_clock.replace(tzinfo=ZoneInfo(zone_id))


def load_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError, OSError):
        logger.warning("Unknown local timezone %r, using UTC for floating times", name)
        return timezone.utc


class ParserState(enum.Enum):
    OUTSIDE = "outside"
    IN_RECORD = "in_record"


class IcsParser:
    def __init__(
        self,
        timezone_map: dict[str, str] | None = None,
        local_timezone: str | tzinfo = "UTC",
        resolve_zoned: ZonedTimeResolver | None = None,
    ) -> None:
        self.timezone_map = dict(DEFAULT_TIMEZONE_MAP if timezone_map is None else timezone_map)
        if isinstance(local_timezone, str):
            self.local_timezone = load_timezone(local_timezone)
        else:
            self.local_timezone = local_timezone
        self._resolve_zoned = resolve_zoned or resolve_zoned_time

    def parse(self, content: bytes | str) -> list[EventRecord]:
        if isinstance(content, bytes):
            text = content.decode("utf-8-sig", errors="replace")
        else:
            text = content.lstrip("\ufeff")

        events: list[EventRecord] = []
        state = ParserState.OUTSIDE
        current: EventRecord | None = None
        nested_depth = 0

        for line in unfold_lines(text):
            marker = line.rstrip()
            if marker == "BEGIN:VEVENT":
                if state is ParserState.IN_RECORD and current is not None:
                    logger.warning("Discarding unterminated event record (uid=%r)", current.uid)
                state = ParserState.IN_RECORD
                current = EventRecord()
                nested_depth = 0
                continue
            if marker == "END:VEVENT":
                if state is ParserState.IN_RECORD and current is not None:
                    record = self._finish_record(current)
                    if record is not None:
                        events.append(record)
                state = ParserState.OUTSIDE
                current = None
                continue
            if state is not ParserState.IN_RECORD or current is None:
                continue

            # Properties of nested components (VALARM etc.) do not belong to the event.
            if marker.startswith("BEGIN:"):
                nested_depth += 1
                continue
            if marker.startswith("END:"):
                nested_depth = max(0, nested_depth - 1)
                continue
            if nested_depth:
                continue
            self._apply_property(current, line)

        if state is ParserState.IN_RECORD and current is not None:
            logger.warning("Discarding event record without END:VEVENT (uid=%r)", current.uid)

        logger.info("Parsed %d events from calendar document", len(events))
        return events

    def _apply_property(self, record: EventRecord, line: str) -> None:
        split = split_property_line(line)
        if split is None:
            return
        property_text, value = split
        name = property_text.split(";", 1)[0].strip().upper()
        if name in TEXT_PROPERTIES:
            value = unescape_text(value)

        if name == "SUMMARY":
            record.summary = value
        elif name == "DESCRIPTION":
            record.description = value
        elif name == "LOCATION":
            record.location = value
        elif name == "DTSTART":
            record.start = self.resolve_datetime(value, property_text)
            record.start_raw = value.strip()
            record.start_params = property_text
            record.all_day = self.is_date_only(value, property_text)
        elif name == "DTEND":
            record.end = self.resolve_datetime(value, property_text)
        elif name == "UID":
            record.uid = value
        elif name == "RECURRENCE-ID":
            record.recurrence_override_id = value.strip()
        elif name == "RRULE":
            record.recurrence_rule = value.strip()
        elif name == "EXDATE":
            for item in value.split(","):
                item = item.strip()
                if item and item not in record.excluded_occurrence_ids:
                    record.excluded_occurrence_ids.append(item)

    def _finish_record(self, record: EventRecord) -> EventRecord | None:
        if record.start is None or record.end is None:
            logger.warning(
                "Skipping event %r (uid=%r): missing or unparseable DTSTART/DTEND",
                record.summary,
                record.uid,
            )
            return None
        if not record.uid:
            logger.warning("Skipping event %r: missing UID", record.summary)
            return None
        return record

    @staticmethod
    def is_date_only(value: str, property_text: str = "") -> bool:
        params = parse_parameters(property_text)
        return params.get("VALUE", "").upper() == "DATE" or len(value.strip()) == 8

    def resolve_datetime(self, value: str, property_text: str = "") -> datetime | None:
        """Turn an iCalendar DATE or DATE-TIME value into an aware datetime.

        Priority: trailing ``Z`` (UTC), then a ``TZID`` parameter (legacy names mapped
        through ``timezone_map``), then date-only values at local midnight, then floating
        local time. A TZID that cannot be resolved falls back to floating local time.
        Returns ``None`` for values that are not dates at all.
        """
        text = value.strip()
        match = DATE_VALUE_PATTERN.match(text)
        if match is None:
            logger.warning("Unrecognized date format: %r", value)
            return None
        year, month, day, hour, minute, second, utc_marker = match.groups()
        has_time = hour is not None
        try:
            wall_clock = datetime(
                int(year),
                int(month),
                int(day),
                int(hour or 0),
                int(minute or 0),
                int(second or 0),
            )
        except ValueError:
            logger.warning("Invalid date value: %r", value)
            return None

        params = parse_parameters(property_text)
        date_only = params.get("VALUE", "").upper() == "DATE" or not has_time

        if utc_marker and not date_only:
            return wall_clock.replace(tzinfo=timezone.utc)

        tzid = params.get("TZID", "")
        if tzid and not date_only:
            zone_id = self.timezone_map.get(tzid, tzid)
            try:
                return self._resolve_zoned(wall_clock, zone_id)
            except Exception as exc:
                logger.warning(
                    "Error resolving %s in timezone %s (%s), falling back to local time",
                    text,
                    zone_id,
                    exc,
                )

        if date_only:
            return wall_clock.replace(hour=0, minute=0, second=0, tzinfo=self.local_timezone)
        return wall_clock.replace(tzinfo=self.local_timezone)


def parse_ics(content: bytes | str, **kwargs) -> list[EventRecord]:
    return IcsParser(**kwargs).parse(content)
