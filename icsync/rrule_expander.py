from __future__ import annotations

import calendar
import logging
import re
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator

from icsync.errors import ExpansionAbort
from icsync.ics_parser import IcsParser
from icsync.models import EventRecord, Occurrence, RecurrenceRule, WeekdaySpec


logger = logging.getLogger(__name__)

DAY_CODES = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}
SUPPORTED_FREQUENCIES = {"WEEKLY", "MONTHLY"}
MAX_OCCURRENCES = 520

BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?([A-Z]{2})$")


def parse_weekday_spec(text: str) -> WeekdaySpec:
    match = BYDAY_PATTERN.match(text.strip().upper())
    if match is None or match.group(2) not in DAY_CODES:
        raise ExpansionAbort(f"cannot parse BYDAY value {text!r}")
    ordinal = int(match.group(1)) if match.group(1) else None
    if ordinal == 0:
        raise ExpansionAbort(f"cannot parse BYDAY value {text!r}")
    return WeekdaySpec(weekday=DAY_CODES[match.group(2)], ordinal=ordinal)


def parse_rrule(text: str, parser: IcsParser) -> RecurrenceRule:
    rule = RecurrenceRule()
    for part in text.split(";"):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip().upper()
        value = value.strip()
        if key == "FREQ":
            rule.frequency = value.upper()
        elif key == "INTERVAL":
            try:
                interval = int(value)
            except ValueError:
                raise ExpansionAbort(f"invalid INTERVAL {value!r}") from None
            if interval < 1:
                raise ExpansionAbort(f"invalid INTERVAL {value!r}")
            rule.interval = interval
        elif key == "UNTIL":
            rule.until = parser.resolve_datetime(value)
        elif key == "BYDAY":
            rule.by_day = [parse_weekday_spec(item) for item in value.split(",") if item.strip()]
        elif key == "WKST":
            code = value.upper()
            if code not in DAY_CODES:
                raise ExpansionAbort(f"invalid WKST {value!r}")
            rule.week_start = DAY_CODES[code]
    return rule


def nth_weekday_of_month(year: int, month: int, weekday: int, ordinal: int) -> date | None:
    """Date of the ``ordinal``-th ``weekday`` in a month; ``-1`` means the last one.

    Returns ``None`` when the month has no such day (e.g. a fifth Monday).
    """
    days_in_month = calendar.monthrange(year, month)[1]
    if ordinal > 0:
        first_weekday = date(year, month, 1).weekday()
        day = 1 + (weekday - first_weekday) % 7 + (ordinal - 1) * 7
        if day > days_in_month:
            return None
        return date(year, month, day)
    if ordinal == -1:
        last = date(year, month, days_in_month)
        return last - timedelta(days=(last.weekday() - weekday) % 7)
    return None


def _split_start(raw: str) -> tuple[date, str]:
    date_part, sep, time_part = raw.partition("T")
    try:
        start_date = datetime.strptime(date_part[:8], "%Y%m%d").date()
    except ValueError:
        raise ExpansionAbort(f"cannot read DTSTART {raw!r}") from None
    return start_date, f"{sep}{time_part}"


def _weekly_dates(rule: RecurrenceRule, start_date: date) -> Iterator[date]:
    week_start_day = rule.week_start
    target_days = sorted(
        {spec.weekday for spec in rule.by_day},
        key=lambda weekday: (weekday - week_start_day) % 7,
    )
    if not target_days:
        target_days = [start_date.weekday()]

    week_start = start_date - timedelta(days=(start_date.weekday() - week_start_day) % 7)
    for _ in range(MAX_OCCURRENCES):
        for weekday in target_days:
            yield week_start + timedelta(days=(weekday - week_start_day) % 7)
        week_start += timedelta(weeks=rule.interval)


def _monthly_dates(rule: RecurrenceRule, start_date: date) -> Iterator[date]:
    spec = rule.by_day[0]
    year, month = start_date.year, start_date.month
    for _ in range(MAX_OCCURRENCES):
        candidate = nth_weekday_of_month(year, month, spec.weekday, spec.ordinal or 0)
        if candidate is not None:
            yield candidate
        month += rule.interval
        year += (month - 1) // 12
        month = (month - 1) % 12 + 1


class RecurrenceExpander:
    """Flattens masters (RRULE), exceptions (RECURRENCE-ID) and standalone events.

    Only FREQ=WEEKLY and FREQ=MONTHLY with a single nth-weekday BYDAY are expanded.
    A master that cannot be expanded is kept as a standalone event so the series
    never disappears from the target calendar.
    """

    def __init__(self, parser: IcsParser | None = None) -> None:
        self.parser = parser or IcsParser()

    def expand_rule(self, master: EventRecord) -> list[Occurrence]:
        rule = parse_rrule(master.recurrence_rule, self.parser)
        if rule.frequency not in SUPPORTED_FREQUENCIES:
            raise ExpansionAbort(f"unsupported FREQ {rule.frequency!r}")
        if rule.until is None:
            raise ExpansionAbort("RRULE has no usable UNTIL")
        if master.start is None or master.end is None:
            raise ExpansionAbort("master has no start/end")

        start_date, time_part = _split_start(master.start_raw)
        if rule.frequency == "WEEKLY":
            candidates = _weekly_dates(rule, start_date)
        else:
            if len(rule.by_day) != 1 or rule.by_day[0].ordinal is None:
                raise ExpansionAbort("MONTHLY needs exactly one ordinal BYDAY value")
            ordinal = rule.by_day[0].ordinal
            if not (1 <= ordinal <= 5 or ordinal == -1):
                raise ExpansionAbort(f"unsupported BYDAY ordinal {ordinal}")
            candidates = _monthly_dates(rule, start_date)

        duration = master.end - master.start
        occurrences: list[Occurrence] = []
        for candidate in candidates:
            if candidate < start_date:
                continue
            occurrence_id = candidate.strftime("%Y%m%d") + time_part
            start = self.parser.resolve_datetime(occurrence_id, master.start_params)
            if start is None:
                logger.warning("Skipping unresolvable occurrence %s of uid=%s", occurrence_id, master.uid)
                continue
            if start > rule.until:
                break
            occurrences.append(Occurrence(occurrence_id=occurrence_id, start=start, end=start + duration))
            if len(occurrences) >= MAX_OCCURRENCES:
                break
        return occurrences

    def expand(self, events: Iterable[EventRecord]) -> list[EventRecord]:
        masters: list[EventRecord] = []
        exceptions: list[EventRecord] = []
        standalone: list[EventRecord] = []
        for event in events:
            if event.is_exception:
                exceptions.append(event)
            elif event.recurrence_rule:
                masters.append(event)
            else:
                standalone.append(event)

        logger.info(
            "Recurring event breakdown: %d masters, %d exceptions, %d standalone",
            len(masters),
            len(exceptions),
            len(standalone),
        )

        exception_index = {(event.uid, event.recurrence_override_id) for event in exceptions}
        covered_exceptions: set[tuple[str, str]] = set()
        expanded_uids: set[str] = set()
        expanded: list[EventRecord] = []

        for master in masters:
            try:
                occurrences = self.expand_rule(master)
            except ExpansionAbort as exc:
                logger.warning(
                    "Could not expand RRULE for %r (uid=%s): %s; keeping as standalone",
                    master.summary,
                    master.uid,
                    exc,
                )
                standalone.append(master)
                continue
            if not occurrences:
                logger.warning(
                    "RRULE for %r (uid=%s) produced no occurrences; keeping as standalone",
                    master.summary,
                    master.uid,
                )
                standalone.append(master)
                continue

            expanded_uids.add(master.uid)
            excluded = set(master.excluded_occurrence_ids)
            skipped_excluded = 0
            skipped_exception = 0
            for occurrence in occurrences:
                key = (master.uid, occurrence.occurrence_id)
                covered = key in exception_index
                if covered:
                    covered_exceptions.add(key)
                if occurrence.occurrence_id in excluded:
                    skipped_excluded += 1
                    continue
                if covered:
                    skipped_exception += 1
                    continue
                expanded.append(
                    master.with_updates(
                        start=occurrence.start,
                        end=occurrence.end,
                        recurrence_override_id=occurrence.occurrence_id,
                        recurrence_rule="",
                        excluded_occurrence_ids=[],
                        start_raw=occurrence.occurrence_id,
                    )
                )

            logger.info(
                "Expanded %r: %d total, %d exdate-excluded, %d exception-covered, %d new occurrences",
                master.summary,
                len(occurrences),
                skipped_excluded,
                skipped_exception,
                len(occurrences) - skipped_excluded - skipped_exception,
            )

        for uid, override_id in sorted(exception_index - covered_exceptions):
            if uid in expanded_uids:
                logger.warning(
                    "Exception %s of uid=%s matches no generated occurrence; check RECURRENCE-ID format",
                    override_id,
                    uid,
                )

        result = standalone + exceptions + expanded
        logger.info(
            "After expansion: %d total events (%d from RRULE expansion)",
            len(result),
            len(expanded),
        )
        return result


def expand_recurring_events(events: Iterable[EventRecord], parser: IcsParser | None = None) -> list[EventRecord]:
    return RecurrenceExpander(parser).expand(events)
