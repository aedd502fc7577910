import itertools
import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from icsync.ics_parser import (
    IcsParser,
    load_timezone,
    parse_ics,
    parse_parameters,
    split_property_line,
    unescape_text,
    unfold_lines,
)


def _document(*events: str) -> str:
    return "\r\n".join(["BEGIN:VCALENDAR", "VERSION:2.0", *events, "END:VCALENDAR", ""])


def _event(*lines: str) -> str:
    return "\r\n".join(["BEGIN:VEVENT", *lines, "END:VEVENT"])


class UnescapeTests(unittest.TestCase):
    def test_all_four_sequences(self) -> None:
        self.assertEqual(unescape_text(r"a\nb\,c\;d\\e"), "a\nb,c;d\\e")

    def test_order_of_sequences_in_source_does_not_matter(self) -> None:
        segments = {r"\n": "\n", r"\,": ",", r"\;": ";", r"\\": "\\"}
        for order in itertools.permutations(segments):
            source = "x".join(order)
            expected = "x".join(segments[item] for item in order)
            self.assertEqual(unescape_text(source), expected, source)

    def test_plain_text_untouched(self) -> None:
        self.assertEqual(unescape_text("Team sync"), "Team sync")


class LineHandlingTests(unittest.TestCase):
    def test_unfold_joins_continuation_lines(self) -> None:
        lines = list(unfold_lines("SUMMARY:Long\r\n  title\r\n\tcontinued\r\nUID:1"))
        self.assertEqual(lines, ["SUMMARY:Long title" + "continued", "UID:1"])

    def test_split_respects_quoted_parameters(self) -> None:
        split = split_property_line('DTSTART;TZID="Custom: Zone":20250101T090000')
        self.assertEqual(split, ('DTSTART;TZID="Custom: Zone"', "20250101T090000"))

    def test_split_rejects_lines_without_name(self) -> None:
        self.assertIsNone(split_property_line(":value"))
        self.assertIsNone(split_property_line("no colon here"))

    def test_parse_parameters(self) -> None:
        params = parse_parameters('DTSTART;TZID="Tokyo Standard Time";VALUE=DATE-TIME')
        self.assertEqual(params, {"TZID": "Tokyo Standard Time", "VALUE": "DATE-TIME"})


class ResolveDatetimeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.parser = IcsParser()

    def test_utc_marker(self) -> None:
        resolved = self.parser.resolve_datetime("20250310T090000Z")
        self.assertEqual(resolved, datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))

    def test_legacy_timezone_name_is_mapped(self) -> None:
        resolved = self.parser.resolve_datetime("20250310T090000", "DTSTART;TZID=Tokyo Standard Time")
        self.assertEqual(resolved, datetime(2025, 3, 10, 0, 0, tzinfo=timezone.utc))

    def test_named_zone_follows_daylight_saving(self) -> None:
        before = self.parser.resolve_datetime("20250307T090000", "DTSTART;TZID=America/New_York")
        after = self.parser.resolve_datetime("20250310T090000", "DTSTART;TZID=America/New_York")
        self.assertEqual(before.astimezone(timezone.utc).hour, 14)
        self.assertEqual(after.astimezone(timezone.utc).hour, 13)

    def test_unknown_zone_falls_back_to_local_time(self) -> None:
        parser = IcsParser(local_timezone="Europe/Berlin")
        resolved = parser.resolve_datetime("20250110T090000", "DTSTART;TZID=Mars Standard Time")
        self.assertEqual(resolved, datetime(2025, 1, 10, 9, 0, tzinfo=ZoneInfo("Europe/Berlin")))

    def test_zone_database_folder_falls_back_to_local_time(self) -> None:
        parser = IcsParser(local_timezone="Europe/Berlin")
        for tzid in ("America", "Etc"):
            resolved = parser.resolve_datetime("20250110T090000", f"DTSTART;TZID={tzid}")
            self.assertEqual(resolved, datetime(2025, 1, 10, 9, 0, tzinfo=ZoneInfo("Europe/Berlin")))

    def test_zone_database_folder_as_local_timezone_uses_utc(self) -> None:
        self.assertIs(load_timezone("Europe"), timezone.utc)
        parser = IcsParser(local_timezone="America")
        resolved = parser.resolve_datetime("20250110T090000")
        self.assertEqual(resolved, datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc))

    def test_resolver_failure_falls_back_to_local_time(self) -> None:
        def broken(wall_clock, zone_id):
            raise RuntimeError("tz database unavailable")

        parser = IcsParser(local_timezone="Asia/Tokyo", resolve_zoned=broken)
        resolved = parser.resolve_datetime("20250110T090000", "DTSTART;TZID=Asia/Tokyo")
        self.assertEqual(resolved, datetime(2025, 1, 10, 9, 0, tzinfo=ZoneInfo("Asia/Tokyo")))

    def test_date_only_is_local_midnight(self) -> None:
        parser = IcsParser(local_timezone="Asia/Tokyo")
        resolved = parser.resolve_datetime("20250110", "DTSTART;VALUE=DATE")
        self.assertEqual(resolved, datetime(2025, 1, 10, 0, 0, tzinfo=ZoneInfo("Asia/Tokyo")))

    def test_value_date_time_is_not_date_only(self) -> None:
        self.assertFalse(IcsParser.is_date_only("20250110T090000", "DTSTART;VALUE=DATE-TIME"))
        self.assertTrue(IcsParser.is_date_only("20250110", "DTSTART"))

    def test_floating_time_uses_local_timezone(self) -> None:
        resolved = self.parser.resolve_datetime("20250110T090000")
        self.assertEqual(resolved, datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc))

    def test_unrecognized_value_returns_none(self) -> None:
        self.assertIsNone(self.parser.resolve_datetime("next tuesday"))
        self.assertIsNone(self.parser.resolve_datetime("20251340T090000"))


class ParseDocumentTests(unittest.TestCase):
    def test_parses_fields_and_unescapes_text(self) -> None:
        document = _document(
            _event(
                "UID:evt-1",
                r"SUMMARY:Planning\, Q1",
                r"DESCRIPTION:Line one\nLine two",
                r"LOCATION:Room 4\; East",
                "DTSTART:20250110T090000Z",
                "DTEND:20250110T100000Z",
            )
        )
        events = parse_ics(document)
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.uid, "evt-1")
        self.assertEqual(event.summary, "Planning, Q1")
        self.assertEqual(event.description, "Line one\nLine two")
        self.assertEqual(event.location, "Room 4; East")
        self.assertEqual(event.end - event.start, timedelta(hours=1))
        self.assertEqual(event.identity_key, "evt-1")

    def test_records_missing_required_fields_are_dropped(self) -> None:
        document = _document(
            _event("UID:no-end", "DTSTART:20250110T090000Z"),
            _event("SUMMARY:No uid", "DTSTART:20250110T090000Z", "DTEND:20250110T100000Z"),
            _event("UID:bad-date", "DTSTART:tomorrow", "DTEND:20250110T100000Z"),
            _event("UID:kept", "DTSTART:20250110T090000Z", "DTEND:20250110T100000Z"),
        )
        self.assertEqual([event.uid for event in parse_ics(document)], ["kept"])

    def test_nested_alarm_properties_are_ignored(self) -> None:
        document = _document(
            _event(
                "UID:evt-1",
                "SUMMARY:Dentist",
                "DTSTART:20250110T090000Z",
                "DTEND:20250110T100000Z",
                "BEGIN:VALARM",
                "DESCRIPTION:Reminder",
                "TRIGGER:-PT15M",
                "END:VALARM",
            )
        )
        event = parse_ics(document)[0]
        self.assertEqual(event.description, "")

    def test_recurrence_fields_are_kept_raw(self) -> None:
        document = _document(
            _event(
                "UID:series",
                "DTSTART;TZID=Tokyo Standard Time:20250106T100000",
                "DTEND;TZID=Tokyo Standard Time:20250106T110000",
                "RRULE:FREQ=WEEKLY;UNTIL=20250301T000000Z;BYDAY=MO",
                "EXDATE;TZID=Tokyo Standard Time:20250113T100000,20250120T100000",
                "EXDATE;TZID=Tokyo Standard Time:20250120T100000",
            ),
            _event(
                "UID:series",
                "RECURRENCE-ID;TZID=Tokyo Standard Time:20250127T100000",
                "DTSTART;TZID=Tokyo Standard Time:20250127T140000",
                "DTEND;TZID=Tokyo Standard Time:20250127T150000",
            ),
        )
        master, exception = parse_ics(document)
        self.assertTrue(master.is_master)
        self.assertEqual(master.recurrence_rule, "FREQ=WEEKLY;UNTIL=20250301T000000Z;BYDAY=MO")
        self.assertEqual(master.excluded_occurrence_ids, ["20250113T100000", "20250120T100000"])
        self.assertEqual(master.start_raw, "20250106T100000")
        self.assertTrue(exception.is_exception)
        self.assertEqual(exception.identity_key, "series|20250127T100000")

    def test_bytes_with_bom_and_bare_newlines(self) -> None:
        document = "\ufeff" + _document(
            _event("UID:evt-1", "DTSTART:20250110", "DTEND:20250111")
        ).replace("\r\n", "\n")
        events = parse_ics(document.encode("utf-8"))
        self.assertEqual(len(events), 1)
        self.assertTrue(events[0].all_day)

    def test_empty_summary_gets_default_title(self) -> None:
        document = _document(_event("UID:evt-1", "DTSTART:20250110T090000Z", "DTEND:20250110T100000Z"))
        self.assertEqual(parse_ics(document)[0].title, "Untitled Event")

    def test_reparsing_is_stable(self) -> None:
        document = _document(
            _event("UID:a", "SUMMARY:A", "DTSTART:20250110T090000Z", "DTEND:20250110T100000Z"),
            _event("UID:b", "SUMMARY:B", "DTSTART:20250111T090000Z", "DTEND:20250111T100000Z"),
        )
        first = [event.to_dict() for event in parse_ics(document)]
        second = [event.to_dict() for event in parse_ics(document)]
        self.assertEqual(first, second)


if __name__ == "__main__":
    unittest.main()
