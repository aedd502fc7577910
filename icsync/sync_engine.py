from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from icsync.caldav_client import CalDAVService, EventStore
from icsync.config_manager import ConfigManager
from icsync.document_source import build_document_source
from icsync.errors import DuplicateIdentityError, IcsyncError
from icsync.ics_parser import IcsParser
from icsync.models import AppConfig, EventRecord, OwnershipConfig, SyncResult, TargetEvent, serialize_datetime
from icsync.reconciler import build_plan, compute_window, index_document_events
from icsync.rrule_expander import expand_recurring_events
from icsync.throttle import MutationThrottle


logger = logging.getLogger(__name__)

DRY_RUN_PREFIX = "[DRY RUN] "
MAINTENANCE_SPAN = timedelta(days=365)
COUNTERS = {"create": "created", "update": "updated", "delete": "deleted"}


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _action_entry(action: str, key: str, title: str, start: datetime | None, end: datetime | None) -> dict[str, Any]:
    return {
        "action": action,
        "key": key,
        "title": title,
        "start": serialize_datetime(start),
        "end": serialize_datetime(end),
    }


def summary_message(result: SyncResult) -> str:
    prefix = DRY_RUN_PREFIX if result.dry_run else ""
    return (
        f"{prefix}Sync complete: {result.created} created, {result.updated} updated, "
        f"{result.unchanged} unchanged, {result.deleted} deleted, {result.errors} errors"
    )


def _maintenance_window(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    return start or now - MAINTENANCE_SPAN, end or now + MAINTENANCE_SPAN


class SyncEngine:
    """Runs one reconciliation of the calendar document against the target calendar."""

    def __init__(self, config_manager: ConfigManager, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config_manager = config_manager
        self._sleep = sleep
        self._run_lock = threading.Lock()
        self.last_result: SyncResult | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_once(self, trigger: str = "manual", dry_run: bool | None = None) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Sync already in progress; skipping %s run", trigger)
            return SyncResult(
                status="skipped",
                message="Sync already in progress.",
                trigger=trigger,
                dry_run=bool(dry_run),
            )
        try:
            result = self._run(trigger, dry_run)
        finally:
            self._run_lock.release()
        self.last_result = result
        return result

    def _run(self, trigger: str, dry_run: bool | None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        result = SyncResult(status="success", message="", trigger=trigger, dry_run=bool(dry_run), run_at=started_at)
        try:
            config = self.config_manager.load()
            if dry_run is None:
                result.dry_run = config.sync.dry_run
            logger.info("%sStarting sync (trigger=%s)", DRY_RUN_PREFIX if result.dry_run else "", trigger)
            self._sync(config, result)
        except IcsyncError as exc:
            logger.error("Sync aborted before any change: %s", exc)
            result.status = "failed"
            result.message = f"{type(exc).__name__}: {exc}"
        except Exception as exc:
            logger.exception("Sync failed")
            result.status = "failed"
            result.message = f"{type(exc).__name__}: {exc}"
        result.duration_ms = _elapsed_ms(started_at)
        return result

    def _load_document(self, config: AppConfig) -> list[EventRecord] | None:
        source = build_document_source(config.source)
        content = source.fetch(config.source.document_name)
        if content is None:
            return None
        parser = IcsParser(timezone_map=config.timezone_map, local_timezone=config.sync.timezone)
        return expand_recurring_events(parser.parse(content), parser)

    def _sync(self, config: AppConfig, result: SyncResult) -> None:
        events = self._load_document(config)
        if events is None:
            result.status = "skipped"
            result.message = f"Calendar document {config.source.document_name} not found."
            logger.error(result.message)
            return
        if not events:
            result.status = "skipped"
            result.message = "No events found in calendar document."
            logger.info(result.message)
            return

        indexed, duplicates = index_document_events(events)
        if len(duplicates) > config.sync.max_duplicate_keys:
            raise DuplicateIdentityError(duplicates, config.sync.max_duplicate_keys)

        window_start, window_end = compute_window(events)
        store = CalDAVService(config.caldav)
        targets = store.query_events(window_start, window_end)
        logger.info(
            "Found %d calendar events between %s and %s",
            len(targets),
            window_start.isoformat(),
            window_end.isoformat(),
        )

        plan = build_plan(indexed.values(), targets, config.ownership, tag_lookup=store.get_tag)
        logger.info(
            "Owned events: %d, foreign events left alone: %d, document events: %d",
            plan.owned_count,
            plan.foreign_count,
            len(indexed),
        )

        throttle = MutationThrottle(config.throttle, sleep=self._sleep)
        for entry in plan.entries:
            record = entry.record
            if entry.action == "unchanged":
                result.unchanged += 1
                continue
            action = _action_entry(entry.action, entry.key, record.title, record.start, record.end)
            if entry.action == "create":
                operation = self._creator(store, record, entry.key, config.ownership)
            else:
                operation = self._updater(store, entry.target, record)
            self._mutate(result, throttle, action, operation)

        for key, target in plan.deletes:
            action = _action_entry("delete", key, target.title, target.start, target.end)
            self._mutate(result, throttle, action, lambda target=target: store.delete_event(target))

        result.message = summary_message(result)
        logger.info(result.message)

    @staticmethod
    def _creator(store: EventStore, record: EventRecord, key: str, ownership: OwnershipConfig) -> Callable[[], None]:
        def create() -> None:
            created = store.create_event(record.title, record.start, record.end, record.description, record.location)
            try:
                store.set_tag(created, ownership.tag_key, ownership.tag_value)
                store.set_tag(created, ownership.identity_tag_key, key)
            except Exception:
                # An event without its identity tag would never be matched again.
                try:
                    store.delete_event(created)
                except Exception as cleanup_exc:
                    logger.error("Could not remove partially tagged event %r (%s): %s", record.title, key, cleanup_exc)
                raise

        return create

    @staticmethod
    def _updater(store: EventStore, target: TargetEvent, record: EventRecord) -> Callable[[], None]:
        def update() -> None:
            store.update_event(target, record.title, record.start, record.end, record.description, record.location)

        return update

    def _mutate(
        self,
        result: SyncResult,
        throttle: MutationThrottle,
        action: dict[str, Any],
        operation: Callable[[], None],
    ) -> None:
        verb = action["action"]
        if result.dry_run:
            logger.info("%sWould %s: %r (%s)", DRY_RUN_PREFIX, verb, action["title"], action["key"])
            result.actions.append(action)
            setattr(result, COUNTERS[verb], getattr(result, COUNTERS[verb]) + 1)
            return
        try:
            operation()
        except Exception as exc:
            result.errors += 1
            logger.error("Failed to %s %r (%s): %s", verb, action["title"], action["key"], exc)
            result.actions.append({**action, "error": str(exc)})
            throttle.after_error()
            return
        logger.info("%s: %r (%s)", COUNTERS[verb].capitalize(), action["title"], action["key"])
        result.actions.append(action)
        setattr(result, COUNTERS[verb], getattr(result, COUNTERS[verb]) + 1)
        throttle.after_mutation()

    @staticmethod
    def _owned_events(
        store: EventStore, ownership: OwnershipConfig, window_start: datetime, window_end: datetime
    ) -> list[TargetEvent]:
        return [
            event
            for event in store.query_events(window_start, window_end)
            if store.get_tag(event, ownership.tag_key) == ownership.tag_value
        ]

    def list_owned_events(self, start: datetime | None = None, end: datetime | None = None) -> list[TargetEvent]:
        config = self.config_manager.load()
        window_start, window_end = _maintenance_window(start, end)
        owned = self._owned_events(CalDAVService(config.caldav), config.ownership, window_start, window_end)
        logger.info("Found %d owned events between %s and %s", len(owned), window_start, window_end)
        return owned

    def purge_owned_events(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        dry_run: bool = False,
    ) -> SyncResult:
        """Delete every event this system created in the window; foreign events stay."""
        started_at = datetime.now(timezone.utc)
        result = SyncResult(status="success", message="", trigger="purge", dry_run=dry_run, run_at=started_at)
        if not self._run_lock.acquire(blocking=False):
            result.status = "skipped"
            result.message = "Sync already in progress."
            return result
        try:
            config = self.config_manager.load()
            window_start, window_end = _maintenance_window(start, end)
            store = CalDAVService(config.caldav)
            throttle = MutationThrottle(config.throttle, sleep=self._sleep)
            for target in self._owned_events(store, config.ownership, window_start, window_end):
                key = store.get_tag(target, config.ownership.identity_tag_key) or ""
                action = _action_entry("delete", key, target.title, target.start, target.end)
                self._mutate(result, throttle, action, lambda target=target: store.delete_event(target))
        finally:
            self._run_lock.release()
        prefix = DRY_RUN_PREFIX if dry_run else ""
        result.message = f"{prefix}Purge complete: {result.deleted} deleted, {result.errors} errors"
        result.duration_ms = _elapsed_ms(started_at)
        logger.info(result.message)
        return result
