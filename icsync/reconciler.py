from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from icsync.models import EventRecord, OwnershipConfig, PlanEntry, ReconciliationPlan, TargetEvent


logger = logging.getLogger(__name__)

WINDOW_PADDING = timedelta(days=1)

TagLookup = Callable[[TargetEvent, str], "str | None"]


def _tags_lookup(event: TargetEvent, key: str) -> str | None:
    return event.tags.get(key)


def compute_window(events: Sequence[EventRecord]) -> tuple[datetime, datetime]:
    if not events:
        raise ValueError("cannot compute a sync window without events")
    window_start = min(event.start for event in events if event.start is not None)
    window_end = max(event.end for event in events if event.end is not None)
    return window_start - WINDOW_PADDING, window_end + WINDOW_PADDING


def events_equal(record: EventRecord, target: TargetEvent) -> bool:
    if record.title != (target.title or ""):
        return False
    if target.start is None or target.end is None:
        return False
    if record.start != target.start or record.end != target.end:
        return False
    if (record.description or "") != (target.description or ""):
        return False
    return (record.location or "") == (target.location or "")


def index_document_events(events: Iterable[EventRecord]) -> tuple[dict[str, EventRecord], list[str]]:
    indexed: dict[str, EventRecord] = {}
    duplicates: list[str] = []
    for event in events:
        key = event.identity_key
        if key in indexed:
            duplicates.append(key)
            logger.warning("Duplicate identity key %s (%r); the later record wins", key, event.summary)
        indexed[key] = event
    return indexed, duplicates


def build_plan(
    document_events: Iterable[EventRecord],
    target_events: Iterable[TargetEvent],
    ownership: OwnershipConfig,
    tag_lookup: TagLookup | None = None,
) -> ReconciliationPlan:
    """Diff document events against store events this system owns.

    Store events without the ownership tag are counted as foreign and never appear
    in the plan. Owned events are matched by their identity tag; whatever is left
    unmatched becomes a delete.
    """
    lookup = tag_lookup or _tags_lookup
    plan = ReconciliationPlan()
    indexed, plan.duplicate_keys = index_document_events(document_events)

    owned: dict[str, TargetEvent] = {}
    for target in target_events:
        if lookup(target, ownership.tag_key) != ownership.tag_value:
            plan.foreign_count += 1
            continue
        plan.owned_count += 1
        key = lookup(target, ownership.identity_tag_key)
        if not key:
            plan.untagged_owned += 1
            logger.warning("Owned event %r has no %s tag; leaving it alone", target.title, ownership.identity_tag_key)
            continue
        if key in owned:
            logger.warning("Owned events share identity key %s; scheduling the extra copy for deletion", key)
            plan.deletes.append((key, target))
            continue
        owned[key] = target

    for key, record in indexed.items():
        target = owned.pop(key, None)
        if target is None:
            plan.entries.append(PlanEntry(action="create", key=key, record=record))
        elif events_equal(record, target):
            plan.entries.append(PlanEntry(action="unchanged", key=key, record=record, target=target))
        else:
            plan.entries.append(PlanEntry(action="update", key=key, record=record, target=target))

    plan.deletes.extend(owned.items())
    return plan
