"""
Diff aggregation over a change log.

Turns any number of logged snapshots and insert/delete markers into one
net difference:

- structural_delta: inserts minus deletes per record, zero entries removed
- field_delta: per record and field, the value before the earliest change
  in the window, kept only where it differs from the value after the
  latest change

A record that was inserted and deleted again inside the window never
existed from the window's point of view and leaves no trace. A record that
was deleted and re-inserted keeps its identity: its fields are compared
from before the delete to after the re-insert.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from services.history_types import (
    AggregatedDiff,
    ChangeLog,
    FieldMap,
    RecordRef,
    SnapshotEvent,
    StructuralEvent,
    StructuralKind,
)

logger = logging.getLogger(__name__)

# (table, field) -> whether a rollback may write the field
IsRestorable = Callable[[str, str], bool]


def aggregate(log: ChangeLog, is_restorable: Optional[IsRestorable] = None) -> AggregatedDiff:
    """
    Aggregate ``log`` (newest event first) into one AggregatedDiff.

    Args:
        log: Change log as produced by ChangeLogBuilder.build
        is_restorable: Optional predicate; fields it rejects never show up
            in the field delta

    Returns:
        The aggregated diff. Empty when the log is empty or nets out.
    """
    counters: dict[RecordRef, int] = {}
    oldest_structural: dict[RecordRef, StructuralKind] = {}
    newest_new: dict[RecordRef, FieldMap] = {}
    oldest_old: dict[RecordRef, FieldMap] = {}

    for event in log:
        record = event.record
        if isinstance(event, StructuralEvent):
            step = 1 if event.kind is StructuralKind.INSERT else -1
            counters[record] = counters.get(record, 0) + step
            # Walking newest to oldest, the last write is the oldest event
            oldest_structural[record] = event.kind
        elif isinstance(event, SnapshotEvent):
            # Snapshots only hold the fields changed in that step, so merge
            # field by field: the first value seen per field is the newest,
            # the last one seen is the oldest.
            newest = newest_new.setdefault(record, {})
            for field_name, value in event.new_fields.items():
                newest.setdefault(field_name, value)
            oldest_old.setdefault(record, {}).update(event.old_fields)

    structural_delta: dict[RecordRef, int] = {
        record: count for record, count in counters.items() if count != 0
    }

    field_delta: dict[RecordRef, FieldMap] = {}
    current_fields: dict[RecordRef, FieldMap] = {}
    for record, newest in newest_new.items():
        if record in structural_delta:
            logger.debug(
                "[DiffAggregator] %s has net structural change %+d, no field restore",
                record,
                structural_delta[record],
            )
            continue
        if record in counters and oldest_structural[record] is StructuralKind.INSERT:
            logger.debug("[DiffAggregator] %s was created and removed inside the window", record)
            continue

        oldest = oldest_old.get(record, {})
        restore: FieldMap = {}
        current: FieldMap = {}
        for field_name, new_value in newest.items():
            if field_name not in oldest:
                continue
            old_value = oldest[field_name]
            if old_value == new_value:
                continue
            if is_restorable is not None and not is_restorable(record.table, field_name):
                continue
            restore[field_name] = old_value
            current[field_name] = new_value

        if restore:
            field_delta[record] = restore
            current_fields[record] = current

    logger.debug(
        "[DiffAggregator] %d event(s) -> %d structural, %d field entr(ies)",
        len(log),
        len(structural_delta),
        len(field_delta),
    )
    return AggregatedDiff(
        structural_delta=structural_delta,
        field_delta=field_delta,
        current_fields=current_fields,
    )
