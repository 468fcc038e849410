"""
Change log builder.

Collects the logged events of a record, and optionally of every record in
it when the record is a container, into one ChangeLog ordered newest first.
The diff aggregator relies on that order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from config import settings
from services.event_source import EventSource
from services.history_types import (
    ChangeLog,
    Event,
    MalformedEvent,
    RecordRef,
    SnapshotEvent,
    UnknownSchemaError,
)

logger = logging.getLogger(__name__)


class ChangeLogBuilder:
    """Builds change logs from an event source."""

    def __init__(self, event_source: EventSource, max_concurrent: Optional[int] = None) -> None:
        self._source = event_source
        self._max_concurrent = max_concurrent or settings.HISTORY_MAX_CONCURRENT_FETCHES

    async def build(
        self,
        root: RecordRef,
        include_descendants: bool = False,
        max_steps: Optional[int] = None,
        boundary_sequence: Optional[int] = None,
        include_structural: bool = True,
    ) -> ChangeLog:
        """
        Build the change log of ``root``.

        Args:
            root: Record whose history is requested
            include_descendants: Also include every record contained in ``root``
            max_steps: Keep only the N most recent snapshot events per record.
                Structural events are never limited.
            boundary_sequence: Drop events with a sequence at or below this value
            include_structural: Include insert/delete events

        Returns:
            The merged ChangeLog, newest event first. Empty if nothing was logged.

        Raises:
            UnknownSchemaError: ``root`` belongs to a table the source does not know
        """
        if not self._source.is_known_table(root.table):
            raise UnknownSchemaError(root.table)

        records: list[RecordRef] = [root]
        if include_descendants:
            for descendant in await self._source.list_descendants(root):
                if descendant not in records:
                    records.append(descendant)

        # At most max_concurrent records are fetched at once. The merged
        # result is sorted below, so completion order does not matter.
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def fetch_bounded(record: RecordRef) -> tuple[list[Event], int]:
            async with semaphore:
                return await self._fetch_record(
                    record, max_steps, boundary_sequence, include_structural
                )

        fetched = await asyncio.gather(*(fetch_bounded(record) for record in records))

        events: list[Event] = []
        malformed_count = 0
        for record_events, record_malformed in fetched:
            events.extend(record_events)
            malformed_count += record_malformed

        events.sort(key=lambda event: event.sequence, reverse=True)

        if malformed_count:
            logger.warning(
                "[ChangeLog] Skipped %d malformed event(s) while building history of %s",
                malformed_count,
                root,
            )
        logger.debug(
            "[ChangeLog] Built change log for %s: %d event(s) across %d record(s), boundary=%s",
            root,
            len(events),
            len(records),
            boundary_sequence,
        )

        return ChangeLog(
            events=tuple(events),
            boundary_sequence=boundary_sequence,
            malformed_count=malformed_count,
        )

    async def _fetch_record(
        self,
        record: RecordRef,
        max_steps: Optional[int],
        boundary_sequence: Optional[int],
        include_structural: bool,
    ) -> tuple[list[Event], int]:
        """Fetch and filter the events of a single record."""
        raw_snapshots = await self._source.fetch_snapshots(record, max_steps, boundary_sequence)

        malformed_count = 0
        snapshots: list[SnapshotEvent] = []
        for item in raw_snapshots:
            if isinstance(item, MalformedEvent):
                malformed_count += 1
                continue
            if _after_boundary(item.sequence, boundary_sequence):
                snapshots.append(item)

        snapshots.sort(key=lambda event: event.sequence, reverse=True)
        if max_steps:
            snapshots = snapshots[:max_steps]

        events: list[Event] = list(snapshots)
        if include_structural:
            structural = await self._source.fetch_structural(record, None, boundary_sequence)
            events.extend(
                event for event in structural if _after_boundary(event.sequence, boundary_sequence)
            )

        return events, malformed_count


def _after_boundary(sequence: int, boundary_sequence: Optional[int]) -> bool:
    return boundary_sequence is None or sequence > boundary_sequence
