"""
Event sources for the record history.

An event source hands out the logged events of one record:

- snapshot events: old/new field values of an update (``history_entries``)
- structural events: insert and delete markers (``history_log``)

Both come newest first and carry the log sequence number. Rows that cannot
be decoded are returned as ``MalformedEvent`` placeholders so the caller can
count and skip them without losing the rest of the history.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.database import get_session
from models.history_entry import HistoryEntry
from models.history_log import ACTION_DELETE, ACTION_INSERT, LogEntry
from services import content_schema
from services.history_types import (
    FieldMap,
    MalformedEvent,
    MalformedEventError,
    RecordRef,
    SnapshotEvent,
    StructuralEvent,
    StructuralKind,
    UnknownSchemaError,
)

logger = logging.getLogger(__name__)

SnapshotResult = Union[SnapshotEvent, MalformedEvent]


class EventSource(Protocol):
    """What the change log builder needs from the event storage."""

    def is_known_table(self, table: str) -> bool: ...

    async def fetch_snapshots(
        self,
        record: RecordRef,
        max_steps: Optional[int],
        since_sequence: Optional[int],
    ) -> list[SnapshotResult]: ...

    async def fetch_structural(
        self,
        record: RecordRef,
        max_steps: Optional[int],
        since_sequence: Optional[int],
    ) -> list[StructuralEvent]: ...

    async def list_descendants(self, root: RecordRef) -> list[RecordRef]: ...


class HistoryStore(EventSource, Protocol):
    """Event source with the lookups the record history views need."""

    async def resolve_history_entry(self, history_id: int) -> Optional[tuple[RecordRef, int]]: ...

    async def latest_snapshot_sequence(self, record: RecordRef) -> Optional[int]: ...


def decode_history_data(sequence: int, raw: Any) -> tuple[FieldMap, FieldMap]:
    """
    Decode a stored ``history_data`` payload into (old_fields, new_fields).

    Accepts the JSON column value or a JSON encoded string. Raises
    MalformedEventError if either side is missing or not a mapping.
    """
    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedEventError(sequence, f"invalid JSON ({e})") from e
    if not isinstance(data, dict):
        raise MalformedEventError(sequence, "history data is not an object")

    old_fields = data.get("old_record")
    new_fields = data.get("new_record")
    if not isinstance(old_fields, dict) or not isinstance(new_fields, dict):
        raise MalformedEventError(sequence, "old_record/new_record missing")
    return dict(old_fields), dict(new_fields)


class SqlEventSource:
    """Event source reading ``history_log`` and ``history_entries`` through SQLAlchemy."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self._session_factory = session_factory

    def is_known_table(self, table: str) -> bool:
        return content_schema.is_known_table(table)

    def _check_table(self, record: RecordRef) -> None:
        if not self.is_known_table(record.table):
            raise UnknownSchemaError(record.table)

    async def fetch_snapshots(
        self,
        record: RecordRef,
        max_steps: Optional[int],
        since_sequence: Optional[int],
    ) -> list[SnapshotResult]:
        """Get the most recent update snapshots of ``record``, newest first."""
        self._check_table(record)

        query = (
            select(HistoryEntry, LogEntry)
            .join(LogEntry, HistoryEntry.log_id == LogEntry.id)
            .where(
                HistoryEntry.table_name == record.table,
                HistoryEntry.record_id == record.id,
            )
            .order_by(LogEntry.id.desc())
        )
        if since_sequence is not None:
            query = query.where(LogEntry.id > since_sequence)
        if max_steps:
            query = query.limit(max_steps)

        async with get_session(self._session_factory) as session:
            rows = (await session.execute(query)).all()

        events: list[SnapshotResult] = []
        for entry, log_entry in rows:
            try:
                old_fields, new_fields = decode_history_data(log_entry.id, entry.history_data)
            except MalformedEventError as e:
                logger.warning(
                    "[EventSource] Skipping history entry %s for %s: %s",
                    entry.id,
                    record,
                    e.reason,
                )
                events.append(MalformedEvent(sequence=log_entry.id, record=record, reason=e.reason))
                continue
            events.append(
                SnapshotEvent(
                    sequence=log_entry.id,
                    record=record,
                    old_fields=old_fields,
                    new_fields=new_fields,
                    recorded_by=log_entry.user_id,
                    recorded_at=log_entry.created_at,
                    is_snapshot_mark=bool(entry.snapshot),
                    history_id=entry.id,
                )
            )
        return events

    async def fetch_structural(
        self,
        record: RecordRef,
        max_steps: Optional[int],
        since_sequence: Optional[int],
    ) -> list[StructuralEvent]:
        """Get insert/delete markers of ``record``, newest first."""
        self._check_table(record)

        query = (
            select(LogEntry)
            .where(
                LogEntry.table_name == record.table,
                LogEntry.record_id == record.id,
                LogEntry.action.in_((ACTION_INSERT, ACTION_DELETE)),
            )
            .order_by(LogEntry.id.desc())
        )
        if since_sequence is not None:
            query = query.where(LogEntry.id > since_sequence)
        if max_steps:
            query = query.limit(max_steps)

        async with get_session(self._session_factory) as session:
            log_entries = (await session.execute(query)).scalars().all()

        return [
            StructuralEvent(
                sequence=log_entry.id,
                record=record,
                kind=StructuralKind.INSERT if log_entry.is_insert else StructuralKind.DELETE,
                recorded_at=log_entry.created_at,
                recorded_by=log_entry.user_id,
            )
            for log_entry in log_entries
        ]

    async def list_descendants(self, root: RecordRef) -> list[RecordRef]:
        """Records of every known table that live in the container ``root``."""
        self._check_table(root)
        if not content_schema.is_container(root.table):
            return []

        descendants: list[RecordRef] = []
        async with get_session(self._session_factory) as session:
            for table, model_class in content_schema.TABLE_MODELS.items():
                result = await session.execute(
                    select(model_class.id)
                    .where(model_class.pid == root.id)
                    .order_by(model_class.id)
                )
                descendants.extend(RecordRef(table, uid) for uid in result.scalars().all())

        logger.debug("[EventSource] %s has %d descendant(s)", root, len(descendants))
        return descendants

    async def resolve_history_entry(self, history_id: int) -> Optional[tuple[RecordRef, int]]:
        """
        Map a history entry id to its record and the boundary just below it.

        A diff built with the returned boundary includes the entry itself.
        """
        async with get_session(self._session_factory) as session:
            row = (
                await session.execute(
                    select(HistoryEntry.table_name, HistoryEntry.record_id, HistoryEntry.log_id)
                    .where(HistoryEntry.id == history_id)
                )
            ).first()
        if row is None:
            return None
        table_name, record_id, log_id = row
        return RecordRef(table_name, record_id), log_id - 1

    async def latest_snapshot_sequence(self, record: RecordRef) -> Optional[int]:
        """Sequence of the newest update snapshot of ``record``, if any."""
        self._check_table(record)
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                select(HistoryEntry.log_id)
                .where(
                    HistoryEntry.table_name == record.table,
                    HistoryEntry.record_id == record.id,
                )
                .order_by(HistoryEntry.log_id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
