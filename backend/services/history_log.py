"""
Writers for the record history log.

The mutation layer calls these when it inserts, updates or deletes a
content record, inside the same session as the mutation itself. What counts
as a change is decided by the caller; this module stores what it is given.
"""

import logging
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.database import get_session
from models.history_entry import HistoryEntry
from models.history_log import ACTION_DELETE, ACTION_INSERT, ACTION_UPDATE, LogEntry
from services.history_types import FieldMap, RecordRef

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    """Convert column values the JSON column cannot store as-is."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


async def _add_log_entry(
    session: AsyncSession,
    record: RecordRef,
    action: int,
    user_id: Optional[str],
) -> LogEntry:
    log_entry = LogEntry(
        user_id=user_id,
        action=action,
        table_name=record.table,
        record_id=record.id,
    )
    session.add(log_entry)
    await session.flush()  # Get the sequence number without committing
    return log_entry


async def log_insert(
    session: AsyncSession,
    record: RecordRef,
    user_id: Optional[str] = None,
) -> LogEntry:
    """Log that ``record`` was created (or brought back)."""
    log_entry = await _add_log_entry(session, record, ACTION_INSERT, user_id)
    logger.debug(f"[HistoryLog] insert {record} seq={log_entry.id}")
    return log_entry


async def log_delete(
    session: AsyncSession,
    record: RecordRef,
    user_id: Optional[str] = None,
) -> LogEntry:
    """Log that ``record`` was deleted."""
    log_entry = await _add_log_entry(session, record, ACTION_DELETE, user_id)
    logger.debug(f"[HistoryLog] delete {record} seq={log_entry.id}")
    return log_entry


async def log_update(
    session: AsyncSession,
    record: RecordRef,
    old_fields: FieldMap,
    new_fields: FieldMap,
    user_id: Optional[str] = None,
) -> Optional[HistoryEntry]:
    """
    Log an update of ``record`` with the changed fields before and after.

    Returns None without writing anything when both maps are empty.
    """
    if not old_fields and not new_fields:
        return None

    log_entry = await _add_log_entry(session, record, ACTION_UPDATE, user_id)
    entry = HistoryEntry(
        log_id=log_entry.id,
        table_name=record.table,
        record_id=record.id,
        history_data={
            "old_record": {k: _jsonable(v) for k, v in old_fields.items()},
            "new_record": {k: _jsonable(v) for k, v in new_fields.items()},
        },
        field_list=",".join(new_fields.keys() or old_fields.keys()),
    )
    session.add(entry)
    await session.flush()

    logger.debug(
        f"[HistoryLog] update {record} seq={log_entry.id} fields={entry.field_list}"
    )
    return entry


async def toggle_snapshot_mark(
    history_id: int,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Optional[bool]:
    """
    Flip the snapshot mark of a history entry.

    Returns the new mark, or None if the entry does not exist.
    """
    async with get_session(session_factory) as session:
        entry = await session.get(HistoryEntry, history_id)
        if entry is None:
            logger.warning("[HistoryLog] History entry %s not found", history_id)
            return None
        entry.snapshot = not entry.snapshot
        await session.commit()
        logger.info(
            "[HistoryLog] History entry %s %s",
            history_id,
            "marked" if entry.snapshot else "unmarked",
        )
        return entry.snapshot
