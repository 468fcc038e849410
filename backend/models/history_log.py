"""
LogEntry model - the append-only action log.

Every insert, update and delete performed on a content record writes one
row here. The row id is the log sequence number: it only ever grows, so
ordering by it orders actions in time.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import DateTime, Integer, SmallInteger, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.database import Base

if TYPE_CHECKING:
    from models.history_entry import HistoryEntry

# Action codes stored in history_log.action
ACTION_INSERT = 1
ACTION_UPDATE = 2
ACTION_DELETE = 3

ACTION_NAMES: dict[int, str] = {
    ACTION_INSERT: "insert",
    ACTION_UPDATE: "update",
    ACTION_DELETE: "delete",
}


class LogEntry(Base):
    """One logged action on one record."""

    __tablename__ = "history_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    action: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
    )

    table_name: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    record_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    history_entries: Mapped[list["HistoryEntry"]] = relationship(
        "HistoryEntry",
        back_populates="log_entry",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<LogEntry {self.id} {self.table_name}:{self.record_id} action={self.action}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": ACTION_NAMES.get(self.action, str(self.action)),
            "table_name": self.table_name,
            "record_id": self.record_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @property
    def is_insert(self) -> bool:
        """Check if this is an insert action."""
        return self.action == ACTION_INSERT

    @property
    def is_delete(self) -> bool:
        """Check if this is a delete action."""
        return self.action == ACTION_DELETE
