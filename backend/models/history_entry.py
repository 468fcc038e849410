"""
HistoryEntry model for storing the before/after state of a record update.

Each row belongs to exactly one update action in the log. ``history_data``
holds ``{"old_record": {...}, "new_record": {...}}`` restricted to the
fields that changed in that action.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.database import Base

if TYPE_CHECKING:
    from models.history_log import LogEntry


class HistoryEntry(Base):
    """
    Stores the old/new field values of one logged update.

    ``snapshot`` marks entries a user pinned as a restore point. It has no
    effect on diff computation, only on which entries a history view lists.
    """

    __tablename__ = "history_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    log_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("history_log.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    table_name: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    record_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    history_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    field_list: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )

    snapshot: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    log_entry: Mapped["LogEntry"] = relationship(
        "LogEntry",
        back_populates="history_entries",
    )

    def __repr__(self) -> str:
        return f"<HistoryEntry {self.id} {self.table_name}:{self.record_id} log={self.log_id}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "log_id": self.log_id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "field_list": self.field_list.split(",") if self.field_list else [],
            "snapshot": self.snapshot,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
