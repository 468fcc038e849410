"""
ContentElement model - a block of content placed on a page.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class ContentElement(Base):
    """Content element living on the page referenced by ``pid``."""

    __tablename__ = "content_elements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pid: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)

    ctype: Mapped[str] = mapped_column(String(64), default="text", nullable=False)
    header: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    bodytext: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sorting: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # File references are not restorable from history
    image: Mapped[Optional[list[str]]] = mapped_column(
        JSON, nullable=True, info={"restorable": False}
    )

    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "pid": self.pid,
            "ctype": self.ctype,
            "header": self.header,
            "bodytext": self.bodytext,
            "sorting": self.sorting,
            "hidden": self.hidden,
            "image": self.image,
            "deleted": self.deleted,
        }
