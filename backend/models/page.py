"""
Page model - the container of the content tree.

Every content record (including sub pages) points at its parent page via
``pid``. Page history can therefore include the history of everything on
the page.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Page(Base):
    """A page in the page tree."""

    __tablename__ = "pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pid: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    nav_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    slug: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # File references are not restorable from history
    media: Mapped[Optional[list[str]]] = mapped_column(
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
            "title": self.title,
            "nav_title": self.nav_title,
            "slug": self.slug,
            "hidden": self.hidden,
            "media": self.media,
            "deleted": self.deleted,
        }
