"""Table definitions for the alarm state store.

Each alarm source keeps a single row holding the identifier of the newest
item it has already dispatched.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base shared by the state tables."""


class LastSeenMarkerModel(Base):
    """Last dispatched item per source key; overwritten on every advance."""

    __tablename__ = "last_seen_markers"

    source_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_item_id: Mapped[str] = mapped_column(String(512), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
