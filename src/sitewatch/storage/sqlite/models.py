"""SQLAlchemy ORM models for the persistent key-value store."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class KeyValueEntry(Base):
    """A single stored key with its optional absolute expiry."""

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    # Epoch seconds; NULL never expires
    expires_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_kv_entries_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        return f"<KeyValueEntry(key={self.key}, expires_at={self.expires_at})>"
