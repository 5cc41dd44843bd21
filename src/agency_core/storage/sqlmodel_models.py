"""SQLModel ORM tables for run coordination storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index
from sqlmodel import Field, SQLModel


class ResourceLock(SQLModel, table=True):
    __tablename__ = "resource_locks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_resource_locks_acquired_at", "acquired_at"),)

    resource_key: str = Field(primary_key=True)
    holder_run_id: str = Field(index=True)
    flow: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
