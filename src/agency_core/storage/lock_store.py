"""Durable per-resource lock store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agency_core.storage.alembic_runner import upgrade_head
from agency_core.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agency_core.storage.sqlmodel_models import ResourceLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LockAcquired:
    """Lock was written for the requesting run."""

    resource_key: str
    run_id: str


@dataclass(frozen=True, slots=True)
class AlreadyLocked:
    """Another run holds the resource."""

    resource_key: str
    existing_run_id: str


@dataclass(frozen=True, slots=True)
class ResourceLockView:
    """Stored lock row."""

    resource_key: str
    holder_run_id: str
    flow: str
    acquired_at: datetime


class ResourceLockStore:
    """Mutual-exclusion map keyed by resource identity that survives restarts.

    The primary key on ``resource_key`` makes ``acquire`` an atomic
    check-and-set across threads and processes sharing the database file.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def acquire(
        self,
        resource_key: str,
        run_id: str,
        *,
        flow: str,
        acquired_at: datetime | None = None,
    ) -> LockAcquired | AlreadyLocked:
        """Write a lock for ``run_id`` unless the resource is already held."""

        stamp = to_db_datetime(acquired_at or utc_now())
        while True:
            with Session(self.engine) as session:
                session.add(
                    ResourceLock(
                        resource_key=resource_key,
                        holder_run_id=run_id,
                        flow=flow,
                        acquired_at=stamp,
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                else:
                    return LockAcquired(resource_key=resource_key, run_id=run_id)

            existing = self.holder(resource_key)
            if existing is not None:
                return AlreadyLocked(resource_key=resource_key, existing_run_id=existing)
            # Holder released between insert and lookup; try again.

    def release(self, resource_key: str, *, run_id: str | None = None) -> bool:
        """Delete the lock; a missing lock is a no-op."""

        statement = sa_delete(ResourceLock).where(col(ResourceLock.resource_key) == resource_key)
        if run_id is not None:
            statement = statement.where(col(ResourceLock.holder_run_id) == run_id)
        with Session(self.engine) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
            return bool(result.rowcount)

    def holder(self, resource_key: str) -> str | None:
        """Return the run id holding ``resource_key``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ResourceLock).where(ResourceLock.resource_key == resource_key),
            ).one_or_none()
            return row.holder_run_id if row is not None else None

    def list_locks(self) -> list[ResourceLockView]:
        """List all held locks, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ResourceLock).order_by(col(ResourceLock.acquired_at).asc()),
            ).all()
        return [_to_lock_view(row) for row in rows]

    def clear_stale(
        self,
        *,
        older_than: datetime,
        keep_run_ids: frozenset[str] = frozenset(),
    ) -> list[str]:
        """Remove locks acquired before ``older_than`` whose holder is not in ``keep_run_ids``."""

        cutoff = to_db_datetime(older_than)
        removed: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResourceLock).where(col(ResourceLock.acquired_at) < cutoff),
            ).all()
            for row in rows:
                if row.holder_run_id in keep_run_ids:
                    continue
                session.delete(row)
                removed.append(row.resource_key)
            session.commit()
        if removed:
            logger.warning("Cleared %d stale resource locks: %s", len(removed), ", ".join(removed))
        return removed


def _to_lock_view(row: ResourceLock) -> ResourceLockView:
    return ResourceLockView(
        resource_key=row.resource_key,
        holder_run_id=row.holder_run_id,
        flow=row.flow,
        acquired_at=to_utc_aware_datetime(row.acquired_at),
    )
