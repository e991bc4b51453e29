"""Shared service utilities: UUID coercion, UTC handling, lookups, versioning."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, TypeVar

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from bookkeeper.errors import ConcurrentModificationError, NotFoundError

T = TypeVar("T")


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def require_uuid(value: Any) -> uuid.UUID:
    """Convert a string or UUID to UUID, raising ValueError if None."""
    result = coerce_uuid(value)
    if result is None:
        raise ValueError("UUID value is required but got None")
    return result


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_month(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def end_of_month(value: datetime) -> datetime:
    return start_of_month(value) + relativedelta(months=1, microseconds=-1)


def month_starts(start: datetime, end: datetime) -> list[datetime]:
    """First instant of every calendar month touched by [start, end]."""
    months = []
    cursor = start_of_month(start)
    last = start_of_month(end)
    while cursor <= last:
        months.append(cursor)
        cursor = cursor + relativedelta(months=1)
    return months


def get_or_404(db: Session, model: type[T], item_id: Any, label: str | None = None) -> T:
    item = db.get(model, coerce_uuid(item_id))
    if not item:
        raise NotFoundError(f"{label or model.__name__} not found")
    return item


def check_expected_version(item: Any, expected_version: int | None) -> None:
    """Raise if the caller's view of ``item`` is out of date."""
    if expected_version is None:
        return
    if item.version != expected_version:
        raise ConcurrentModificationError(
            f"{type(item).__name__} {item.id} was modified concurrently "
            f"(expected version {expected_version}, found {item.version})"
        )


def flush(db: Session) -> None:
    """Flush pending changes, surfacing optimistic-lock failures."""
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrentModificationError(str(exc)) from exc
