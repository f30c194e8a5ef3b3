"""Local event store adapter backed by the ``events`` table.

Local events are owned by exactly one user.  Every read and write is scoped
by ``user_id``: an event that exists but belongs to someone else is
indistinguishable from a missing one and surfaces as ``NotFoundError``.

Timeline ids of local events are the decimal primary key, so they can never
collide with ``<provider>-<externalId>`` ids of external events.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from calsync.db import acquire_conn
from calsync.errors import NotFoundError, ValidationError
from calsync.models import (
    EventOrigin,
    EventStatistics,
    LocalEventCreate,
    LocalEventUpdate,
    Recurrence,
    TimeWindow,
    UnifiedEvent,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "events"
_UPCOMING_HORIZON = timedelta(days=7)
# Largest value a BIGSERIAL primary key can hold.
_MAX_BIGINT = 2**63 - 1

_EVENTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id          BIGSERIAL PRIMARY KEY,
    user_id     TEXT NOT NULL,
    title       TEXT NOT NULL,
    description TEXT,
    location    TEXT,
    start_time  TIMESTAMPTZ NOT NULL,
    end_time    TIMESTAMPTZ NOT NULL,
    is_all_day  BOOLEAN NOT NULL DEFAULT false,
    recurrence  TEXT NOT NULL DEFAULT 'none',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT events_time_order CHECK (end_time >= start_time)
);
CREATE INDEX IF NOT EXISTS idx_events_user_start ON {_TABLE} (user_id, start_time)
"""

_SELECT_COLUMNS = """
    id, user_id, title, description, location, start_time, end_time,
    is_all_day, recurrence, created_at, updated_at
"""

# Overlap with a half-open window; zero-length events starting inside it count.
_OVERLAP_CLAUSE = "start_time < $3 AND (end_time > $2 OR start_time >= $2)"


def _parse_event_id(event_id: str | int) -> int:
    """Map a timeline id onto a local primary key, or raise NotFoundError."""
    if isinstance(event_id, int) and not isinstance(event_id, bool):
        value = event_id
    else:
        text = str(event_id).strip()
        if not (text.isascii() and text.isdecimal()):
            raise NotFoundError("event", event_id)
        value = int(text)
    if not 0 <= value <= _MAX_BIGINT:
        raise NotFoundError("event", event_id)
    return value


def _require_aware(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValidationError(f"{field_name} must include a timezone offset")
    return value


def _validate_fields(title: str, start_time: datetime, end_time: datetime) -> str:
    normalized_title = title.strip()
    if not normalized_title:
        raise ValidationError("title must not be blank")
    _require_aware(start_time, "start_time")
    _require_aware(end_time, "end_time")
    if end_time < start_time:
        raise ValidationError(
            "end_time must not be before start_time",
            detail=f"start_time={start_time.isoformat()} end_time={end_time.isoformat()}",
        )
    return normalized_title


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _ensure_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _row_to_event(row: Mapping[str, Any]) -> UnifiedEvent:
    try:
        recurrence = Recurrence(row["recurrence"] or "none")
    except ValueError:
        logger.warning("Unknown recurrence %r on event %s", row["recurrence"], row["id"])
        recurrence = Recurrence.none
    return UnifiedEvent(
        id=str(row["id"]),
        origin=EventOrigin.local,
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start_time=_ensure_utc(row["start_time"]),
        end_time=_ensure_utc(row["end_time"]),
        is_all_day=bool(row["is_all_day"]),
        recurrence=recurrence,
        created_at=_ensure_utc(row["created_at"]),
        updated_at=_ensure_utc(row["updated_at"]),
    )


class LocalEventStore:
    """CRUD, range queries, search and statistics over a user's local events."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def list_in_range(self, user_id: str, window: TimeWindow) -> list[UnifiedEvent]:
        """Return the user's events overlapping ``window``, ordered by start time."""
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SELECT_COLUMNS} FROM {_TABLE}
                WHERE user_id = $1 AND {_OVERLAP_CLAUSE}
                ORDER BY start_time, id
                """,
                user_id,
                window.start,
                window.end,
            )
        return [_row_to_event(row) for row in rows]

    async def get(self, user_id: str, event_id: str | int) -> UnifiedEvent:
        pk = _parse_event_id(event_id)
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_SELECT_COLUMNS} FROM {_TABLE} WHERE id = $1 AND user_id = $2",
                pk,
                user_id,
            )
        if row is None:
            raise NotFoundError("event", event_id)
        return _row_to_event(row)

    async def create(self, user_id: str, data: LocalEventCreate) -> UnifiedEvent:
        title = _validate_fields(data.title, data.start_time, data.end_time)
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, title, description, location, start_time, end_time,
                     is_all_day, recurrence)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING {_SELECT_COLUMNS}
                """,
                user_id,
                title,
                data.description,
                data.location,
                data.start_time,
                data.end_time,
                data.is_all_day,
                data.recurrence.value,
            )
        event = _row_to_event(row)
        logger.info("Created local event %s for user_id=%r", event.id, user_id)
        return event

    async def update(
        self,
        user_id: str,
        event_id: str | int,
        data: LocalEventUpdate,
    ) -> UnifiedEvent:
        """Apply a partial update; fields not set on ``data`` are kept."""
        pk = _parse_event_id(event_id)
        changes = data.model_dump(exclude_unset=True)
        async with acquire_conn(self.pool) as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    f"""
                    SELECT {_SELECT_COLUMNS} FROM {_TABLE}
                    WHERE id = $1 AND user_id = $2
                    FOR UPDATE
                    """,
                    pk,
                    user_id,
                )
                if current is None:
                    raise NotFoundError("event", event_id)

                merged = dict(current)
                for key, value in changes.items():
                    if value is None and key in ("title", "start_time", "end_time", "is_all_day"):
                        raise ValidationError(f"{key} cannot be cleared")
                    merged[key] = value
                # Stored values may come back naive; caller-supplied ones must be aware.
                for key in ("start_time", "end_time"):
                    if key not in changes:
                        merged[key] = _ensure_utc(merged[key])
                recurrence = merged["recurrence"] or Recurrence.none
                title = _validate_fields(merged["title"], merged["start_time"], merged["end_time"])

                row = await conn.fetchrow(
                    f"""
                    UPDATE {_TABLE} SET
                        title = $3, description = $4, location = $5,
                        start_time = $6, end_time = $7, is_all_day = $8,
                        recurrence = $9, updated_at = now()
                    WHERE id = $1 AND user_id = $2
                    RETURNING {_SELECT_COLUMNS}
                    """,
                    pk,
                    user_id,
                    title,
                    merged["description"] or None,
                    merged["location"] or None,
                    merged["start_time"],
                    merged["end_time"],
                    bool(merged["is_all_day"]),
                    Recurrence(recurrence).value,
                )
        logger.info("Updated local event %s for user_id=%r", pk, user_id)
        return _row_to_event(row)

    async def delete(self, user_id: str, event_id: str | int) -> None:
        pk = _parse_event_id(event_id)
        async with acquire_conn(self.pool) as conn:
            result = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE id = $1 AND user_id = $2",
                pk,
                user_id,
            )
        if not result or result.split()[-1] == "0":
            raise NotFoundError("event", event_id)
        logger.info("Deleted local event %s for user_id=%r", pk, user_id)

    async def search(
        self,
        user_id: str,
        term: str,
        window: TimeWindow | None = None,
    ) -> list[UnifiedEvent]:
        """Case-insensitive substring search over title, description and location."""
        normalized = term.strip()
        if not normalized:
            raise ValidationError("search term must not be blank")
        pattern = f"%{_escape_like(normalized)}%"
        text_clause = (
            "(title ILIKE $2 ESCAPE '\\' OR description ILIKE $2 ESCAPE '\\' "
            "OR location ILIKE $2 ESCAPE '\\')"
        )
        args: list[Any] = [user_id, pattern]
        query = f"SELECT {_SELECT_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND {text_clause}"
        if window is not None:
            query += " AND start_time < $4 AND (end_time > $3 OR start_time >= $3)"
            args.extend([window.start, window.end])
        query += " ORDER BY start_time, id"
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(query, *args)
        return [_row_to_event(row) for row in rows]

    async def statistics(
        self,
        user_id: str,
        window: TimeWindow,
        *,
        now: datetime | None = None,
    ) -> EventStatistics:
        """Counts over events overlapping ``window``; upcoming means the next 7 days."""
        now = now or datetime.now(UTC)
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                SELECT
                    count(*) AS total_events,
                    count(*) FILTER (WHERE is_all_day) AS all_day_events,
                    count(*) FILTER (WHERE recurrence <> 'none') AS recurring_events,
                    count(*) FILTER (WHERE start_time >= $4 AND start_time < $5)
                        AS upcoming_events
                FROM {_TABLE}
                WHERE user_id = $1 AND {_OVERLAP_CLAUSE}
                """,
                user_id,
                window.start,
                window.end,
                now,
                now + _UPCOMING_HORIZON,
            )
        if row is None:
            return EventStatistics()
        return EventStatistics(
            total_events=int(row["total_events"] or 0),
            all_day_events=int(row["all_day_events"] or 0),
            recurring_events=int(row["recurring_events"] or 0),
            upcoming_events=int(row["upcoming_events"] or 0),
        )


async def ensure_events_schema(pool: asyncpg.Pool) -> None:
    """Ensure the ``events`` table exists on the target database."""
    async with acquire_conn(pool) as conn:
        await conn.execute(_EVENTS_TABLE_DDL)
