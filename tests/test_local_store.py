"""Tests for the local event store adapter."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calsync.errors import NotFoundError, ValidationError
from calsync.local_store import LocalEventStore
from calsync.models import (
    EventOrigin,
    LocalEventCreate,
    LocalEventUpdate,
    Recurrence,
    TimeWindow,
)
from tests.conftest import NOW, make_pool_and_conn

pytestmark = pytest.mark.unit

WINDOW = TimeWindow(start=NOW - timedelta(days=7), end=NOW + timedelta(days=30))


def _row(event_id: int = 7, **overrides) -> dict:
    row = {
        "id": event_id,
        "user_id": "alice",
        "title": "Standup",
        "description": None,
        "location": "Room 1",
        "start_time": datetime(2026, 3, 2, 9, 0),  # naive, as some drivers return
        "end_time": datetime(2026, 3, 2, 9, 15),
        "is_all_day": False,
        "recurrence": "daily",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestRead:
    async def test_list_in_range_scopes_by_user_and_window(self):
        pool, conn = make_pool_and_conn()
        conn.fetch.return_value = [_row()]

        events = await LocalEventStore(pool).list_in_range("alice", WINDOW)

        sql, user_id, start, end = conn.fetch.await_args.args
        assert "user_id = $1" in sql
        assert (user_id, start, end) == ("alice", WINDOW.start, WINDOW.end)
        (event,) = events
        assert event.id == "7"
        assert event.origin is EventOrigin.local
        assert event.external_id is None
        assert event.recurrence is Recurrence.daily
        assert event.start_time == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    async def test_get_missing_event(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await LocalEventStore(pool).get("alice", "7")

    async def test_get_with_external_id_is_not_found(self):
        pool, conn = make_pool_and_conn()

        with pytest.raises(NotFoundError):
            await LocalEventStore(pool).get("alice", "google-abc")
        conn.fetchrow.assert_not_awaited()

    @pytest.mark.parametrize("event_id", ["²", "٣", str(2**63), 2**63, -1])
    async def test_ids_outside_the_key_space_are_not_found(self, event_id):
        pool, conn = make_pool_and_conn()

        with pytest.raises(NotFoundError):
            await LocalEventStore(pool).get("alice", event_id)
        conn.fetchrow.assert_not_awaited()

    async def test_largest_key_is_queried(self):
        pool, conn = make_pool_and_conn()

        with pytest.raises(NotFoundError):
            await LocalEventStore(pool).get("alice", str(2**63 - 1))
        assert conn.fetchrow.await_args.args[1:] == (2**63 - 1, "alice")

    async def test_unknown_recurrence_falls_back_to_none(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.return_value = _row(recurrence="fortnightly")

        event = await LocalEventStore(pool).get("alice", 7)

        assert event.recurrence is Recurrence.none


class TestCreate:
    async def test_create_inserts_and_returns_event(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.return_value = _row(event_id=11, title="Lunch", recurrence="none")
        data = LocalEventCreate(
            title="  Lunch  ",
            start_time=NOW,
            end_time=NOW + timedelta(hours=1),
        )

        event = await LocalEventStore(pool).create("alice", data)

        args = conn.fetchrow.await_args.args
        assert args[1:3] == ("alice", "Lunch")
        assert args[8] == "none"
        assert event.id == "11"

    async def test_end_before_start_rejected(self):
        pool, conn = make_pool_and_conn()
        data = LocalEventCreate(title="Backwards", start_time=NOW, end_time=NOW - timedelta(1))

        with pytest.raises(ValidationError, match="before start_time"):
            await LocalEventStore(pool).create("alice", data)
        conn.fetchrow.assert_not_awaited()

    async def test_blank_title_rejected(self):
        pool, _ = make_pool_and_conn()
        data = LocalEventCreate(title="   ", start_time=NOW, end_time=NOW)

        with pytest.raises(ValidationError, match="title"):
            await LocalEventStore(pool).create("alice", data)

    async def test_naive_datetime_rejected(self):
        pool, _ = make_pool_and_conn()
        naive = datetime(2026, 3, 2, 9, 0)
        data = LocalEventCreate(title="Naive", start_time=naive, end_time=naive)

        with pytest.raises(ValidationError, match="timezone"):
            await LocalEventStore(pool).create("alice", data)

    async def test_zero_length_event_allowed(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.return_value = _row(end_time=datetime(2026, 3, 2, 9, 0))

        event = await LocalEventStore(pool).create(
            "alice", LocalEventCreate(title="Ping", start_time=NOW, end_time=NOW)
        )

        assert event.start_time == event.end_time


class TestUpdate:
    async def test_partial_update_keeps_unset_fields(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.side_effect = [_row(), _row(title="Daily Standup")]

        event = await LocalEventStore(pool).update(
            "alice", "7", LocalEventUpdate(title="Daily Standup")
        )

        update_args = conn.fetchrow.await_args_list[1].args
        assert update_args[3] == "Daily Standup"
        assert update_args[5] == "Room 1"
        assert update_args[6] == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        assert update_args[9] == "daily"
        assert event.title == "Daily Standup"
        conn.transaction.assert_called_once()

    async def test_update_cannot_invert_times(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.side_effect = [_row()]

        with pytest.raises(ValidationError):
            await LocalEventStore(pool).update(
                "alice",
                "7",
                LocalEventUpdate(end_time=datetime(2026, 3, 2, 8, 0, tzinfo=UTC)),
            )
        assert conn.fetchrow.await_count == 1

    async def test_update_cannot_clear_title(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.side_effect = [_row()]

        with pytest.raises(ValidationError, match="cleared"):
            await LocalEventStore(pool).update("alice", "7", LocalEventUpdate(title=None))

    async def test_update_of_other_users_event_is_not_found(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.side_effect = [None]

        with pytest.raises(NotFoundError):
            await LocalEventStore(pool).update("mallory", "7", LocalEventUpdate(title="x"))


class TestDelete:
    async def test_delete(self):
        pool, conn = make_pool_and_conn()
        conn.execute.return_value = "DELETE 1"

        await LocalEventStore(pool).delete("alice", "7")

        assert conn.execute.await_args.args[1:] == (7, "alice")

    async def test_delete_missing_is_not_found(self):
        pool, conn = make_pool_and_conn()
        conn.execute.return_value = "DELETE 0"

        with pytest.raises(NotFoundError):
            await LocalEventStore(pool).delete("alice", "7")


class TestSearchAndStatistics:
    async def test_search_escapes_wildcards(self):
        pool, conn = make_pool_and_conn()

        await LocalEventStore(pool).search("alice", " 100%_done ")

        sql, user_id, pattern = conn.fetch.await_args.args
        assert "ILIKE" in sql
        assert pattern == "%100\\%\\_done%"

    async def test_search_with_window_binds_bounds(self):
        pool, conn = make_pool_and_conn()

        await LocalEventStore(pool).search("alice", "standup", WINDOW)

        args = conn.fetch.await_args.args
        assert args[3:] == (WINDOW.start, WINDOW.end)
        assert "$4" in args[0]

    async def test_blank_search_rejected(self):
        pool, _ = make_pool_and_conn()
        with pytest.raises(ValidationError):
            await LocalEventStore(pool).search("alice", "  ")

    async def test_statistics(self):
        pool, conn = make_pool_and_conn()
        conn.fetchrow.return_value = {
            "total_events": 4,
            "all_day_events": 1,
            "recurring_events": 2,
            "upcoming_events": 3,
        }

        stats = await LocalEventStore(pool).statistics("alice", WINDOW, now=NOW)

        assert stats.total_events == 4
        assert stats.upcoming_events == 3
        args = conn.fetchrow.await_args.args
        assert args[4:] == (NOW, NOW + timedelta(days=7))
