"""Tests for the timeline merge: ordering, tie-breaks and dedup."""

from __future__ import annotations

import random
from datetime import timedelta

import pytest

from calsync.models import EventOrigin
from calsync.unifier import merge
from tests.conftest import NOW, make_event

pytestmark = pytest.mark.unit


class TestOrdering:
    def test_sorted_by_start_time(self):
        late = make_event("local-2", start=NOW + timedelta(hours=2))
        early = make_event("google-a", origin=EventOrigin.google, start=NOW)

        result = merge([late], {"google": [early]})

        assert [e.id for e in result] == ["google-a", "local-2"]

    def test_local_wins_tie_on_start_time(self):
        local = make_event("local-9", start=NOW)
        google = make_event("google-a", origin=EventOrigin.google, start=NOW)
        github = make_event("github-o/r#1", origin=EventOrigin.github_derived, start=NOW)

        result = merge([local], {"github": [github], "google": [google]})

        assert result[0].id == "local-9"

    def test_external_ties_break_by_id(self):
        a = make_event("github-o/r#1", origin=EventOrigin.github_derived, start=NOW)
        b = make_event("google-a", origin=EventOrigin.google, start=NOW)

        result = merge([], {"google": [b], "github": [a]})

        assert [e.id for e in result] == ["github-o/r#1", "google-a"]

    def test_order_independent_of_input_order(self):
        events = [
            make_event(
                f"google-{i}", origin=EventOrigin.google, start=NOW + timedelta(minutes=i % 3)
            )
            for i in range(12)
        ]
        locals_ = [make_event(f"local-{i}", start=NOW + timedelta(minutes=i)) for i in range(3)]
        expected = [e.id for e in merge(locals_, {"google": events})]

        shuffled = events[:]
        random.Random(7).shuffle(shuffled)
        assert [e.id for e in merge(list(reversed(locals_)), {"google": shuffled})] == expected

    def test_output_is_sorted(self):
        events = [
            make_event(f"google-{i}", origin=EventOrigin.google, start=NOW - timedelta(hours=i))
            for i in range(5)
        ]
        result = merge([], {"google": events})
        keys = [e.sort_key for e in result]
        assert keys == sorted(keys)


class TestDeduplication:
    def test_last_occurrence_of_external_key_wins(self):
        old = make_event("google-ev1", origin=EventOrigin.google, title="Review", external_id="ev1")
        new = make_event(
            "google-ev1", origin=EventOrigin.google, title="Sprint Review", external_id="ev1"
        )

        result = merge([], {"google": [old, new]})

        assert len(result) == 1
        assert result[0].title == "Sprint Review"

    def test_same_external_id_different_origin_kept(self):
        google = make_event("google-1", origin=EventOrigin.google, external_id="1")
        github = make_event("github-1", origin=EventOrigin.github_derived, external_id="1")

        assert len(merge([], {"google": [google], "github": [github]})) == 2

    def test_local_never_deduplicated_against_external(self):
        local = make_event("local-1", title="Standup")
        google = make_event("google-s", origin=EventOrigin.google, title="Standup")

        result = merge([local], {"google": [google]})

        assert {e.id for e in result} == {"local-1", "google-s"}

    def test_no_two_external_events_share_a_key(self):
        events = [
            make_event("google-x", origin=EventOrigin.google, external_id="x", title=str(i))
            for i in range(4)
        ]
        result = merge([], {"google": events})
        keys = [e.dedup_key for e in result]
        assert len(keys) == len(set(keys))


class TestInputValidation:
    def test_rejects_external_event_in_local_list(self):
        google = make_event("google-a", origin=EventOrigin.google)
        with pytest.raises(ValueError, match="passed as local"):
            merge([google], {})

    def test_empty_inputs(self):
        assert merge([], {}) == []
