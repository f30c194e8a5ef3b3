"""Merge local and external events into one ordered timeline.

``merge`` is pure and deterministic:

- external events are deduplicated by ``(origin, external_id)``; within one
  call the last occurrence in input order wins;
- local events are never deduplicated against external ones;
- the result is sorted by ``(start_time, origin_rank, id)`` where local events
  rank before every external origin, so ties break the same way regardless
  of input order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from calsync.models import EventOrigin, UnifiedEvent


def merge(
    local_events: Iterable[UnifiedEvent],
    external_events_by_provider: Mapping[str, Iterable[UnifiedEvent]],
) -> list[UnifiedEvent]:
    """Return the unified, deduplicated, ordered timeline."""
    unified: list[UnifiedEvent] = []
    for event in local_events:
        if event.origin is not EventOrigin.local:
            raise ValueError(f"event {event.id!r} passed as local has origin {event.origin}")
        unified.append(event)

    external: dict[tuple[str, str], UnifiedEvent] = {}
    for events in external_events_by_provider.values():
        for event in events:
            key = event.dedup_key
            if key is None:
                raise ValueError(f"external event {event.id!r} has no external_id")
            external[key] = event
    unified.extend(external.values())

    unified.sort(key=lambda event: event.sort_key)
    return unified
