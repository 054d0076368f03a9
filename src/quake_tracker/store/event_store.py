from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any

from quake_tracker.core.query import QueryParams, apply_query, parse_query_params
from quake_tracker.core.schema import SeismicEvent
from quake_tracker.core.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StoreSnapshot:
    """Immutable view of the store as of one generation."""

    generation: int
    events: tuple[SeismicEvent, ...]
    by_id: Mapping[str, SeismicEvent]
    taken_at: datetime

    def __len__(self) -> int:
        return len(self.events)

    def chronological(self) -> list[SeismicEvent]:
        return sorted(self.events, key=lambda event: (event.occurred_at, event.id))


@dataclass(frozen=True, slots=True)
class DataStats:
    total_events: int
    last_updated: datetime | None
    memory_usage_estimate: int
    generation: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "last_updated": self.last_updated.isoformat() if self.last_updated is not None else None,
            "memory_usage_estimate": self.memory_usage_estimate,
            "generation": self.generation,
        }


class EventStore:
    """Single authoritative collection of seismic events keyed by id.

    One writer at a time; readers take snapshots. The lock is held only while
    mutating the mapping or copying it into a snapshot, never while analytics
    run. Every ``load``/``upsert``/``clear`` call bumps the generation once.
    """

    def __init__(self) -> None:
        self._events: dict[str, SeismicEvent] = {}
        self._generation = 0
        self._last_mutation_at: datetime | None = None
        self._snapshot: StoreSnapshot | None = None
        self._lock = threading.RLock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def load(self, events: Iterable[SeismicEvent], *, clear: bool = False) -> int:
        batch = list(events)
        with self._lock:
            if clear:
                self._events.clear()
            for event in batch:
                self._events[event.id] = event
            generation = self._bump()
        logger.debug(
            "Loaded event batch",
            extra={"batch_size": len(batch), "clear": clear, "generation": generation},
        )
        return generation

    def upsert(self, event: SeismicEvent) -> bool:
        """Insert or replace one event; returns True when the id was new."""
        with self._lock:
            created = event.id not in self._events
            self._events[event.id] = event
            self._bump()
        return created

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._bump()

    def get(self, event_id: str) -> SeismicEvent | None:
        with self._lock:
            return self._events.get(event_id)

    def insertion_order(self) -> list[str]:
        with self._lock:
            return list(self._events)

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            cached = self._snapshot
            if cached is not None and cached.generation == self._generation:
                return cached
            copied = dict(self._events)
            snapshot = StoreSnapshot(
                generation=self._generation,
                events=tuple(copied.values()),
                by_id=MappingProxyType(copied),
                taken_at=utc_now(),
            )
            self._snapshot = snapshot
            return snapshot

    def query(self, filters: QueryParams | Mapping[str, Any] | None = None) -> list[SeismicEvent]:
        params = parse_query_params(filters)
        return apply_query(self.snapshot().events, params)

    def stats(self) -> DataStats:
        with self._lock:
            last_mutation_at = self._last_mutation_at
        snapshot = self.snapshot()

        last_updated = max((event.last_update for event in snapshot.events), default=None)
        if last_updated is None:
            last_updated = last_mutation_at
        return DataStats(
            total_events=len(snapshot),
            last_updated=last_updated,
            memory_usage_estimate=sum(event.estimated_size_bytes() for event in snapshot.events),
            generation=snapshot.generation,
        )

    def _bump(self) -> int:
        self._generation += 1
        self._last_mutation_at = utc_now()
        return self._generation
