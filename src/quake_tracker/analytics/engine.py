from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from functools import cached_property
from typing import Any

import polars as pl

from quake_tracker.analytics import metrics
from quake_tracker.analytics.frame import build_event_frame
from quake_tracker.analytics.metrics import (
    AnalyticsParameters,
    DescriptiveStats,
    GutenbergRichterFit,
    RegionSummary,
    RiskMetrics,
)
from quake_tracker.store.event_store import EventStore, StoreSnapshot

logger = logging.getLogger(__name__)


class MetricContext:
    """Inputs shared by every metric computed from one snapshot."""

    def __init__(self, snapshot: StoreSnapshot, frame: pl.DataFrame, params: AnalyticsParameters) -> None:
        self.snapshot = snapshot
        self.frame = frame
        self.params = params

    @cached_property
    def gutenberg_richter_table(self) -> list[tuple[float, int, int]]:
        return metrics.gutenberg_richter_table(self.frame, self.params)

    @cached_property
    def gutenberg_richter_fit(self) -> GutenbergRichterFit:
        return metrics.gutenberg_richter_fit(self.gutenberg_richter_table, self.params)


MetricFn = Callable[[MetricContext], Any]


def _advanced_analytics(context: MetricContext) -> dict[str, Any]:
    frame = context.frame
    params = context.params
    fit = context.gutenberg_richter_fit
    risk = metrics.risk_metrics(frame)
    return {
        "magnitude_stats": metrics.descriptive_stats(frame, "magnitude").to_dict(),
        "depth_stats": metrics.descriptive_stats(frame, "depth_km").to_dict(),
        "temporal_patterns": {
            "daily_counts": [
                {"date": day.isoformat(), "count": count} for day, count in metrics.daily_counts(frame)
            ],
            "hourly": [{"hour": hour, "count": count} for hour, count in metrics.hourly_frequency(frame)],
            "weekly": [{"weekday": label, "count": count} for label, count in metrics.weekly_frequency(frame)],
            "monthly": [{"month": month, "count": count} for month, count in metrics.monthly_frequency(frame)],
        },
        "regional_analysis": [asdict(summary) for summary in metrics.regional_analysis(frame, params)],
        "gutenberg_richter": {
            "b_value": fit.b_value,
            "a_value": fit.a_value,
            "completeness_magnitude": fit.completeness_magnitude,
            "bins_used": fit.bins_used,
            "fallback": fit.fallback,
            "total_events": frame.get_column("magnitude").drop_nulls().len(),
        },
        "risk_assessment": {
            "p_m5_30_days": risk.p_m5_30_days,
            "p_m6_365_days": risk.p_m6_365_days,
            "p_m7_365_days": risk.p_m7_365_days,
            "total_energy_joules": risk.total_energy_joules,
            "observed_span_days": metrics.observed_span_days(frame),
        },
        "hotspots": {
            "regions": [
                {"region": region, "count": count}
                for region, count in metrics.region_hotspots(frame)[: params.regional_top_n]
            ],
            "clusters": [
                {"latitude": lat, "longitude": lon, "count": count}
                for lat, lon, count in metrics.coordinate_clusters(frame, params)[: params.regional_top_n]
            ],
        },
    }


DEFAULT_METRICS: Mapping[str, MetricFn] = {
    "magnitude_distribution": lambda ctx: metrics.magnitude_distribution(ctx.frame, ctx.params),
    "magnitude_stats": lambda ctx: metrics.descriptive_stats(ctx.frame, "magnitude"),
    "depth_stats": lambda ctx: metrics.descriptive_stats(ctx.frame, "depth_km"),
    "daily_counts": lambda ctx: metrics.daily_counts(ctx.frame),
    "hourly_frequency": lambda ctx: metrics.hourly_frequency(ctx.frame),
    "weekly_frequency": lambda ctx: metrics.weekly_frequency(ctx.frame),
    "monthly_frequency": lambda ctx: metrics.monthly_frequency(ctx.frame),
    "region_hotspots": lambda ctx: metrics.region_hotspots(ctx.frame),
    "regional_analysis": lambda ctx: metrics.regional_analysis(ctx.frame, ctx.params),
    "coordinate_clusters": lambda ctx: metrics.coordinate_clusters(ctx.frame, ctx.params),
    "mag_depth_pairs": lambda ctx: metrics.mag_depth_pairs(ctx.frame),
    "magnitude_frequency_table": lambda ctx: ctx.gutenberg_richter_table,
    "gutenberg_richter_fit": lambda ctx: ctx.gutenberg_richter_fit,
    "total_energy": lambda ctx: metrics.total_energy(ctx.frame),
    "risk_metrics": lambda ctx: metrics.risk_metrics(ctx.frame),
    "advanced_analytics": _advanced_analytics,
}


def _detached(value: Any) -> Any:
    """Copy the mutable containers of a cached value; tuples and frozen records are shared."""
    if isinstance(value, list):
        return [_detached(item) for item in value]
    if isinstance(value, dict):
        return {key: _detached(item) for key, item in value.items()}
    return value


@dataclass(frozen=True, slots=True)
class CachedMetric:
    value: Any
    generation: int


@dataclass(frozen=True, slots=True)
class RecomputeAck:
    generation: int
    metrics_computed: int
    event_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AnalyticsEngine:
    """Per-metric cache stamped with the store generation.

    A lazy read recomputes only the metric whose stamp is stale. Computations
    run on an immutable snapshot with no lock held; the cache lock only guards
    reading and swapping entries.
    """

    def __init__(
        self,
        store: EventStore,
        params: AnalyticsParameters | None = None,
        *,
        metric_functions: Mapping[str, MetricFn] | None = None,
    ) -> None:
        self._store = store
        self._params = params or AnalyticsParameters()
        self._metric_functions = dict(metric_functions or DEFAULT_METRICS)
        self._cache: dict[str, CachedMetric] = {}
        self._cache_lock = threading.Lock()
        self._frame_slot: tuple[int, pl.DataFrame] | None = None

    @property
    def params(self) -> AnalyticsParameters:
        return self._params

    def metric_names(self) -> list[str]:
        return list(self._metric_functions)

    def cached_generation(self, name: str) -> int | None:
        with self._cache_lock:
            entry = self._cache.get(name)
        return entry.generation if entry is not None else None

    def metric(self, name: str) -> Any:
        if name not in self._metric_functions:
            raise KeyError(f"unknown metric: {name}")

        generation = self._store.generation
        with self._cache_lock:
            entry = self._cache.get(name)
        if entry is not None and entry.generation == generation:
            return _detached(entry.value)

        snapshot = self._store.snapshot()
        value = self._metric_functions[name](self._context(snapshot))
        with self._cache_lock:
            current = self._cache.get(name)
            # a slower reader must not overwrite a newer stamp
            if current is None or current.generation <= snapshot.generation:
                self._cache[name] = CachedMetric(value=value, generation=snapshot.generation)
        logger.debug("Recomputed metric", extra={"metric": name, "generation": snapshot.generation})
        return _detached(value)

    def recompute_analytics(self) -> RecomputeAck:
        """Recompute every metric from one snapshot and swap the whole cache.

        If any metric fails the previous cache stays in place and the error
        propagates.
        """
        snapshot = self._store.snapshot()
        context = self._context(snapshot)
        fresh = {
            name: CachedMetric(value=compute(context), generation=snapshot.generation)
            for name, compute in self._metric_functions.items()
        }
        with self._cache_lock:
            self._cache = fresh
        logger.info(
            "Recomputed analytics",
            extra={"generation": snapshot.generation, "metrics": len(fresh), "events": len(snapshot)},
        )
        return RecomputeAck(generation=snapshot.generation, metrics_computed=len(fresh), event_count=len(snapshot))

    def magnitude_distribution(self) -> list[tuple[str, int]]:
        return self.metric("magnitude_distribution")

    def magnitude_stats(self) -> DescriptiveStats:
        return self.metric("magnitude_stats")

    def depth_stats(self) -> DescriptiveStats:
        return self.metric("depth_stats")

    def daily_counts(self) -> list[tuple[Any, int]]:
        return self.metric("daily_counts")

    def hourly_frequency(self) -> list[tuple[int, int]]:
        return self.metric("hourly_frequency")

    def weekly_frequency(self) -> list[tuple[str, int]]:
        return self.metric("weekly_frequency")

    def monthly_frequency(self) -> list[tuple[int, int]]:
        return self.metric("monthly_frequency")

    def region_hotspots(self) -> list[tuple[str, int]]:
        return self.metric("region_hotspots")

    def regional_analysis(self) -> list[RegionSummary]:
        return self.metric("regional_analysis")

    def coordinate_clusters(self) -> list[tuple[float, float, int]]:
        return self.metric("coordinate_clusters")

    def mag_depth_pairs(self) -> list[tuple[float, float]]:
        return self.metric("mag_depth_pairs")

    def magnitude_frequency_table(self) -> list[tuple[float, int, int]]:
        return self.metric("magnitude_frequency_table")

    def gutenberg_richter_fit(self) -> GutenbergRichterFit:
        return self.metric("gutenberg_richter_fit")

    def b_value(self) -> float:
        return self.gutenberg_richter_fit().b_value

    def total_energy(self) -> float:
        return self.metric("total_energy")

    def risk_metrics(self) -> RiskMetrics:
        return self.metric("risk_metrics")

    def advanced_analytics(self) -> dict[str, Any]:
        return self.metric("advanced_analytics")

    def _context(self, snapshot: StoreSnapshot) -> MetricContext:
        return MetricContext(snapshot=snapshot, frame=self._frame_for(snapshot), params=self._params)

    def _frame_for(self, snapshot: StoreSnapshot) -> pl.DataFrame:
        with self._cache_lock:
            slot = self._frame_slot
        if slot is not None and slot[0] == snapshot.generation:
            return slot[1]

        frame = build_event_frame(snapshot.events)
        with self._cache_lock:
            if self._frame_slot is None or self._frame_slot[0] <= snapshot.generation:
                self._frame_slot = (snapshot.generation, frame)
        return frame
