"""Metric computations over an event frame.

Every function is pure: it reads a frame built from one store snapshot and
returns plain Python values. Events without a magnitude or depth are left out
of the aggregates over that field; empty inputs give empty results (or zero for
sums), never an exception.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Final

import polars as pl

from quake_tracker.core.config import Settings

# Absorbs float error when a value sits exactly on a bin edge (2.3 / 0.1 -> 22.999...).
_BIN_EPSILON: Final[float] = 1e-9

WEEKDAY_LABELS: Final[tuple[str, ...]] = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
SECONDS_PER_DAY: Final[float] = 86_400.0


@dataclass(frozen=True, slots=True)
class AnalyticsParameters:
    magnitude_bin_width: float = 0.2
    magnitude_bin_floor: float = 0.0
    frequency_bin_width: float = 0.1
    cluster_cell_degrees: float = 0.5
    completeness_magnitude: float = 2.0
    b_value_fallback: float = 1.0
    regional_top_n: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> AnalyticsParameters:
        return cls(
            magnitude_bin_width=settings.magnitude_bin_width,
            magnitude_bin_floor=settings.magnitude_bin_floor,
            frequency_bin_width=settings.frequency_bin_width,
            cluster_cell_degrees=settings.cluster_cell_degrees,
            completeness_magnitude=settings.completeness_magnitude,
            b_value_fallback=settings.b_value_fallback,
            regional_top_n=settings.regional_top_n,
        )


@dataclass(frozen=True, slots=True)
class DescriptiveStats:
    """Summary of one numeric field.

    With no defined values ``count`` is 0 and every statistic is ``None``.
    """

    count: int
    mean: float | None
    median: float | None
    std_dev: float | None
    min: float | None
    max: float | None

    @classmethod
    def empty(cls) -> DescriptiveStats:
        return cls(count=0, mean=None, median=None, std_dev=None, min=None, max=None)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class RegionSummary:
    region: str
    event_count: int
    avg_magnitude: float | None
    avg_depth: float | None


@dataclass(frozen=True, slots=True)
class GutenbergRichterFit:
    b_value: float
    a_value: float
    completeness_magnitude: float
    bins_used: int
    fallback: bool


@dataclass(frozen=True, slots=True)
class RiskMetrics:
    p_m5_30_days: float
    p_m6_365_days: float
    p_m7_365_days: float
    total_energy_joules: float

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.p_m5_30_days, self.p_m6_365_days, self.p_m7_365_days, self.total_energy_joules)


def _bin_index(column: str, width: float, floor: float = 0.0) -> pl.Expr:
    return ((pl.col(column) - floor) / width + _BIN_EPSILON).floor().cast(pl.Int64)


def magnitude_distribution(frame: pl.DataFrame, params: AnalyticsParameters) -> list[tuple[str, int]]:
    magnitudes = frame.select("magnitude").drop_nulls()
    if magnitudes.height == 0:
        return []

    width = params.magnitude_bin_width
    floor = params.magnitude_bin_floor
    binned = (
        magnitudes.with_columns(_bin_index("magnitude", width, floor).alias("bin"))
        .group_by("bin")
        .agg(pl.len().alias("count"))
        .sort("bin")
    )
    return [(f"{floor + bin_index * width:.1f}", int(count)) for bin_index, count in binned.iter_rows()]


def descriptive_stats(frame: pl.DataFrame, column: str) -> DescriptiveStats:
    values = frame.get_column(column).drop_nulls()
    if values.len() == 0:
        return DescriptiveStats.empty()
    return DescriptiveStats(
        count=values.len(),
        mean=float(values.mean()),
        median=float(values.median()),
        std_dev=float(values.std(ddof=0)),
        min=float(values.min()),
        max=float(values.max()),
    )


def daily_counts(frame: pl.DataFrame) -> list[tuple[date, int]]:
    if frame.height == 0:
        return []
    grouped = (
        frame.select(pl.col("occurred_at").dt.date().alias("date"))
        .group_by("date")
        .agg(pl.len().alias("count"))
        .sort("date")
    )
    return [(day, int(count)) for day, count in grouped.iter_rows()]


def _fixed_bucket_counts(frame: pl.DataFrame, bucket: pl.Expr) -> dict[int, int]:
    if frame.height == 0:
        return {}
    grouped = frame.select(bucket.alias("bucket")).group_by("bucket").agg(pl.len().alias("count"))
    return {int(key): int(count) for key, count in grouped.iter_rows()}


def hourly_frequency(frame: pl.DataFrame) -> list[tuple[int, int]]:
    counts = _fixed_bucket_counts(frame, pl.col("occurred_at").dt.hour())
    return [(hour, counts.get(hour, 0)) for hour in range(24)]


def weekly_frequency(frame: pl.DataFrame) -> list[tuple[str, int]]:
    # polars weekday: Monday=1 .. Sunday=7
    counts = _fixed_bucket_counts(frame, pl.col("occurred_at").dt.weekday())
    return [(label, counts.get(index, 0)) for index, label in enumerate(WEEKDAY_LABELS, start=1)]


def monthly_frequency(frame: pl.DataFrame) -> list[tuple[int, int]]:
    counts = _fixed_bucket_counts(frame, pl.col("occurred_at").dt.month())
    return [(month, counts.get(month, 0)) for month in range(1, 13)]


def region_hotspots(frame: pl.DataFrame) -> list[tuple[str, int]]:
    if frame.height == 0:
        return []
    grouped = (
        frame.group_by("region")
        .agg(pl.len().alias("count"))
        .sort(["count", "region"], descending=[True, False])
    )
    return [(region, int(count)) for region, count in grouped.iter_rows()]


def regional_analysis(frame: pl.DataFrame, params: AnalyticsParameters) -> list[RegionSummary]:
    if frame.height == 0:
        return []
    grouped = (
        frame.group_by("region")
        .agg(
            pl.len().alias("event_count"),
            pl.col("magnitude").mean().alias("avg_magnitude"),
            pl.col("depth_km").mean().alias("avg_depth"),
        )
        .sort(["event_count", "region"], descending=[True, False])
        .head(params.regional_top_n)
    )
    return [
        RegionSummary(
            region=row["region"],
            event_count=int(row["event_count"]),
            avg_magnitude=row["avg_magnitude"],
            avg_depth=row["avg_depth"],
        )
        for row in grouped.iter_rows(named=True)
    ]


def _grid_key(column: str, cell: float) -> pl.Expr:
    # half-cells round away from zero, so the grid is symmetric about the equator and meridian
    scaled = pl.col(column) / cell
    return ((scaled.abs() + 0.5).floor() * scaled.sign()).cast(pl.Int64)


def coordinate_clusters(frame: pl.DataFrame, params: AnalyticsParameters) -> list[tuple[float, float, int]]:
    if frame.height == 0:
        return []
    cell = params.cluster_cell_degrees
    grouped = (
        frame.select(
            _grid_key("latitude", cell).alias("lat_key"),
            _grid_key("longitude", cell).alias("lon_key"),
        )
        .group_by(["lat_key", "lon_key"])
        .agg(pl.len().alias("count"))
        .sort(["count", "lat_key", "lon_key"], descending=[True, False, False])
    )
    return [
        (round(lat_key * cell, 6), round(lon_key * cell, 6), int(count))
        for lat_key, lon_key, count in grouped.iter_rows()
    ]


def mag_depth_pairs(frame: pl.DataFrame) -> list[tuple[float, float]]:
    pairs = (
        frame.filter(pl.col("magnitude").is_not_null() & pl.col("depth_km").is_not_null())
        .sort(["occurred_at", "id"])
        .select("magnitude", "depth_km")
    )
    return [(float(magnitude), float(depth)) for magnitude, depth in pairs.iter_rows()]


def gutenberg_richter_table(frame: pl.DataFrame, params: AnalyticsParameters) -> list[tuple[float, int, int]]:
    magnitudes = frame.select("magnitude").drop_nulls()
    if magnitudes.height == 0:
        return []

    width = params.frequency_bin_width
    table = (
        magnitudes.with_columns(_bin_index("magnitude", width).alias("bin"))
        .group_by("bin")
        .agg(pl.len().cast(pl.Int64).alias("count"))
        .sort("bin")
        .with_columns(pl.col("count").cum_sum(reverse=True).alias("cumulative"))
    )
    return [
        (round(bin_index * width, 6), int(count), int(cumulative))
        for bin_index, count, cumulative in table.iter_rows()
    ]


def gutenberg_richter_fit(
    table: list[tuple[float, int, int]],
    params: AnalyticsParameters,
) -> GutenbergRichterFit:
    """Least-squares fit of log10(N >= M) = a - b*M above the completeness magnitude."""
    points = [
        (magnitude, math.log10(cumulative))
        for magnitude, _count, cumulative in table
        if magnitude >= params.completeness_magnitude - _BIN_EPSILON and cumulative > 0
    ]
    fallback = GutenbergRichterFit(
        b_value=params.b_value_fallback,
        a_value=0.0,
        completeness_magnitude=params.completeness_magnitude,
        bins_used=len(points),
        fallback=True,
    )
    if len(points) < 2:
        return fallback

    n = float(len(points))
    sum_m = sum(magnitude for magnitude, _ in points)
    sum_log_n = sum(log_n for _, log_n in points)
    sum_m_log_n = sum(magnitude * log_n for magnitude, log_n in points)
    sum_m_squared = sum(magnitude * magnitude for magnitude, _ in points)

    denominator = n * sum_m_squared - sum_m * sum_m
    if abs(denominator) < 1e-12:
        return fallback

    slope = (n * sum_m_log_n - sum_m * sum_log_n) / denominator
    intercept = (sum_log_n - slope * sum_m) / n
    return GutenbergRichterFit(
        b_value=-slope,
        a_value=intercept,
        completeness_magnitude=params.completeness_magnitude,
        bins_used=len(points),
        fallback=False,
    )


def total_energy(frame: pl.DataFrame) -> float:
    """Radiated energy in joules, log10(E) = 1.5*M + 4.8, summed over events with a magnitude."""
    energy = frame.select(pl.lit(10.0).pow(pl.col("magnitude") * 1.5 + 4.8).sum()).item()
    return float(energy or 0.0)


def poisson_probability(event_count: int, span_days: float, window_days: float) -> float:
    if span_days <= 0 or event_count <= 0:
        return 0.0
    rate_per_day = event_count / span_days
    return -math.expm1(-rate_per_day * window_days)


def observed_span_days(frame: pl.DataFrame) -> float:
    if frame.height == 0:
        return 0.0
    first, last = frame.select(
        pl.col("occurred_at").min().alias("first"),
        pl.col("occurred_at").max().alias("last"),
    ).row(0)
    return (last - first).total_seconds() / SECONDS_PER_DAY


def risk_metrics(frame: pl.DataFrame) -> RiskMetrics:
    span_days = observed_span_days(frame)

    def probability(threshold: float, window_days: float) -> float:
        count = frame.filter(pl.col("magnitude") >= threshold).height
        return poisson_probability(count, span_days, window_days)

    return RiskMetrics(
        p_m5_30_days=probability(5.0, 30.0),
        p_m6_365_days=probability(6.0, 365.0),
        p_m7_365_days=probability(7.0, 365.0),
        total_energy_joules=total_energy(frame),
    )
