from __future__ import annotations

import math
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from quake_tracker.analytics import metrics
from quake_tracker.analytics.frame import build_event_frame
from quake_tracker.analytics.metrics import AnalyticsParameters
from quake_tracker.core.config import Settings
from quake_tracker.core.schema import SeismicEvent

PARAMS = AnalyticsParameters()
# 2024-01-01 is a Monday
MONDAY = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)


def _event(
    event_id: str,
    *,
    magnitude: float | None = None,
    depth_km: float | None = 10.0,
    occurred_at: datetime = MONDAY,
    latitude: float = 0.0,
    longitude: float = 0.0,
    region: str = "",
) -> SeismicEvent:
    return SeismicEvent(
        id=event_id,
        source_id="",
        source_catalog="",
        occurred_at=occurred_at,
        last_update=occurred_at,
        latitude=latitude,
        longitude=longitude,
        depth_km=depth_km,
        magnitude=magnitude,
        region=region,
    )


def _frame(events: list[SeismicEvent]) -> Any:
    return build_event_frame(events)


EMPTY = build_event_frame([])


def test_scenario_two_twos_and_a_four() -> None:
    frame = _frame([_event("a", magnitude=2.0), _event("b", magnitude=2.0), _event("c", magnitude=4.0)])

    assert metrics.magnitude_distribution(frame, PARAMS) == [("2.0", 2), ("4.0", 1)]
    assert metrics.descriptive_stats(frame, "magnitude").mean == pytest.approx(2.6667, abs=1e-3)
    assert metrics.total_energy(frame) == pytest.approx(2 * 10**7.8 + 10**10.8, rel=1e-9)


def test_magnitude_distribution_respects_floor_and_skips_missing() -> None:
    params = AnalyticsParameters(magnitude_bin_width=0.5, magnitude_bin_floor=1.0)
    frame = _frame([_event("a", magnitude=1.2), _event("b", magnitude=1.6), _event("c"), _event("d", magnitude=2.3)])

    assert metrics.magnitude_distribution(frame, params) == [("1.0", 1), ("1.5", 1), ("2.0", 1)]
    assert metrics.magnitude_distribution(EMPTY, PARAMS) == []


def test_descriptive_stats_use_population_std_and_interpolated_median() -> None:
    frame = _frame([_event(str(index), magnitude=value) for index, value in enumerate([1.0, 2.0, 3.0, 4.0])])

    stats = metrics.descriptive_stats(frame, "magnitude")

    assert stats.count == 4
    assert stats.mean == pytest.approx(2.5)
    assert stats.median == pytest.approx(2.5)
    assert stats.std_dev == pytest.approx(math.sqrt(1.25))
    assert (stats.min, stats.max) == (1.0, 4.0)


def test_descriptive_stats_on_empty_set_use_none_sentinel() -> None:
    stats = metrics.descriptive_stats(_frame([_event("a", depth_km=None)]), "depth_km")

    assert stats.count == 0
    assert stats.to_dict() == {"count": 0, "mean": None, "median": None, "std_dev": None, "min": None, "max": None}


def test_fixed_buckets_always_have_full_cardinality_even_when_empty() -> None:
    assert len(metrics.hourly_frequency(EMPTY)) == 24
    assert len(metrics.weekly_frequency(EMPTY)) == 7
    assert len(metrics.monthly_frequency(EMPTY)) == 12
    assert [label for label, _ in metrics.weekly_frequency(EMPTY)] == list(metrics.WEEKDAY_LABELS)
    assert metrics.daily_counts(EMPTY) == []


def test_temporal_patterns_bucket_by_utc_fields() -> None:
    frame = _frame(
        [
            _event("a", occurred_at=MONDAY + timedelta(hours=3)),
            _event("b", occurred_at=MONDAY + timedelta(hours=3, minutes=30)),
            _event("c", occurred_at=MONDAY + timedelta(days=6, hours=23)),
            _event("d", occurred_at=datetime(2024, 3, 15, 12, tzinfo=UTC)),
        ]
    )

    hourly = dict(metrics.hourly_frequency(frame))
    weekly = dict(metrics.weekly_frequency(frame))
    monthly = dict(metrics.monthly_frequency(frame))

    assert hourly[3] == 2
    assert hourly[23] == 1
    assert hourly[0] == 0
    assert weekly == {"Mon": 2, "Tue": 0, "Wed": 0, "Thu": 0, "Fri": 1, "Sat": 0, "Sun": 1}
    assert monthly[1] == 3
    assert monthly[3] == 1
    assert metrics.daily_counts(frame) == [
        (date(2024, 1, 1), 2),
        (date(2024, 1, 7), 1),
        (date(2024, 3, 15), 1),
    ]


def test_region_hotspots_and_regional_analysis() -> None:
    frame = _frame(
        [
            _event("a", region="CRETE", magnitude=3.0, depth_km=10.0),
            _event("b", region="CRETE", magnitude=5.0, depth_km=None),
            _event("c", region="ALASKA", magnitude=4.0, depth_km=30.0),
            _event("d", region="CHILE"),
        ]
    )

    assert metrics.region_hotspots(frame) == [("CRETE", 2), ("ALASKA", 1), ("CHILE", 1)]

    summaries = metrics.regional_analysis(frame, AnalyticsParameters(regional_top_n=2))
    assert [summary.region for summary in summaries] == ["CRETE", "ALASKA"]
    assert summaries[0].event_count == 2
    assert summaries[0].avg_magnitude == pytest.approx(4.0)
    assert summaries[0].avg_depth == pytest.approx(10.0)
    assert metrics.region_hotspots(EMPTY) == []


def test_coordinate_clusters_round_onto_half_degree_grid() -> None:
    frame = _frame(
        [
            _event("a", latitude=35.1, longitude=-117.6),
            _event("b", latitude=34.9, longitude=-117.4),
            _event("c", latitude=35.25, longitude=-117.5),
            _event("d", latitude=-10.2, longitude=120.3),
        ]
    )

    assert metrics.coordinate_clusters(frame, PARAMS) == [
        (35.0, -117.5, 2),
        (-10.0, 120.5, 1),
        (35.5, -117.5, 1),
    ]
    assert metrics.coordinate_clusters(EMPTY, PARAMS) == []


def test_coordinate_clusters_round_half_cells_away_from_zero() -> None:
    frame = _frame(
        [
            _event("south-west", latitude=-37.25, longitude=-0.75),
            _event("north-east", latitude=37.25, longitude=0.75),
            _event("origin", latitude=0.2, longitude=-0.2),
        ]
    )

    assert metrics.coordinate_clusters(frame, PARAMS) == [
        (-37.5, -1.0, 1),
        (0.0, 0.0, 1),
        (37.5, 1.0, 1),
    ]


def test_mag_depth_pairs_require_both_fields_in_time_order() -> None:
    frame = _frame(
        [
            _event("late", magnitude=4.0, depth_km=20.0, occurred_at=MONDAY + timedelta(hours=2)),
            _event("early", magnitude=3.0, depth_km=5.0),
            _event("no-mag", depth_km=7.0),
            _event("no-depth", magnitude=5.0, depth_km=None),
        ]
    )

    assert metrics.mag_depth_pairs(frame) == [(3.0, 5.0), (4.0, 20.0)]


def test_gutenberg_richter_table_counts_and_cumulative_tail() -> None:
    magnitudes = [2.0, 2.0, 2.3, 2.3, 2.3, 3.1, 4.0]
    frame = _frame([_event(str(index), magnitude=value) for index, value in enumerate(magnitudes)])

    table = metrics.gutenberg_richter_table(frame, PARAMS)

    assert table == [(2.0, 2, 7), (2.3, 3, 5), (3.1, 1, 2), (4.0, 1, 1)]
    assert sum(count for _, count, _ in table) == len(magnitudes)
    cumulative = [total for _, _, total in table]
    assert cumulative == sorted(cumulative, reverse=True)


def _log_linear_events() -> list[SeismicEvent]:
    # cumulative counts 1000 / 100 / 10 at M2 / M3 / M4: slope exactly -1
    counts = {2.0: 900, 3.0: 90, 4.0: 10}
    events: list[SeismicEvent] = []
    for magnitude, count in counts.items():
        events.extend(_event(f"{magnitude}-{index}", magnitude=magnitude) for index in range(count))
    return events


def test_b_value_recovers_unit_slope() -> None:
    frame = _frame(_log_linear_events())

    fit = metrics.gutenberg_richter_fit(metrics.gutenberg_richter_table(frame, PARAMS), PARAMS)

    assert not fit.fallback
    assert fit.bins_used == 3
    assert fit.b_value == pytest.approx(1.0, abs=1e-9)
    assert fit.a_value == pytest.approx(5.0, abs=1e-9)


def test_b_value_falls_back_on_degenerate_input() -> None:
    below_completeness = _frame([_event("a", magnitude=1.0), _event("b", magnitude=1.5)])
    single_bin = _frame([_event("a", magnitude=3.0), _event("b", magnitude=3.0)])

    for frame in (EMPTY, below_completeness, single_bin):
        fit = metrics.gutenberg_richter_fit(metrics.gutenberg_richter_table(frame, PARAMS), PARAMS)
        assert fit.fallback
        assert fit.b_value == 1.0


def test_total_energy_is_zero_without_magnitudes() -> None:
    assert metrics.total_energy(EMPTY) == 0.0
    assert metrics.total_energy(_frame([_event("a")])) == 0.0


def test_risk_metrics_follow_poisson_rates() -> None:
    frame = _frame(
        [
            _event("a", magnitude=5.5, occurred_at=MONDAY),
            _event("b", magnitude=6.2, occurred_at=MONDAY + timedelta(days=50)),
            _event("c", magnitude=2.0, occurred_at=MONDAY + timedelta(days=100)),
        ]
    )

    risk = metrics.risk_metrics(frame)

    assert risk.p_m5_30_days == pytest.approx(1 - math.exp(-(2 / 100) * 30))
    assert risk.p_m6_365_days == pytest.approx(1 - math.exp(-(1 / 100) * 365))
    assert risk.p_m7_365_days == 0.0
    assert risk.total_energy_joules == pytest.approx(metrics.total_energy(frame))


def test_risk_metrics_zero_span_gives_zero_probabilities() -> None:
    frame = _frame([_event("a", magnitude=7.5), _event("b", magnitude=7.1)])

    assert metrics.risk_metrics(frame).as_tuple()[:3] == (0.0, 0.0, 0.0)
    assert metrics.risk_metrics(EMPTY).as_tuple() == (0.0, 0.0, 0.0, 0.0)


def test_parameters_follow_settings() -> None:
    settings = Settings(magnitude_bin_width=0.5, cluster_cell_degrees=1.0, regional_top_n=3)

    params = AnalyticsParameters.from_settings(settings)

    assert params.magnitude_bin_width == 0.5
    assert params.cluster_cell_degrees == 1.0
    assert params.regional_top_n == 3
    assert params.completeness_magnitude == 2.0
