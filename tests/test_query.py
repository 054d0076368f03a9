from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from quake_tracker.core.errors import InvalidQueryParams
from quake_tracker.core.query import QueryParams, apply_query, parse_query_params
from quake_tracker.core.schema import SeismicEvent

BASE_TIME = datetime(2024, 3, 1, 0, 0, tzinfo=UTC)


def _event(event_id: str, *, hours: int = 0, magnitude: float | None = 3.0, **fields: Any) -> SeismicEvent:
    occurred_at = BASE_TIME + timedelta(hours=hours)
    values: dict[str, Any] = {
        "id": event_id,
        "source_id": event_id,
        "source_catalog": "EMSC-RTS",
        "occurred_at": occurred_at,
        "last_update": occurred_at,
        "latitude": 38.0,
        "longitude": 23.0,
        "depth_km": 10.0,
        "magnitude": magnitude,
        "magnitude_type": "ml",
        "region": "GREECE",
        "authority": "NOA",
    }
    values.update(fields)
    return SeismicEvent(**values)


def test_request_params_always_carry_format_nodata_and_limit() -> None:
    params = parse_query_params({"minmag": 4.5, "start": "2024-01-01T00:00:00", "includearrivals": True})

    request = params.to_request_params(default_limit=10)

    assert request["format"] == "json"
    assert request["nodata"] == "204"
    assert request["limit"] == 10
    assert request["minmag"] == 4.5
    assert request["start"] == "2024-01-01T00:00:00"
    assert request["includearrivals"] == "true"
    assert "maxmag" not in request


def test_explicit_limit_overrides_default() -> None:
    params = parse_query_params({"limit": 500})
    assert params.to_request_params(default_limit=10)["limit"] == 500


def test_field_names_and_fdsn_aliases_are_both_accepted() -> None:
    by_alias = parse_query_params({"minlat": 30.0, "maxlat": 40.0})
    by_name = QueryParams(min_latitude=30.0, max_latitude=40.0)

    assert by_alias == by_name
    assert by_alias.has_box
    assert not by_alias.has_circle


@pytest.mark.parametrize(
    "raw",
    [
        {"start": "2024-02-01T00:00:00", "end": "2024-01-01T00:00:00"},
        {"minlat": 95.0},
        {"minlon": -181.0},
        {"minlat": 40.0, "maxlat": 30.0},
        {"mindepth": 800.0},
        {"minmag": 11.0},
        {"minmag": 6.0, "maxmag": 5.0},
        {"limit": 0},
        {"limit": 20_001},
        {"offset": -1},
        {"eventid": "x" * 101},
        {"orderby": "depth"},
        {"minlat": 30.0, "lat": 35.0, "lon": 20.0},
        {"maxrad": 2.0},
        {"lat": 35.0},
        {"unknown": 1},
    ],
)
def test_invalid_query_params_are_rejected(raw: dict[str, Any]) -> None:
    with pytest.raises(InvalidQueryParams) as excinfo:
        parse_query_params(raw)

    assert excinfo.value.errors


def test_naive_datetimes_are_taken_as_utc() -> None:
    params = parse_query_params({"start": datetime(2024, 1, 1, 6, 0)})
    assert params.start == datetime(2024, 1, 1, 6, 0, tzinfo=UTC)


def test_apply_query_defaults_to_newest_first_without_limit() -> None:
    events = [_event(f"e{index}", hours=index) for index in range(15)]

    selected = apply_query(events, QueryParams())

    assert len(selected) == 15
    assert [event.id for event in selected[:3]] == ["e14", "e13", "e12"]


def test_apply_query_filters_conjunctively_and_excludes_missing_fields() -> None:
    events = [
        _event("small", magnitude=2.0),
        _event("large", magnitude=5.0),
        _event("unknown", magnitude=None),
        _event("deep", magnitude=5.5, depth_km=300.0),
        _event("no-depth", magnitude=5.5, depth_km=None),
    ]

    selected = apply_query(events, parse_query_params({"minmag": 4.0, "maxdepth": 100.0}))

    assert [event.id for event in selected] == ["large"]


def test_apply_query_orders_by_magnitude_then_paginates() -> None:
    events = [
        _event("a", magnitude=3.0),
        _event("b", magnitude=5.0),
        _event("c", magnitude=None),
        _event("d", magnitude=4.0),
    ]

    descending = apply_query(events, parse_query_params({"orderby": "magnitude"}))
    ascending = apply_query(events, parse_query_params({"orderby": "magnitude-asc", "offset": 1, "limit": 2}))

    assert [event.id for event in descending] == ["b", "d", "a", "c"]
    assert [event.id for event in ascending] == ["d", "b"]


def test_apply_query_circle_and_time_window() -> None:
    events = [
        _event("near", hours=1, latitude=38.1, longitude=23.1),
        _event("far", hours=1, latitude=10.0, longitude=100.0),
        _event("too-late", hours=48, latitude=38.0, longitude=23.0),
    ]
    params = parse_query_params(
        {
            "lat": 38.0,
            "lon": 23.0,
            "maxrad": 1.0,
            "end": (BASE_TIME + timedelta(days=1)).isoformat(),
            "orderby": "time-asc",
        }
    )

    assert [event.id for event in apply_query(events, params)] == ["near"]


def test_apply_query_does_not_modify_input() -> None:
    events = [_event("b", hours=1), _event("a", hours=2)]
    snapshot = list(events)

    apply_query(events, parse_query_params({"orderby": "time-asc"}))

    assert events == snapshot


def test_ties_break_by_ascending_id_in_both_directions() -> None:
    events = [
        _event("c", hours=1, magnitude=4.0),
        _event("a", hours=1, magnitude=4.0),
        _event("b", hours=1, magnitude=4.0),
        _event("z", hours=2, magnitude=5.0),
    ]

    newest_first = apply_query(events, parse_query_params({"orderby": "time"}))
    oldest_first = apply_query(events, parse_query_params({"orderby": "time-asc"}))
    largest_first = apply_query(events, parse_query_params({"orderby": "magnitude"}))

    assert [event.id for event in newest_first] == ["z", "a", "b", "c"]
    assert [event.id for event in oldest_first] == ["a", "b", "c", "z"]
    assert [event.id for event in largest_first] == ["z", "a", "b", "c"]
