from datetime import UTC, datetime

import pytest
import typer
from typer.testing import CliRunner

from quake_tracker.cli.app import _build_query, _format_delta, _format_optional, _parse_utc_datetime, app
from quake_tracker.core.schema import SeismicEvent
from quake_tracker.live.feed import LiveAction, LiveDelta


def test_parse_utc_datetime_treats_naive_values_as_utc() -> None:
    assert _parse_utc_datetime("2024-01-02T03:04:05") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert _parse_utc_datetime("2024-01-02T05:04:05+02:00") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)


def test_parse_utc_datetime_rejects_garbage() -> None:
    with pytest.raises(typer.BadParameter):
        _parse_utc_datetime("yesterday")


def test_build_query_drops_unset_options_and_uses_fdsn_names() -> None:
    query = _build_query(
        start="2024-01-01",
        end=None,
        min_magnitude=4.5,
        max_magnitude=None,
        min_depth=None,
        max_depth=70.0,
        limit=100,
        order_by="magnitude",
    )

    assert query == {
        "start": datetime(2024, 1, 1, tzinfo=UTC),
        "minmag": 4.5,
        "maxdepth": 70.0,
        "limit": 100,
        "orderby": "magnitude",
    }


def test_format_helpers() -> None:
    occurred_at = datetime(2024, 1, 1, tzinfo=UTC)
    event = SeismicEvent(
        id="evt-1",
        source_id="",
        source_catalog="",
        occurred_at=occurred_at,
        last_update=occurred_at,
        latitude=0.0,
        longitude=0.0,
        magnitude=4.25,
        region="CRETE",
    )

    line = _format_delta(LiveDelta(action=LiveAction.CREATE, event=event))

    assert "M4.2" in line or "M4.3" in line
    assert "CRETE" in line
    assert "(evt-1)" in line
    assert _format_optional(None) == "-"
    assert _format_optional(1.23456) == "1.23"


def test_cli_lists_commands() -> None:
    result = CliRunner().invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("fetch", "listen", "report"):
        assert command in result.output
