from __future__ import annotations

from collections.abc import Sequence

import polars as pl

from quake_tracker.core.schema import SeismicEvent, event_frame_schema, required_columns


def build_event_frame(events: Sequence[SeismicEvent]) -> pl.DataFrame:
    schema = event_frame_schema()
    columns: dict[str, list[object]] = {name: [] for name in schema}
    for event in events:
        columns["id"].append(event.id)
        columns["occurred_at"].append(event.occurred_at)
        columns["last_update"].append(event.last_update)
        columns["latitude"].append(event.latitude)
        columns["longitude"].append(event.longitude)
        columns["depth_km"].append(event.depth_km)
        columns["magnitude"].append(event.magnitude)
        columns["magnitude_type"].append(event.magnitude_type)
        columns["region"].append(event.region)
    frame = pl.DataFrame(columns, schema=schema)
    if any(frame.select(required_columns()).null_count().row(0)):
        raise ValueError("event frame has nulls in required columns")
    return frame
