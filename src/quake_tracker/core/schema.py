from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

import polars as pl

from quake_tracker.core.errors import MalformedMessage
from quake_tracker.core.time_utils import format_utc, parse_utc_datetime

MAX_EVENT_ID_LENGTH = 100
PER_EVENT_OVERHEAD_BYTES = 256


@dataclass(frozen=True, slots=True)
class SeismicEvent:
    id: str
    source_id: str
    source_catalog: str
    occurred_at: datetime
    last_update: datetime
    latitude: float
    longitude: float
    depth_km: float | None = None
    magnitude: float | None = None
    magnitude_type: str = ""
    event_type: str = ""
    region: str = ""
    authority: str = ""
    origins: dict[str, Any] | None = None
    arrivals: list[Any] | None = None

    def estimated_size_bytes(self) -> int:
        size = PER_EVENT_OVERHEAD_BYTES
        for text in (
            self.id,
            self.source_id,
            self.source_catalog,
            self.magnitude_type,
            self.event_type,
            self.region,
            self.authority,
        ):
            size += len(text.encode("utf-8"))
        if self.origins is not None:
            size += len(_payload_to_json(self.origins))
        if self.arrivals is not None:
            size += len(_payload_to_json(self.arrivals))
        return size


@dataclass(frozen=True, slots=True)
class ColumnSpec:
    name: str
    dtype: pl.DataType
    nullable: bool


# Columns of the analytics frame built from a store snapshot.
EVENT_COLUMNS: Final[tuple[ColumnSpec, ...]] = (
    ColumnSpec("id", pl.Utf8(), False),
    ColumnSpec("occurred_at", pl.Datetime("us", "UTC"), False),
    ColumnSpec("last_update", pl.Datetime("us", "UTC"), False),
    ColumnSpec("latitude", pl.Float64(), False),
    ColumnSpec("longitude", pl.Float64(), False),
    ColumnSpec("depth_km", pl.Float64(), True),
    ColumnSpec("magnitude", pl.Float64(), True),
    ColumnSpec("magnitude_type", pl.Utf8(), False),
    ColumnSpec("region", pl.Utf8(), False),
)


def event_frame_schema() -> dict[str, pl.DataType]:
    return {column.name: column.dtype for column in EVENT_COLUMNS}


def required_columns() -> list[str]:
    return [column.name for column in EVENT_COLUMNS if not column.nullable]


def _payload_to_json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            parsed = float(normalized)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_timestamp(value: Any, field: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise MalformedMessage(f"missing {field} timestamp")
    try:
        return parse_utc_datetime(value)
    except ValueError as exc:
        raise MalformedMessage(f"invalid {field} timestamp: {value!r}") from exc


def event_from_feature(feature: Any) -> SeismicEvent:
    """Decode one GeoJSON feature of the EMSC event schema."""
    if not isinstance(feature, dict):
        raise MalformedMessage("feature must be a JSON object")
    properties = feature.get("properties")
    if not isinstance(properties, dict):
        raise MalformedMessage("feature has no properties object")

    event_id = _coerce_str(properties.get("unid") or feature.get("id"))
    if not event_id:
        raise MalformedMessage("feature has no event id")
    if len(event_id) > MAX_EVENT_ID_LENGTH:
        raise MalformedMessage(f"event id too long: {len(event_id)} characters")

    coordinates: list[Any] = []
    geometry = feature.get("geometry")
    if isinstance(geometry, dict) and isinstance(geometry.get("coordinates"), list):
        coordinates = geometry["coordinates"]

    latitude = _coerce_float(properties.get("lat"))
    if latitude is None and len(coordinates) >= 2:
        latitude = _coerce_float(coordinates[1])
    longitude = _coerce_float(properties.get("lon"))
    if longitude is None and len(coordinates) >= 2:
        longitude = _coerce_float(coordinates[0])
    if latitude is None or longitude is None:
        raise MalformedMessage(f"event {event_id} has no coordinates")
    if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
        raise MalformedMessage(f"event {event_id} has out-of-range coordinates ({latitude}, {longitude})")

    depth_km = _coerce_float(properties.get("depth"))
    if depth_km is None and len(coordinates) >= 3:
        elevation = _coerce_float(coordinates[2])
        depth_km = -elevation if elevation is not None else None

    occurred_at = _parse_timestamp(properties.get("time"), "time")
    raw_last_update = properties.get("lastupdate")
    last_update = occurred_at if raw_last_update in (None, "") else _parse_timestamp(raw_last_update, "lastupdate")

    origins = properties.get("origins", feature.get("origins"))
    arrivals = properties.get("arrivals", feature.get("arrivals"))

    return SeismicEvent(
        id=event_id,
        source_id=_coerce_str(properties.get("source_id")),
        source_catalog=_coerce_str(properties.get("source_catalog")),
        occurred_at=occurred_at,
        last_update=last_update,
        latitude=latitude,
        longitude=longitude,
        depth_km=depth_km,
        magnitude=_coerce_float(properties.get("mag")),
        magnitude_type=_coerce_str(properties.get("magtype")),
        event_type=_coerce_str(properties.get("evtype")),
        region=_coerce_str(properties.get("flynn_region")),
        authority=_coerce_str(properties.get("auth")),
        origins=origins if isinstance(origins, dict) else None,
        arrivals=arrivals if isinstance(arrivals, list) else None,
    )


def events_from_feature_collection(payload: Any) -> tuple[list[SeismicEvent], int]:
    """Decode every feature of a collection; returns (events, malformed_count)."""
    if not isinstance(payload, dict) or not isinstance(payload.get("features"), list):
        raise MalformedMessage("payload is not a GeoJSON feature collection")

    events: list[SeismicEvent] = []
    malformed = 0
    for feature in payload["features"]:
        try:
            events.append(event_from_feature(feature))
        except MalformedMessage:
            malformed += 1
    return events, malformed


def event_to_feature(event: SeismicEvent) -> dict[str, Any]:
    properties: dict[str, Any] = {
        "source_id": event.source_id,
        "source_catalog": event.source_catalog,
        "lastupdate": format_utc(event.last_update),
        "time": format_utc(event.occurred_at),
        "flynn_region": event.region,
        "lat": event.latitude,
        "lon": event.longitude,
        "depth": event.depth_km,
        "evtype": event.event_type,
        "auth": event.authority,
        "mag": event.magnitude,
        "magtype": event.magnitude_type,
        "unid": event.id,
    }
    if event.origins is not None:
        properties["origins"] = event.origins
    if event.arrivals is not None:
        properties["arrivals"] = event.arrivals

    elevation = -event.depth_km if event.depth_km is not None else 0.0
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [event.longitude, event.latitude, elevation]},
        "id": event.id,
        "properties": properties,
    }


def feature_collection(events: list[SeismicEvent]) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "metadata": {"count": len(events)},
        "features": [event_to_feature(event) for event in events],
    }
