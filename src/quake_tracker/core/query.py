from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from quake_tracker.core.errors import InvalidQueryParams
from quake_tracker.core.schema import MAX_EVENT_ID_LENGTH, SeismicEvent

OrderBy = Literal["time", "time-asc", "magnitude", "magnitude-asc"]

MAX_LIMIT = 20_000


class QueryParams(BaseModel):
    """FDSN event query constraints.

    The same model drives upstream catalog requests and local queries over a
    store snapshot. Field aliases are the FDSN parameter names.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    start: datetime | None = Field(default=None, alias="start")
    end: datetime | None = Field(default=None, alias="end")

    min_latitude: float | None = Field(default=None, alias="minlat", ge=-90.0, le=90.0)
    max_latitude: float | None = Field(default=None, alias="maxlat", ge=-90.0, le=90.0)
    min_longitude: float | None = Field(default=None, alias="minlon", ge=-180.0, le=180.0)
    max_longitude: float | None = Field(default=None, alias="maxlon", ge=-180.0, le=180.0)

    latitude: float | None = Field(default=None, alias="lat", ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, alias="lon", ge=-180.0, le=180.0)
    min_radius: float | None = Field(default=None, alias="minrad", ge=0.0, le=180.0)
    max_radius: float | None = Field(default=None, alias="maxrad", ge=0.0, le=180.0)

    min_depth: float | None = Field(default=None, alias="mindepth", ge=0.0, le=700.0)
    max_depth: float | None = Field(default=None, alias="maxdepth", ge=0.0, le=700.0)
    min_magnitude: float | None = Field(default=None, alias="minmag", ge=-2.0, le=10.0)
    max_magnitude: float | None = Field(default=None, alias="maxmag", ge=-2.0, le=10.0)
    magnitude_type: str | None = Field(default=None, alias="magnitudetype")

    include_all_origins: bool | None = Field(default=None, alias="includeallorigins")
    include_arrivals: bool | None = Field(default=None, alias="includearrivals")
    event_id: str | None = Field(default=None, alias="eventid", min_length=1, max_length=MAX_EVENT_ID_LENGTH)

    limit: int | None = Field(default=None, alias="limit", ge=1, le=MAX_LIMIT)
    offset: int | None = Field(default=None, alias="offset", ge=0)
    order_by: OrderBy | None = Field(default=None, alias="orderby")

    contributor: str | None = Field(default=None, alias="contributor")
    catalog: str | None = Field(default=None, alias="catalog")
    updated_after: datetime | None = Field(default=None, alias="updatedafter")

    @field_validator("start", "end", "updated_after")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _check_consistency(self) -> QueryParams:
        _check_range("start", "end", self.start, self.end)
        _check_range("minlat", "maxlat", self.min_latitude, self.max_latitude)
        _check_range("minlon", "maxlon", self.min_longitude, self.max_longitude)
        _check_range("minrad", "maxrad", self.min_radius, self.max_radius)
        _check_range("mindepth", "maxdepth", self.min_depth, self.max_depth)
        _check_range("minmag", "maxmag", self.min_magnitude, self.max_magnitude)

        if self.has_box and self.has_circle:
            raise ValueError("bounding-box and circular constraints cannot be combined")
        if (self.min_radius is not None or self.max_radius is not None) and (
            self.latitude is None or self.longitude is None
        ):
            raise ValueError("a radius constraint requires both lat and lon")
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("lat and lon must be given together")
        return self

    @property
    def has_box(self) -> bool:
        return any(
            value is not None
            for value in (self.min_latitude, self.max_latitude, self.min_longitude, self.max_longitude)
        )

    @property
    def has_circle(self) -> bool:
        return self.latitude is not None or self.longitude is not None

    def to_request_params(self, default_limit: int) -> dict[str, str | int | float]:
        """Serialize to FDSN request parameters, dropping unset constraints."""
        params: dict[str, str | int | float] = {"format": "json", "nodata": "204"}
        for name, value in self.model_dump(by_alias=True, exclude_none=True).items():
            if isinstance(value, datetime):
                params[name] = value.strftime("%Y-%m-%dT%H:%M:%S")
            elif isinstance(value, bool):
                params[name] = "true" if value else "false"
            else:
                params[name] = value
        params.setdefault("limit", default_limit)
        return params


def _check_range(low_name: str, high_name: str, low: Any, high: Any) -> None:
    if low is not None and high is not None and low > high:
        raise ValueError(f"{low_name} must not be greater than {high_name}")


def parse_query_params(raw: QueryParams | Mapping[str, Any] | None) -> QueryParams:
    if raw is None:
        return QueryParams()
    if isinstance(raw, QueryParams):
        return raw
    try:
        return QueryParams.model_validate(dict(raw))
    except ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'query'}: {error['msg']}" for error in exc.errors()
        )
        raise InvalidQueryParams(
            f"invalid query parameters: {messages}",
            errors=exc.errors(include_url=False),
        ) from exc


def _great_circle_degrees(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return math.degrees(2 * math.asin(min(1.0, math.sqrt(a))))


def _within(value: float | None, low: float | None, high: float | None) -> bool:
    if low is None and high is None:
        return True
    if value is None:
        return False
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def matches(event: SeismicEvent, params: QueryParams) -> bool:
    if params.event_id is not None and event.id != params.event_id:
        return False
    if params.start is not None and event.occurred_at < params.start:
        return False
    if params.end is not None and event.occurred_at > params.end:
        return False
    if params.updated_after is not None and event.last_update <= params.updated_after:
        return False
    if not _within(event.latitude, params.min_latitude, params.max_latitude):
        return False
    if not _within(event.longitude, params.min_longitude, params.max_longitude):
        return False
    if params.latitude is not None and params.longitude is not None:
        distance = _great_circle_degrees(params.latitude, params.longitude, event.latitude, event.longitude)
        if not _within(distance, params.min_radius, params.max_radius):
            return False
    if not _within(event.depth_km, params.min_depth, params.max_depth):
        return False
    if not _within(event.magnitude, params.min_magnitude, params.max_magnitude):
        return False
    if params.magnitude_type is not None and event.magnitude_type.lower() != params.magnitude_type.lower():
        return False
    if params.contributor is not None and event.authority.lower() != params.contributor.lower():
        return False
    if params.catalog is not None and event.source_catalog.lower() != params.catalog.lower():
        return False
    return True


def _order(events: list[SeismicEvent], order_by: OrderBy) -> list[SeismicEvent]:
    """Sort by time or magnitude; ties always break by ascending id, whatever the direction."""
    by_id = sorted(events, key=lambda event: event.id)
    if order_by in ("time", "time-asc"):
        return sorted(by_id, key=lambda event: event.occurred_at, reverse=order_by == "time")

    # events without magnitude sort last in both directions
    with_magnitude = [event for event in by_id if event.magnitude is not None]
    without_magnitude = [event for event in by_id if event.magnitude is None]
    ordered = sorted(with_magnitude, key=lambda event: event.magnitude, reverse=order_by == "magnitude")
    return ordered + without_magnitude


def apply_query(events: Iterable[SeismicEvent], params: QueryParams) -> list[SeismicEvent]:
    """Filter, order and paginate events. Pure; the input is not modified."""
    selected = [event for event in events if matches(event, params)]
    selected = _order(selected, params.order_by or "time")
    if params.offset:
        selected = selected[params.offset :]
    if params.limit is not None:
        selected = selected[: params.limit]
    return selected
