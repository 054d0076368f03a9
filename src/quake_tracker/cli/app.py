from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from quake_tracker.core.config import Settings
from quake_tracker.core.errors import QuakeTrackerError
from quake_tracker.core.logging import configure_logging
from quake_tracker.live.feed import LiveDelta
from quake_tracker.service.facade import QuakeTrackerService

app = typer.Typer(help="Seismic event tracker: catalog fetch, live feed and analytics")
console = Console()


def _parse_utc_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"not an ISO datetime: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _build_query(
    *,
    start: str | None,
    end: str | None,
    min_magnitude: float | None,
    max_magnitude: float | None,
    min_depth: float | None,
    max_depth: float | None,
    limit: int | None,
    order_by: str | None,
) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "start": _parse_utc_datetime(start) if start else None,
        "end": _parse_utc_datetime(end) if end else None,
        "minmag": min_magnitude,
        "maxmag": max_magnitude,
        "mindepth": min_depth,
        "maxdepth": max_depth,
        "limit": limit,
        "orderby": order_by,
    }
    return {name: value for name, value in raw.items() if value is not None}


def _format_optional(value: float | None, digits: int = 2) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def _format_delta(delta: LiveDelta) -> str:
    event = delta.event
    magnitude = _format_optional(event.magnitude, digits=1)
    colour = "green" if delta.action.value == "create" else "yellow"
    return (
        f"[{colour}]{delta.action.value:<6}[/{colour}] {event.occurred_at.isoformat()} "
        f"M{magnitude} {event.region or '?'} ({event.id})"
    )


def _counts_table(title: str, header: str, rows: list[tuple[Any, int]]) -> Table:
    table = Table(title=title)
    table.add_column(header)
    table.add_column("count", justify="right")
    for bucket, count in rows:
        table.add_row(str(bucket), str(count))
    return table


def _print_stats(service: QuakeTrackerService) -> None:
    stats = service.data_stats()
    console.print(
        f"Events stored: [bold]{stats.total_events}[/bold] "
        f"last_updated={stats.last_updated.isoformat() if stats.last_updated else '-'} "
        f"memory_estimate={stats.memory_usage_estimate}B generation={stats.generation}"
    )


def _print_report(service: QuakeTrackerService) -> None:
    _print_stats(service)
    console.print(_counts_table("Magnitude distribution", "bin", service.magnitude_distribution()))

    stats_table = Table(title="Descriptive statistics")
    for column in ("field", "count", "mean", "median", "std_dev", "min", "max"):
        stats_table.add_column(column)
    for label, stats in (("magnitude", service.magnitude_stats()), ("depth_km", service.depth_stats())):
        stats_table.add_row(
            label,
            str(stats.count),
            _format_optional(stats.mean),
            _format_optional(stats.median),
            _format_optional(stats.std_dev),
            _format_optional(stats.min),
            _format_optional(stats.max),
        )
    console.print(stats_table)

    console.print(_counts_table("Hourly frequency (UTC)", "hour", service.hourly_frequency()))
    console.print(_counts_table("Weekly frequency", "weekday", service.weekly_frequency()))
    console.print(_counts_table("Monthly frequency", "month", service.monthly_frequency()))
    console.print(_counts_table("Region hotspots", "region", service.region_hotspots()[:10]))

    fit = service.engine.gutenberg_richter_fit()
    p5, p6, p7, energy = service.risk_metrics()
    console.print(
        f"b-value=[bold]{fit.b_value:.3f}[/bold] a-value={fit.a_value:.3f} "
        f"(Mc={fit.completeness_magnitude}, bins={fit.bins_used}{', fallback' if fit.fallback else ''})"
    )
    console.print(
        f"P(M>=5, 30d)={p5:.4f} P(M>=6, 365d)={p6:.4f} P(M>=7, 365d)={p7:.4f} "
        f"total_energy={energy:.3e} J"
    )


@app.command("fetch")
def fetch(
    start: str | None = typer.Option(default=None, help="Start datetime in ISO format (UTC if no timezone)"),
    end: str | None = typer.Option(default=None, help="End datetime in ISO format (UTC if no timezone)"),
    min_magnitude: float | None = typer.Option(default=None, help="Minimum magnitude"),
    max_magnitude: float | None = typer.Option(default=None, help="Maximum magnitude"),
    min_depth: float | None = typer.Option(default=None, help="Minimum depth in km"),
    max_depth: float | None = typer.Option(default=None, help="Maximum depth in km"),
    limit: int | None = typer.Option(default=None, min=1, max=20_000, help="Maximum events to fetch"),
    order_by: str | None = typer.Option(default=None, help="time, time-asc, magnitude or magnitude-asc"),
) -> None:
    """Fetch events from the catalog and print a short summary."""
    settings = Settings()
    configure_logging(settings.log_level)
    query = _build_query(
        start=start,
        end=end,
        min_magnitude=min_magnitude,
        max_magnitude=max_magnitude,
        min_depth=min_depth,
        max_depth=max_depth,
        limit=limit,
        order_by=order_by,
    )

    with QuakeTrackerService.from_settings(settings) as service:
        try:
            collection = service.fetch_events(query, clear=True)
        except QuakeTrackerError as exc:
            console.print(f"[red]Fetch failed:[/red] {exc}")
            raise typer.Exit(code=1) from exc

        console.print(
            f"[green]Fetched {collection['metadata']['count']} events[/green] "
            f"(malformed skipped: {collection['metadata']['malformed']})"
        )
        _print_stats(service)
        console.print(_counts_table("Magnitude distribution", "bin", service.magnitude_distribution()))


@app.command("listen")
def listen(
    max_events: int | None = typer.Option(default=None, min=1, help="Exit after this many deltas"),
    channel: str = typer.Option(default="cli", help="Subscriber channel name"),
) -> None:
    """Follow the live feed and print every create/update delta."""
    settings = Settings()
    configure_logging(settings.log_level)

    received = 0
    with QuakeTrackerService.from_settings(settings) as service:
        subscription = service.subscribe_realtime(channel)
        console.print(f"Listening on {settings.live_feed_url} (Ctrl+C to stop)")
        try:
            for delta in subscription:
                console.print(_format_delta(delta))
                received += 1
                if max_events is not None and received >= max_events:
                    break
        except KeyboardInterrupt:
            console.print("Stopping live feed")
        finally:
            subscription.close()
        _print_stats(service)


@app.command("report")
def report(
    start: str | None = typer.Option(default=None, help="Start datetime in ISO format (UTC if no timezone)"),
    end: str | None = typer.Option(default=None, help="End datetime in ISO format (UTC if no timezone)"),
    min_magnitude: float | None = typer.Option(default=None, help="Minimum magnitude"),
    limit: int = typer.Option(default=1000, min=1, max=20_000, help="Maximum events to fetch"),
) -> None:
    """Fetch events and print the full analytics battery."""
    settings = Settings()
    configure_logging(settings.log_level)
    query = _build_query(
        start=start,
        end=end,
        min_magnitude=min_magnitude,
        max_magnitude=None,
        min_depth=None,
        max_depth=None,
        limit=limit,
        order_by=None,
    )

    with QuakeTrackerService.from_settings(settings) as service:
        try:
            service.fetch_events(query, clear=True)
            service.recompute_analytics()
        except QuakeTrackerError as exc:
            console.print(f"[red]Report failed:[/red] {exc}")
            raise typer.Exit(code=1) from exc
        _print_report(service)


if __name__ == "__main__":
    app()
