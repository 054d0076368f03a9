from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from quake_tracker.analytics.engine import AnalyticsEngine, RecomputeAck
from quake_tracker.analytics.metrics import AnalyticsParameters, DescriptiveStats, RegionSummary, RiskMetrics
from quake_tracker.core.config import Settings
from quake_tracker.core.query import QueryParams, parse_query_params
from quake_tracker.core.schema import SeismicEvent, events_from_feature_collection, feature_collection
from quake_tracker.live.feed import ConnectFactory, DeltaSubscription, LiveFeedListener
from quake_tracker.sources.catalog import CatalogClient
from quake_tracker.store.event_store import DataStats, EventStore

logger = logging.getLogger(__name__)

QueryInput = QueryParams | Mapping[str, Any] | None


class QuakeTrackerService:
    """Command surface over the event store, analytics engine and upstream sources."""

    def __init__(
        self,
        *,
        store: EventStore,
        engine: AnalyticsEngine,
        catalog: CatalogClient,
        listener: LiveFeedListener,
    ) -> None:
        self.store = store
        self.engine = engine
        self.catalog = catalog
        self.listener = listener

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        catalog: CatalogClient | None = None,
        connect: ConnectFactory | None = None,
    ) -> QuakeTrackerService:
        store = EventStore()
        return cls(
            store=store,
            engine=AnalyticsEngine(store, AnalyticsParameters.from_settings(settings)),
            catalog=catalog
            or CatalogClient(
                base_url=settings.catalog_base_url,
                timeout_seconds=settings.catalog_timeout_seconds,
                retries=settings.catalog_max_retries,
                default_limit=settings.catalog_default_limit,
            ),
            listener=LiveFeedListener(
                url=settings.live_feed_url,
                store=store,
                buffer_size=settings.subscriber_buffer_size,
                reconnect_initial_seconds=settings.live_reconnect_initial_seconds,
                reconnect_max_seconds=settings.live_reconnect_max_seconds,
                read_timeout_seconds=settings.live_read_timeout_seconds,
                max_reconnect_attempts=settings.live_max_reconnect_attempts,
                connect=connect,
            ),
        )

    def __enter__(self) -> QuakeTrackerService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.listener.stop()
        self.catalog.close()

    def fetch_events(self, query_params: QueryInput = None, clear: bool = False) -> dict[str, Any]:
        """Fetch from the catalog and merge into the store.

        Parameters are validated before any request is made, and the store is
        only cleared once the fetch has succeeded.
        """
        params = parse_query_params(query_params)
        payload = self.catalog.fetch_events(params)
        events, malformed = events_from_feature_collection(payload)
        generation = self.store.load(events, clear=clear)

        logger.info(
            "Fetched catalog events",
            extra={
                "fetched": len(events),
                "malformed": malformed,
                "clear": clear,
                "generation": generation,
            },
        )
        collection = feature_collection(events)
        collection["metadata"]["malformed"] = malformed
        return collection

    def query_events(self, filters: QueryInput = None) -> list[SeismicEvent]:
        return self.store.query(filters)

    def start_live_feed(self) -> None:
        self.listener.start()

    def stop_live_feed(self) -> None:
        self.listener.stop()

    def subscribe_realtime(self, channel: str) -> DeltaSubscription:
        subscription = self.listener.subscribe(channel)
        if not self.listener.running:
            self.listener.start()
        return subscription

    def data_stats(self) -> DataStats:
        return self.store.stats()

    def recompute_analytics(self) -> RecomputeAck:
        return self.engine.recompute_analytics()

    def magnitude_distribution(self) -> list[tuple[str, int]]:
        return self.engine.magnitude_distribution()

    def magnitude_stats(self) -> DescriptiveStats:
        return self.engine.magnitude_stats()

    def depth_stats(self) -> DescriptiveStats:
        return self.engine.depth_stats()

    def advanced_analytics(self) -> dict[str, Any]:
        return self.engine.advanced_analytics()

    def daily_counts(self) -> list[tuple[Any, int]]:
        return self.engine.daily_counts()

    def hourly_frequency(self) -> list[tuple[int, int]]:
        return self.engine.hourly_frequency()

    def weekly_frequency(self) -> list[tuple[str, int]]:
        return self.engine.weekly_frequency()

    def monthly_frequency(self) -> list[tuple[int, int]]:
        return self.engine.monthly_frequency()

    def region_hotspots(self) -> list[tuple[str, int]]:
        return self.engine.region_hotspots()

    def regional_analysis(self) -> list[RegionSummary]:
        return self.engine.regional_analysis()

    def coordinate_clusters(self) -> list[tuple[float, float, int]]:
        return self.engine.coordinate_clusters()

    def mag_depth_pairs(self) -> list[tuple[float, float]]:
        return self.engine.mag_depth_pairs()

    def magnitude_frequency_table(self) -> list[tuple[float, int, int]]:
        return self.engine.magnitude_frequency_table()

    def b_value(self) -> float:
        return self.engine.b_value()

    def risk_metrics(self) -> tuple[float, float, float, float]:
        risk: RiskMetrics = self.engine.risk_metrics()
        return risk.as_tuple()

    def total_energy(self) -> float:
        return self.engine.total_energy()
