from __future__ import annotations

import logging
import random
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from quake_tracker.core.errors import UpstreamUnavailable
from quake_tracker.core.query import QueryParams

logger = logging.getLogger(__name__)

SERVICE_NAME = "fdsn_catalog"


class CatalogClient:
    """Client for the FDSN event query endpoint of the EMSC seismic portal."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 5,
        default_limit: int = 10,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)
        self._retries = max(1, retries)
        self._default_limit = default_limit
        self._min_retry_delay_seconds = 1.0
        self._max_backoff_seconds = 60.0

    def close(self) -> None:
        self._client.close()

    def fetch_events(self, params: QueryParams) -> dict[str, Any]:
        """Run one catalog query and return the GeoJSON feature collection.

        A 204 reply (no matching events) becomes an empty collection.
        """
        request_params = params.to_request_params(default_limit=self._default_limit)
        try:
            response = self._get(request_params)
        except httpx.HTTPError as exc:
            # decoding and redirect failures are not retried
            raise UpstreamUnavailable(SERVICE_NAME, f"{exc.__class__.__name__}: {exc}") from exc

        if response.status_code == 204 or not response.content:
            return {"type": "FeatureCollection", "metadata": {"count": 0}, "features": []}
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(SERVICE_NAME, "catalog returned a non-JSON body") from exc

    def _get(self, params: dict[str, Any]) -> httpx.Response:
        """GET the query endpoint, retrying 429, 5xx and transport failures.

        Any other non-2xx reply is final. Every failure surfaces as
        UpstreamUnavailable carrying the attempt count.
        """
        for attempt in range(1, self._retries + 1):
            try:
                response = self._client.get(self._url, params=params)
            except httpx.TransportError as exc:
                if attempt >= self._retries:
                    raise UpstreamUnavailable(
                        SERVICE_NAME, f"{exc.__class__.__name__} after {attempt} attempt(s): {exc}"
                    ) from exc
                self._sleep_before_retry(attempt=attempt, status_code=None, reason=exc.__class__.__name__)
                continue

            # 204 is the nodata reply, not an error
            if response.status_code == 204 or response.is_success:
                return response

            if self._is_retryable_status(response.status_code) and attempt < self._retries:
                self._sleep_before_retry(
                    attempt=attempt,
                    status_code=response.status_code,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=self._parse_retry_after_seconds(response=response),
                )
                continue

            raise UpstreamUnavailable(
                SERVICE_NAME,
                f"HTTP {response.status_code} from catalog after {attempt} attempt(s)",
                status_code=response.status_code,
            )

        raise UpstreamUnavailable(SERVICE_NAME, f"no catalog response after {self._retries} attempt(s)")

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    @staticmethod
    def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
        raw_value = response.headers.get("Retry-After")
        if raw_value is None:
            return None

        raw_value = raw_value.strip()
        try:
            return max(0.0, float(raw_value))
        except ValueError:
            pass

        try:
            parsed = parsedate_to_datetime(raw_value)
        except (TypeError, ValueError):
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        delay_seconds = float((parsed.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds())
        return max(0.0, delay_seconds)

    def _sleep_before_retry(
        self,
        *,
        attempt: int,
        status_code: int | None,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is not None:
            delay = retry_after_seconds
        else:
            delay = min(
                self._max_backoff_seconds,
                self._min_retry_delay_seconds * (2 ** max(attempt - 1, 0)),
            )
            delay += random.uniform(0.0, 0.3)  # noqa: S311

        logger.warning(
            "Retrying catalog request",
            extra={
                "url": self._url,
                "attempt": attempt,
                "max_attempts": self._retries,
                "status_code": status_code,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        time.sleep(delay)
