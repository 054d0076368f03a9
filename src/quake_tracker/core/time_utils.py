from __future__ import annotations

import re
from datetime import UTC, datetime

_FRACTION_RE = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_utc_datetime(value: str) -> datetime:
    """Parse an ISO 8601 timestamp and normalize it to UTC.

    Naive values are taken as UTC. Fractional seconds may carry any number of
    digits; they are padded or truncated to microseconds.
    """
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = normalized[:-1] + "+00:00"
    normalized = _FRACTION_RE.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), normalized, count=1)

    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_utc(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
