"""blockbench.core.time

The only time helper surface in the codebase.

Simulation time is always aware UTC. Naive inputs are assumed to be UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

YEAR = timedelta(days=365)
DAY = timedelta(days=1)


def utc_now() -> datetime:
    """Return an aware UTC datetime."""

    return datetime.now(tz=UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 string (or a bare unix timestamp) into aware UTC.

    Accepts:
    - `Z` suffix
    - explicit offsets
    - naive timestamps (assumed UTC)
    - integer / float seconds since the epoch

    Raises:
        ValueError: if parsing fails.
    """

    v = value.strip()
    try:
        return datetime.fromtimestamp(float(v), tz=UTC)
    except ValueError:
        pass

    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(v))


def parse_interval(value: str) -> timedelta:
    """Parse a compact duration such as ``30m``, ``4h``, ``1d`` or ``1w``."""

    v = value.strip().lower()
    units = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}
    if len(v) < 2 or v[-1] not in units:
        raise ValueError(f"invalid interval: {value!r}")
    return timedelta(**{units[v[-1]]: float(v[:-1])})


def tick_times(start: datetime, end: datetime, step: timedelta) -> list[datetime]:
    """Discrete timeline ``start, start+step, ...`` up to and including ``end``."""

    if step <= timedelta(0):
        raise ValueError("step must be positive")
    out: list[datetime] = []
    t = ensure_utc(start)
    stop = ensure_utc(end)
    while t <= stop:
        out.append(t)
        t = t + step
    return out


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier) / DAY
