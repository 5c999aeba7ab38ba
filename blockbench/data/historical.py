"""blockbench.data.historical

Historical data cache: "interpolated value out".

Prefetch once per backtest window, then answer point-in-time questions from
memory for every tick:

- prices: linear interpolation between the sample at-or-before and the
  sample strictly after; one-sided queries clamp to the nearest sample
- rates: nearest sample by absolute time distance, no interpolation
- stable assets: always 1.0, never fetched
- anything missing: per-asset fallback constants

Fetch failures are logged and swallowed here. They surface only as fallback
values; nothing downstream ever sees a provider exception.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from blockbench.core.cache import TTLCache
from blockbench.core.config import Config
from blockbench.core.time import ensure_utc
from blockbench.core.types import Apy, PricePoint, RatePoint, SeriesKind
from blockbench.data.provider import DataProvider

logger = logging.getLogger(__name__)

STABLE_PRICE = 1.0


@dataclass(frozen=True, slots=True)
class _Series:
    """Immutable numpy view of one series. Replaced wholesale, never mutated."""

    times: np.ndarray  # (T,) epoch seconds, ascending
    values: np.ndarray  # (T,) prices or (T, 2) supply/borrow APY

    @property
    def size(self) -> int:
        return int(self.times.shape[0])


def _price_series(points: list[PricePoint]) -> _Series:
    pts = sorted(points, key=lambda p: p.timestamp)
    return _Series(
        times=np.array([ensure_utc(p.timestamp).timestamp() for p in pts], dtype=np.float64),
        values=np.array([p.price for p in pts], dtype=np.float64),
    )


def _rate_series(points: list[RatePoint]) -> _Series:
    pts = sorted(points, key=lambda p: p.timestamp)
    return _Series(
        times=np.array([ensure_utc(p.timestamp).timestamp() for p in pts], dtype=np.float64),
        values=np.array([(p.supply_apy, p.borrow_apy) for p in pts], dtype=np.float64).reshape(-1, 2),
    )


def interpolate(times: np.ndarray, values: np.ndarray, t: float) -> float:
    """Linear interpolation with clamping at both ends.

    ``times`` must be ascending and non-empty.
    """

    n = times.shape[0]
    # index of the first sample strictly after t
    idx = int(np.searchsorted(times, t, side="right"))
    if idx == 0:
        return float(values[0])
    if idx >= n:
        return float(values[n - 1])

    t0, t1 = float(times[idx - 1]), float(times[idx])
    v0, v1 = float(values[idx - 1]), float(values[idx])
    ratio = (t - t0) / (t1 - t0)
    return v0 + ratio * (v1 - v0)


def nearest(times: np.ndarray, values: np.ndarray, t: float) -> np.ndarray:
    """Sample closest in time; ties go to the earlier sample."""

    idx = int(np.argmin(np.abs(times - t)))
    return values[idx]


# (asset, window start, window end)
_SeriesKey = tuple[str, datetime, datetime]


def _covering(store: Mapping[_SeriesKey, _Series], asset: str, t: datetime) -> _Series | None:
    """Series for ``asset`` whose window contains ``t``; else the latest one stored."""

    found = None
    for (name, start, end), series in store.items():
        if name != asset or series.size == 0:
            continue
        if start <= t <= end:
            return series
        found = series
    return found


@dataclass(frozen=True, slots=True)
class MarketView:
    """Point-in-time queries pinned to one prefetched window.

    Holds the series snapshots that existed when the view was taken. A later
    prefetch for any other window cannot change what this view returns.
    """

    cache: HistoricalDataCache
    start: datetime
    end: datetime
    prices: Mapping[str, _Series]
    rates: Mapping[str, _Series]

    def price_at(self, asset: str, ts: datetime) -> float:
        a = asset.upper()
        return self.cache._price_from(a, self.prices.get(a), ts)

    def prices_at(self, assets: Iterable[str], ts: datetime) -> dict[str, float]:
        return {a.upper(): self.price_at(a, ts) for a in assets}

    def apy_at(self, asset: str, ts: datetime) -> Apy:
        a = asset.upper()
        return self.cache._apy_from(a, self.rates.get(a), ts)


class HistoricalDataCache:
    """Price and lending-rate series keyed by asset and prefetch window.

    Safe to share across concurrent simulations. Each window's series are
    stored under their own key, so runs over different windows never see each
    other's data. Writers swap in a new mapping under a lock; readers take the
    current mapping without locking.
    """

    def __init__(
        self,
        provider: DataProvider,
        *,
        stable_assets: Iterable[str] = ("USDC", "USDT", "DAI"),
        lending_assets: Iterable[str] = ("USDC", "WETH", "DAI"),
        fallback_prices: Mapping[str, float] | None = None,
        fallback_apy: Mapping[str, Apy] | None = None,
        default_fallback_price: float = 1.0,
        default_fallback_apy: Apy = Apy(supply_apy=3.0, borrow_apy=5.0),
        ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.stable_assets = frozenset(a.upper() for a in stable_assets)
        self.lending_assets = tuple(a.upper() for a in lending_assets)
        self.fallback_prices = {k.upper(): float(v) for k, v in (fallback_prices or {}).items()}
        self.fallback_apy = {k.upper(): v for k, v in (fallback_apy or {}).items()}
        self.default_fallback_price = float(default_fallback_price)
        self.default_fallback_apy = default_fallback_apy

        self._responses = TTLCache(default_ttl_s=ttl_s, clock=clock)
        self._prices: dict[_SeriesKey, _Series] = {}
        self._rates: dict[_SeriesKey, _Series] = {}
        self._write_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, provider: DataProvider) -> HistoricalDataCache:
        dc = config.data
        return cls(
            provider,
            stable_assets=dc.stable_assets,
            lending_assets=dc.lending_assets,
            fallback_prices=dc.fallback_prices,
            fallback_apy={k: Apy(supply_apy=v.supply, borrow_apy=v.borrow) for k, v in dc.fallback_apy.items()},
            default_fallback_price=dc.default_fallback_price,
            default_fallback_apy=Apy(supply_apy=dc.default_fallback_apy.supply, borrow_apy=dc.default_fallback_apy.borrow),
            ttl_s=dc.cache_ttl_seconds,
        )

    def is_stable(self, asset: str) -> bool:
        return asset.upper() in self.stable_assets

    def _store(self, kind: SeriesKind, key: _SeriesKey, series: _Series) -> None:
        # copy-on-write: readers may be iterating the current mapping
        with self._write_lock:
            if kind == SeriesKind.PRICE:
                self._prices = {**self._prices, key: series}
            else:
                self._rates = {**self._rates, key: series}

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    async def prefetch(
        self,
        start: datetime,
        end: datetime,
        assets: Iterable[str],
        *,
        rate_assets: Iterable[str] = (),
    ) -> MarketView:
        """Best-effort fetch of every series the window needs.

        Price series for each non-stable asset; rate series for the configured
        lending assets plus ``rate_assets``. A failure for one asset never
        affects the others. Returns a view pinned to this window.
        """

        start_u, end_u = ensure_utc(start), ensure_utc(end)
        price_assets = sorted({a.upper() for a in assets} - self.stable_assets)
        rate_set = sorted(set(self.lending_assets) | {a.upper() for a in rate_assets})

        logger.info(
            "historical_prefetch_started",
            extra={"price_assets": price_assets, "rate_assets": rate_set, "start": start_u.isoformat(), "end": end_u.isoformat()},
        )
        await asyncio.gather(
            *(self._prefetch_prices(a, start_u, end_u) for a in price_assets),
            *(self._prefetch_rates(a, start_u, end_u) for a in rate_set),
        )
        return self.view(start_u, end_u)

    async def _prefetch_prices(self, asset: str, start: datetime, end: datetime) -> None:
        key = (SeriesKind.PRICE, asset, start, end)
        points = self._responses.get(key)
        if points is None:
            try:
                points = await self.provider.fetch_prices(asset, start, end)
            except Exception as e:  # noqa: BLE001 - data-unavailable boundary
                logger.warning("historical_price_fetch_failed", extra={"asset": asset, "error": f"{type(e).__name__}: {e}"})
                return
            self._responses.set(key, points)

        series = _price_series(points)
        self._store(SeriesKind.PRICE, (asset, start, end), series)
        logger.debug("historical_prices_cached", extra={"asset": asset, "points": series.size})

    async def _prefetch_rates(self, asset: str, start: datetime, end: datetime) -> None:
        key = (SeriesKind.RATE, asset, start, end)
        points = self._responses.get(key)
        if points is None:
            try:
                points = await self.provider.fetch_rates(asset, start, end)
            except Exception as e:  # noqa: BLE001 - data-unavailable boundary
                logger.warning("historical_rate_fetch_failed", extra={"asset": asset, "error": f"{type(e).__name__}: {e}"})
                return
            self._responses.set(key, points)

        series = _rate_series(points)
        self._store(SeriesKind.RATE, (asset, start, end), series)
        logger.debug("historical_rates_cached", extra={"asset": asset, "points": series.size})

    def view(self, start: datetime, end: datetime) -> MarketView:
        """Snapshot of whatever has been prefetched for exactly this window."""

        s, e = ensure_utc(start), ensure_utc(end)
        prices, rates = self._prices, self._rates
        return MarketView(
            cache=self,
            start=s,
            end=e,
            prices={a: v for (a, ks, ke), v in prices.items() if ks == s and ke == e},
            rates={a: v for (a, ks, ke), v in rates.items() if ks == s and ke == e},
        )

    # ------------------------------------------------------------------
    # Point-in-time queries
    # ------------------------------------------------------------------

    def fallback_price(self, asset: str) -> float:
        return self.fallback_prices.get(asset.upper(), self.default_fallback_price)

    def _price_from(self, asset: str, series: _Series | None, ts: datetime) -> float:
        if asset in self.stable_assets:
            return STABLE_PRICE
        if series is None or series.size == 0:
            return self.fallback_price(asset)
        return interpolate(series.times, series.values, ensure_utc(ts).timestamp())

    def _apy_from(self, asset: str, series: _Series | None, ts: datetime) -> Apy:
        if series is None or series.size == 0:
            return self.fallback_apy.get(asset, self.default_fallback_apy)
        row = nearest(series.times, series.values, ensure_utc(ts).timestamp())
        return Apy(supply_apy=float(row[0]), borrow_apy=float(row[1]))

    def price_at(self, asset: str, ts: datetime) -> float:
        """Price from any prefetched window covering ``ts``.

        Simulations read through a :class:`MarketView` instead, which is pinned
        to their own window.
        """

        a = asset.upper()
        return self._price_from(a, _covering(self._prices, a, ensure_utc(ts)), ts)

    def prices_at(self, assets: Iterable[str], ts: datetime) -> dict[str, float]:
        return {a.upper(): self.price_at(a, ts) for a in assets}

    def apy_at(self, asset: str, ts: datetime) -> Apy:
        a = asset.upper()
        return self._apy_from(a, _covering(self._rates, a, ensure_utc(ts)), ts)

    def has_series(self, asset: str, kind: SeriesKind = SeriesKind.PRICE) -> bool:
        store = self._prices if kind == SeriesKind.PRICE else self._rates
        a = asset.upper()
        return any(name == a and series.size > 0 for (name, _, _), series in store.items())

    def clear(self) -> None:
        with self._write_lock:
            self._responses.clear()
            self._prices = {}
            self._rates = {}
