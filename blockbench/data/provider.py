"""blockbench.data.provider

Data providers: "time-stamped numeric series in".

The cache only needs two calls, both returning ascending series for a
window. Anything that can answer them is a provider:

- SubgraphProvider: Uniswap v3 pool day data + Aave v3 reserve history
- CsvProvider: one file per asset on disk
- StaticProvider: in-memory series (tests, notebooks)

Providers raise on failure. Deciding what a failure means is the cache's job.
"""

from __future__ import annotations

import csv
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from blockbench.core.client import ClientConfig, DataClient
from blockbench.core.config import Config
from blockbench.core.exceptions import DataUnavailableError
from blockbench.core.time import ensure_utc, parse_dt
from blockbench.core.types import PricePoint, RatePoint

RAY = 10**27

POOL_DAY_DATA_QUERY = """
query PoolDayData($pool: String!, $start: Int!, $end: Int!) {
  poolDayDatas(
    first: 1000
    orderBy: date
    orderDirection: asc
    where: { pool: $pool, date_gte: $start, date_lte: $end }
  ) {
    date
    token0Price
    token1Price
  }
}
"""

RESERVE_HISTORY_QUERY = """
query ReserveHistory($symbol: String!, $start: Int!, $end: Int!) {
  reserveParamsHistoryItems(
    first: 1000
    orderBy: timestamp
    orderDirection: asc
    where: { reserve_: { symbol: $symbol }, timestamp_gte: $start, timestamp_lte: $end }
  ) {
    timestamp
    liquidityRate
    variableBorrowRate
  }
}
"""


@runtime_checkable
class DataProvider(Protocol):
    async def fetch_prices(self, asset: str, start: datetime, end: datetime) -> list[PricePoint]: ...

    async def fetch_rates(self, asset: str, start: datetime, end: datetime) -> list[RatePoint]: ...


def _in_window(ts: datetime, start: datetime, end: datetime) -> bool:
    return ensure_utc(start) <= ts <= ensure_utc(end)


class StaticProvider:
    """Serves series handed to it up front.

    Assets without a series raise :class:`DataUnavailableError`, the same way a
    real provider fails for an unknown pool.
    """

    def __init__(
        self,
        prices: Mapping[str, Iterable[PricePoint]] | None = None,
        rates: Mapping[str, Iterable[RatePoint]] | None = None,
        *,
        clip_to_window: bool = False,
    ) -> None:
        self._prices = {k.upper(): sorted(v, key=lambda p: p.timestamp) for k, v in (prices or {}).items()}
        self._rates = {k.upper(): sorted(v, key=lambda p: p.timestamp) for k, v in (rates or {}).items()}
        self._clip = clip_to_window
        self.calls: list[tuple[str, str]] = []

    async def fetch_prices(self, asset: str, start: datetime, end: datetime) -> list[PricePoint]:
        self.calls.append(("price", asset.upper()))
        series = self._prices.get(asset.upper())
        if series is None:
            raise DataUnavailableError(f"no price series for {asset}")
        if self._clip:
            return [p for p in series if _in_window(p.timestamp, start, end)]
        return list(series)

    async def fetch_rates(self, asset: str, start: datetime, end: datetime) -> list[RatePoint]:
        self.calls.append(("rate", asset.upper()))
        series = self._rates.get(asset.upper())
        if series is None:
            raise DataUnavailableError(f"no rate series for {asset}")
        if self._clip:
            return [p for p in series if _in_window(p.timestamp, start, end)]
        return list(series)


class CsvProvider:
    """Reads ``<ASSET>.csv`` (timestamp, price) and ``<ASSET>_rates.csv``
    (timestamp, supply_apy, borrow_apy) from a directory.

    Timestamps may be ISO-8601 or unix seconds. Rows outside the requested
    window are dropped.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _rows(self, path: Path, required: tuple[str, ...]) -> list[dict[str, str]]:
        if not path.exists():
            raise DataUnavailableError(f"series file not found: {path}")
        rows: list[dict[str, str]] = []
        with path.open("r", encoding="utf-8") as f:
            r = csv.DictReader(f)
            for row in r:
                rows.append({k.strip(): (v.strip() if isinstance(v, str) else "") for k, v in row.items() if k is not None})
        if rows:
            missing = [c for c in required if c not in rows[0]]
            if missing:
                raise DataUnavailableError(f"{path.name} missing required column(s): {', '.join(missing)}")
        return rows

    async def fetch_prices(self, asset: str, start: datetime, end: datetime) -> list[PricePoint]:
        rows = self._rows(self.root / f"{asset.upper()}.csv", ("timestamp", "price"))
        out: list[PricePoint] = []
        for row in rows:
            if not row["price"]:
                continue
            ts = parse_dt(row["timestamp"])
            if _in_window(ts, start, end):
                out.append(PricePoint(timestamp=ts, price=float(row["price"])))
        out.sort(key=lambda p: p.timestamp)
        return out

    async def fetch_rates(self, asset: str, start: datetime, end: datetime) -> list[RatePoint]:
        rows = self._rows(self.root / f"{asset.upper()}_rates.csv", ("timestamp", "supply_apy", "borrow_apy"))
        out: list[RatePoint] = []
        for row in rows:
            ts = parse_dt(row["timestamp"])
            if _in_window(ts, start, end):
                out.append(
                    RatePoint(timestamp=ts, supply_apy=float(row["supply_apy"] or 0.0), borrow_apy=float(row["borrow_apy"] or 0.0))
                )
        out.sort(key=lambda p: p.timestamp)
        return out


class SubgraphProvider:
    """Historical prices from Uniswap v3 pool day data, rates from Aave v3.

    ``token_pools`` maps an asset to the pool quoting it against a stable.
    The stable is expected as token0 (price read from ``token0Price``); append
    ``:1`` to the pool id when the asset is token0 instead.
    """

    def __init__(
        self,
        client: DataClient,
        *,
        uniswap_url: str,
        aave_url: str,
        token_pools: Mapping[str, str],
    ) -> None:
        self.client = client
        self.uniswap_url = uniswap_url
        self.aave_url = aave_url
        self.token_pools = {k.upper(): v for k, v in token_pools.items()}

    async def aclose(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _epoch(dt: datetime) -> int:
        return int(ensure_utc(dt).timestamp())

    async def fetch_prices(self, asset: str, start: datetime, end: datetime) -> list[PricePoint]:
        mapping = self.token_pools.get(asset.upper())
        if not mapping:
            raise DataUnavailableError(f"no pool mapping for {asset}")
        pool, _, side = mapping.partition(":")
        field = "token1Price" if side == "1" else "token0Price"

        data = await self.client.graphql(
            self.uniswap_url,
            POOL_DAY_DATA_QUERY,
            {"pool": pool.lower(), "start": self._epoch(start), "end": self._epoch(end)},
        )
        rows = data.get("poolDayDatas") or []
        out = [
            PricePoint(timestamp=datetime.fromtimestamp(int(r["date"]), tz=UTC), price=float(r[field]))
            for r in rows
            if isinstance(r, dict) and r.get(field) not in (None, "")
        ]
        out.sort(key=lambda p: p.timestamp)
        return out

    async def fetch_rates(self, asset: str, start: datetime, end: datetime) -> list[RatePoint]:
        data = await self.client.graphql(
            self.aave_url,
            RESERVE_HISTORY_QUERY,
            {"symbol": asset.upper(), "start": self._epoch(start), "end": self._epoch(end)},
        )
        rows = data.get("reserveParamsHistoryItems") or []
        out = [
            RatePoint(
                timestamp=datetime.fromtimestamp(int(r["timestamp"]), tz=UTC),
                supply_apy=float(r["liquidityRate"]) / RAY * 100.0,
                borrow_apy=float(r["variableBorrowRate"]) / RAY * 100.0,
            )
            for r in rows
            if isinstance(r, dict)
        ]
        out.sort(key=lambda p: p.timestamp)
        return out


def build_provider(config: Config, *, client: DataClient | None = None) -> DataProvider:
    """Provider selected by ``config.data.provider``."""

    dc = config.data
    if dc.provider == "csv":
        return CsvProvider(dc.csv_dir)
    if dc.provider == "static":
        return StaticProvider()
    client = client or DataClient(
        ClientConfig(rate_limit_rps=dc.rate_limit_rps, max_retries=dc.max_retries, timeout_s=dc.timeout_s)
    )
    return SubgraphProvider(
        client,
        uniswap_url=dc.uniswap_subgraph_url,
        aave_url=dc.aave_subgraph_url,
        token_pools=dc.token_pools,
    )
