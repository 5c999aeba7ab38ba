from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from blockbench.core.client import ClientConfig, DataClient
from blockbench.core.exceptions import DataUnavailableError
from blockbench.data.provider import RAY, CsvProvider, StaticProvider, SubgraphProvider, build_provider
from tests.unit._series import day, prices


def _client(handler) -> DataClient:
    return DataClient(ClientConfig(rate_limit_rps=1000.0, max_retries=0), transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_static_provider_unknown_asset_raises():
    p = StaticProvider(prices={"WETH": prices(1.0)})
    with pytest.raises(DataUnavailableError):
        await p.fetch_prices("WBTC", day(0), day(1))


@pytest.mark.anyio
async def test_static_provider_clips_to_window():
    p = StaticProvider(prices={"WETH": prices(1.0, 2.0, 3.0, 4.0)}, clip_to_window=True)
    out = await p.fetch_prices("weth", day(1), day(2))
    assert [pt.price for pt in out] == [2.0, 3.0]


@pytest.mark.anyio
async def test_csv_provider_reads_prices_and_rates(tmp_path: Path):
    (tmp_path / "WETH.csv").write_text(
        "timestamp,price\n2024-01-03T00:00:00Z,2100\n2024-01-01T00:00:00Z,2000\n2024-02-01T00:00:00Z,9999\n"
    )
    (tmp_path / "USDC_rates.csv").write_text(f"timestamp,supply_apy,borrow_apy\n{int(day(0).timestamp())},3.1,5.0\n")

    p = CsvProvider(tmp_path)
    pts = await p.fetch_prices("WETH", day(0), day(5))
    assert [pt.price for pt in pts] == [2000.0, 2100.0]

    rates = await p.fetch_rates("usdc", day(0), day(5))
    assert rates[0].supply_apy == 3.1
    assert rates[0].borrow_apy == 5.0


@pytest.mark.anyio
async def test_csv_provider_missing_file_or_column(tmp_path: Path):
    p = CsvProvider(tmp_path)
    with pytest.raises(DataUnavailableError):
        await p.fetch_prices("WETH", day(0), day(1))

    (tmp_path / "WETH.csv").write_text("ts,close\n1,2\n")
    with pytest.raises(DataUnavailableError, match="missing required column"):
        await p.fetch_prices("WETH", day(0), day(1))


@pytest.mark.anyio
async def test_subgraph_provider_prices_from_pool_day_data():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        rows = [
            {"date": int(day(0).timestamp()), "token0Price": "2000.5", "token1Price": "0.0005"},
            {"date": int(day(1).timestamp()), "token0Price": "2010", "token1Price": "0.0004975"},
        ]
        return httpx.Response(200, json={"data": {"poolDayDatas": rows}})

    client = _client(handler)
    p = SubgraphProvider(client, uniswap_url="https://uni.test", aave_url="https://aave.test", token_pools={"weth": "0xABC"})
    out = await p.fetch_prices("WETH", day(0), day(1))
    await p.aclose()

    assert [pt.price for pt in out] == [2000.5, 2010.0]
    assert seen["variables"]["pool"] == "0xabc"
    assert seen["variables"]["start"] == int(day(0).timestamp())


@pytest.mark.anyio
async def test_subgraph_provider_token1_side_and_missing_pool():
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [{"date": int(day(0).timestamp()), "token0Price": "0.0005", "token1Price": "2000"}]
        return httpx.Response(200, json={"data": {"poolDayDatas": rows}})

    p = SubgraphProvider(_client(handler), uniswap_url="https://u.test", aave_url="https://a.test", token_pools={"WETH": "0xabc:1"})
    out = await p.fetch_prices("WETH", day(0), day(1))
    assert out[0].price == 2000.0

    with pytest.raises(DataUnavailableError):
        await p.fetch_prices("WBTC", day(0), day(1))
    await p.aclose()


@pytest.mark.anyio
async def test_subgraph_provider_rates_convert_from_ray():
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [
            {
                "timestamp": int(day(0).timestamp()),
                "liquidityRate": str(35 * RAY // 1000),
                "variableBorrowRate": str(52 * RAY // 1000),
            }
        ]
        return httpx.Response(200, json={"data": {"reserveParamsHistoryItems": rows}})

    p = SubgraphProvider(_client(handler), uniswap_url="https://u.test", aave_url="https://a.test", token_pools={})
    out = await p.fetch_rates("USDC", day(0), day(1))
    await p.aclose()

    assert out[0].supply_apy == pytest.approx(3.5)
    assert out[0].borrow_apy == pytest.approx(5.2)


@pytest.mark.anyio
async def test_graphql_errors_become_data_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "indexer unavailable"}]})

    client = _client(handler)
    with pytest.raises(DataUnavailableError, match="indexer unavailable"):
        await client.graphql("https://u.test", "{ x }")
    await client.aclose()


@pytest.mark.anyio
async def test_client_rejects_non_http_urls():
    client = _client(lambda r: httpx.Response(200, json={}))
    with pytest.raises(httpx.UnsupportedProtocol):
        await client.request("GET", "file:///etc/passwd")
    await client.aclose()


def test_build_provider_follows_config(test_config):
    assert isinstance(build_provider(test_config), StaticProvider)

    csv_cfg = test_config.model_copy(update={"data": test_config.data.model_copy(update={"provider": "csv"})})
    assert isinstance(build_provider(csv_cfg), CsvProvider)
