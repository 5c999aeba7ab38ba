from __future__ import annotations

import pytest

from blockbench.core.store import BacktestRecord, SavedStrategy
from blockbench.core.time import utc_now
from tests.unit._api_test_client import make_client

OPS = [{"kind": "SUPPLY", "asset": "USDC", "amount": 100.0}]


def _seed(store, name: str, sharpe: float | None) -> SavedStrategy:
    s = store.strategies.put(SavedStrategy.new(name=name, operations=OPS))
    if sharpe is not None:
        store.backtests.put(
            BacktestRecord(
                id=f"bt-{name}",
                strategy_id=s.id,
                created_at=utc_now(),
                config={},
                metrics={"sharpe_ratio": sharpe, "total_return_pct": 4.0, "total_trades": 2},
                final_equity=10_400.0,
            )
        )
    return s


@pytest.mark.anyio
async def test_leaderboard_ranks_and_limits(api_app, store):
    _seed(store, "slow", 0.4)
    _seed(store, "fast", 2.0)
    _seed(store, "untested", None)
    _seed(store, "mid", 1.1)

    async with make_client(api_app) as ac:
        r = await ac.get("/api/v1/leaderboard")
        assert r.status_code == 200
        board = r.json()
        assert [e["strategy"]["name"] for e in board] == ["fast", "mid", "slow", "untested"]
        assert [e["medal"] for e in board] == ["#1", "#2", "#3", None]
        assert board[0]["total_return"] == 4.0
        assert board[-1]["sharpe_ratio"] == 0.0

        r = await ac.get("/api/v1/leaderboard", params={"limit": 2})
        assert len(r.json()) == 2

        r = await ac.get("/api/v1/leaderboard", params={"limit": 0})
        assert r.status_code == 422


@pytest.mark.anyio
async def test_leaderboard_shows_fork_counts(api_app, store):
    parent = _seed(store, "parent", 1.0)
    async with make_client(api_app) as ac:
        r = await ac.post(f"/api/v1/strategies/{parent.id}/fork")
        child_id = r.json()["strategy"]["id"]

        board = (await ac.get("/api/v1/leaderboard")).json()
        by_id = {e["strategy"]["id"]: e for e in board}
        assert by_id[parent.id]["fork_count"] == 1
        assert by_id[child_id]["parent_id"] == parent.id
