from __future__ import annotations

import pytest

from tests.unit._api_test_client import make_client

OPS = [
    {"kind": "SUPPLY", "asset": "usdc", "amount": 1000},
    {"kind": "SWAP", "token_in": "USDC", "token_out": "WETH", "amount": 500, "slippage": 8},
]


async def _create(ac, name="Carry", ops=None, **kw):
    r = await ac.post("/api/v1/strategies", json={"name": name, "operations": ops or OPS, **kw})
    assert r.status_code == 201, r.text
    return r.json()


@pytest.mark.anyio
async def test_create_get_list_update_delete(api_app):
    async with make_client(api_app) as ac:
        created = await _create(ac, author="alice")
        sid = created["id"]
        assert created["operations"][0]["asset"] == "USDC"
        assert any("unusually high" in w for w in created["warnings"])

        r = await ac.get(f"/api/v1/strategies/{sid}")
        assert r.status_code == 200
        assert r.json()["author"] == "alice"

        r = await ac.get("/api/v1/strategies")
        assert [s["id"] for s in r.json()] == [sid]

        r = await ac.patch(f"/api/v1/strategies/{sid}", json={"name": "Carry v2"})
        assert r.status_code == 200
        assert r.json()["name"] == "Carry v2"
        assert r.json()["operations"] == created["operations"]

        r = await ac.delete(f"/api/v1/strategies/{sid}")
        assert r.status_code == 204

        r = await ac.get(f"/api/v1/strategies/{sid}")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "strategy.not_found"

        r = await ac.delete(f"/api/v1/strategies/{sid}")
        assert r.status_code == 404


@pytest.mark.anyio
async def test_create_rejects_invalid_strategies(api_app):
    async with make_client(api_app) as ac:
        r = await ac.post("/api/v1/strategies", json={"name": "Empty", "operations": []})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "strategy.invalid"

        r = await ac.post(
            "/api/v1/strategies",
            json={"name": "Bad", "operations": [{"kind": "SWAP", "token_in": "USDC", "amount": 1}]},
        )
        assert r.status_code == 422


@pytest.mark.anyio
async def test_validate_endpoint_does_not_store(api_app, store):
    async with make_client(api_app) as ac:
        r = await ac.post(
            "/api/v1/strategies/validate",
            json={"operations": [{"kind": "SWAP", "token_in": "WETH", "token_out": "WETH", "amount": 1}]},
        )
        assert r.status_code == 200
        body = r.json()
        assert body["valid"] is False
        assert body["errors"][0]["index"] == 0
    assert store.strategies.list_all() == []


@pytest.mark.anyio
async def test_fork_and_fork_tree(api_app):
    async with make_client(api_app) as ac:
        parent = await _create(ac, author="alice")

        r = await ac.post(f"/api/v1/strategies/{parent['id']}/fork")
        assert r.status_code == 201
        fork = r.json()
        assert fork["strategy"]["name"] == "Carry (Fork)"
        assert fork["strategy"]["author"] == "You"
        assert fork["fork_of_id"] == parent["id"]
        assert fork["parent_fork_count"] == 1

        r = await ac.post(f"/api/v1/strategies/{parent['id']}/fork", json={"name": "Mine", "author": "bob"})
        assert r.json()["parent_fork_count"] == 2

        r = await ac.get(f"/api/v1/strategies/{parent['id']}/fork-tree")
        assert r.status_code == 200
        tree = r.json()
        assert tree["author"] == "alice"
        assert [c["name"] for c in tree["children"]] == ["Carry (Fork)", "Mine"]

        r = await ac.post("/api/v1/strategies/ghost/fork")
        assert r.status_code == 404
        r = await ac.get("/api/v1/strategies/ghost/fork-tree")
        assert r.status_code == 404
