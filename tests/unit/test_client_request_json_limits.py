from __future__ import annotations

import httpx
import pytest

from blockbench.core.client import DataClient
from blockbench.core.exceptions import DataUnavailableError


@pytest.mark.anyio
async def test_request_json_schema_mismatch(monkeypatch):
    client = DataClient()

    async def _fake_request(method: str, url: str, **kwargs):
        return httpx.Response(200, json={"ok": True})

    monkeypatch.setattr(client, "request", _fake_request)

    with pytest.raises(httpx.TransportError):
        await client.request_json("GET", "https://example.com", expected=list)


@pytest.mark.anyio
async def test_non_http_scheme_is_blocked():
    client = DataClient()
    try:
        with pytest.raises(httpx.UnsupportedProtocol):
            await client.request("GET", "file:///etc/passwd")
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_graphql_returns_data_object(monkeypatch):
    client = DataClient()
    seen = {}

    async def _fake_request(method: str, url: str, **kwargs):
        seen.update(kwargs["json"])
        return httpx.Response(200, json={"data": {"pools": []}})

    monkeypatch.setattr(client, "request", _fake_request)

    data = await client.graphql("https://example.com/gql", "{ pools { id } }", {"first": 1})
    assert data == {"pools": []}
    assert seen == {"query": "{ pools { id } }", "variables": {"first": 1}}


@pytest.mark.anyio
@pytest.mark.parametrize("body", [{"errors": [{"message": "indexer down"}]}, {"data": None}])
async def test_graphql_in_band_failures(monkeypatch, body):
    client = DataClient()

    async def _fake_request(method: str, url: str, **kwargs):
        return httpx.Response(200, json=body)

    monkeypatch.setattr(client, "request", _fake_request)

    with pytest.raises(DataUnavailableError):
        await client.graphql("https://example.com/gql", "{ x }")
