from __future__ import annotations

import pytest

from tests.unit._api_test_client import make_client


@pytest.fixture()
def secured_app(api_app, test_config):
    api_app.state.config = test_config.model_copy(
        update={"api": test_config.api.model_copy(update={"auth_token": "s3cret"})}
    )
    return api_app


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("headers", "code"),
    [
        ({}, "auth.missing_token"),
        ({"Authorization": "Token s3cret"}, "auth.invalid_header"),
        ({"Authorization": "Bearer wrong"}, "auth.invalid_token"),
    ],
)
async def test_protected_routes_reject_bad_credentials(secured_app, headers, code):
    async with make_client(secured_app) as ac:
        r = await ac.get("/api/v1/strategies", headers=headers)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == code


@pytest.mark.anyio
async def test_valid_token_is_accepted_and_health_is_open(secured_app):
    async with make_client(secured_app) as ac:
        r = await ac.get("/api/v1/strategies", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200
        assert r.json() == []

        r = await ac.get("/api/v1/health")
        assert r.status_code == 200


@pytest.mark.anyio
async def test_config_route_redacts_token(secured_app):
    async with make_client(secured_app) as ac:
        r = await ac.get("/api/v1/config", headers={"Authorization": "Bearer s3cret"})
        assert r.status_code == 200
        assert r.json()["api"]["auth_token"] == "***"
