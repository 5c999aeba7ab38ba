from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import ValidationError

from api.auth import AuthDep
from api.deps import get_config
from api.errors import ApiError
from blockbench.core.config import Config

router = APIRouter(prefix="/config", dependencies=[AuthDep])


def _redacted(config: Config) -> dict[str, Any]:
    out = config.model_dump(mode="json")
    if out.get("api", {}).get("auth_token"):
        out["api"]["auth_token"] = "***"
    return out


@router.get("")
def get_current_config(config: Config = Depends(get_config)) -> dict[str, Any]:
    return _redacted(config)


@router.post("/validate")
def validate_config(payload: dict[str, Any]) -> dict[str, Any]:
    try:
        cfg = Config(**payload)
    except ValidationError as e:
        raise ApiError(code="config.invalid", message=f"Invalid config: {e.error_count()} error(s)", status=400) from e
    return {"ok": True, "config": _redacted(cfg)}
