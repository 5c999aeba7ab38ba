from __future__ import annotations

import os
import time

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from api.deps import get_store
from blockbench import __version__
from blockbench.core.store import Store

router = APIRouter()


class HealthResponse(BaseModel):
    version: str
    uptime_seconds: float
    db_size_bytes: int
    strategies: int


@router.get("/health", response_model=HealthResponse)
def health(request: Request, store: Store = Depends(get_store)) -> HealthResponse:
    started_at = float(getattr(request.app.state, "started_at", time.monotonic()))
    uptime = time.monotonic() - started_at

    db_size = 0
    if store.db_path.exists():
        try:
            db_size = os.path.getsize(store.db_path)
        except OSError:
            db_size = 0

    return HealthResponse(
        version=__version__,
        uptime_seconds=uptime,
        db_size_bytes=db_size,
        strategies=len(store.strategies.list_all()),
    )
