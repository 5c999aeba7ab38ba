from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from api.auth import AuthDep
from api.deps import get_leaderboard
from api.schemas.leaderboard import RankedEntryResponse
from blockbench.leaderboard.ranker import LeaderboardService

router = APIRouter(prefix="/leaderboard", dependencies=[AuthDep])


@router.get("", response_model=list[RankedEntryResponse])
def leaderboard(
    limit: int = Query(default=10, ge=1, le=500),
    service: LeaderboardService = Depends(get_leaderboard),
) -> list[RankedEntryResponse]:
    return [RankedEntryResponse.model_validate(e.to_dict()) for e in service.top_strategies(limit)]
