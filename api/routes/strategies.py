from __future__ import annotations

from dataclasses import replace

from fastapi import APIRouter, Depends, Response

from api.auth import AuthDep
from api.deps import get_config, get_leaderboard, get_store
from api.errors import ApiError
from api.schemas.strategies import (
    ForkNodeResponse,
    ForkRequest,
    ForkResponse,
    StrategyCreate,
    StrategyResponse,
    StrategyUpdate,
    ValidateRequest,
    ValidateResponse,
)
from blockbench.backtest.operations import dump_operations
from blockbench.backtest.validation import validate_strategy
from blockbench.core.config import Config
from blockbench.core.store import SavedStrategy, Store
from blockbench.leaderboard.ranker import LeaderboardService

router = APIRouter(prefix="/strategies", dependencies=[AuthDep])


def _to_response(s: SavedStrategy, warnings: list[str] | None = None) -> StrategyResponse:
    return StrategyResponse(**s.to_dict(), warnings=warnings or [])


@router.get("", response_model=list[StrategyResponse])
def list_strategies(store: Store = Depends(get_store)) -> list[StrategyResponse]:
    return [_to_response(s) for s in store.strategies.list_all()]


@router.post("", response_model=StrategyResponse, status_code=201)
def create_strategy(
    payload: StrategyCreate,
    store: Store = Depends(get_store),
    config: Config = Depends(get_config),
) -> StrategyResponse:
    report = validate_strategy(payload.operations, quote_asset=config.simulation.quote_asset)
    if not report.valid:
        raise ApiError(
            code="strategy.invalid",
            message="; ".join(i.message for i in report.errors),
            status=422,
            errors=[i.message for i in report.errors],
        )
    saved = store.strategies.put(
        SavedStrategy.new(
            name=payload.name,
            operations=dump_operations(payload.operations),
            author=payload.author,
            description=payload.description,
        )
    )
    return _to_response(saved, [i.message for i in report.warnings])


@router.post("/validate", response_model=ValidateResponse)
def validate(payload: ValidateRequest, config: Config = Depends(get_config)) -> ValidateResponse:
    report = validate_strategy(payload.operations, quote_asset=config.simulation.quote_asset)
    return ValidateResponse(**report.to_dict())


@router.get("/{strategy_id}", response_model=StrategyResponse)
def get_strategy(strategy_id: str, store: Store = Depends(get_store)) -> StrategyResponse:
    return _to_response(store.strategies.require(strategy_id))


@router.patch("/{strategy_id}", response_model=StrategyResponse)
def update_strategy(strategy_id: str, payload: StrategyUpdate, store: Store = Depends(get_store)) -> StrategyResponse:
    current = store.strategies.require(strategy_id)
    updated = replace(
        current,
        name=payload.name if payload.name is not None else current.name,
        operations=dump_operations(payload.operations) if payload.operations is not None else current.operations,
        description=payload.description if payload.description is not None else current.description,
    )
    return _to_response(store.strategies.put(updated))


@router.delete("/{strategy_id}", status_code=204)
def delete_strategy(strategy_id: str, store: Store = Depends(get_store)) -> Response:
    if not store.strategies.delete(strategy_id):
        raise ApiError(code="strategy.not_found", message=f"Strategy not found: {strategy_id}", status=404)
    return Response(status_code=204)


@router.post("/{strategy_id}/fork", response_model=ForkResponse, status_code=201)
def fork_strategy(
    strategy_id: str,
    payload: ForkRequest | None = None,
    leaderboard: LeaderboardService = Depends(get_leaderboard),
) -> ForkResponse:
    req = payload or ForkRequest()
    child = leaderboard.fork(strategy_id, new_name=req.name, author=req.author)
    return ForkResponse(
        strategy=_to_response(child),
        fork_of_id=strategy_id,
        parent_fork_count=leaderboard.fork_count(strategy_id),
    )


@router.get("/{strategy_id}/fork-tree", response_model=ForkNodeResponse)
def fork_tree(strategy_id: str, leaderboard: LeaderboardService = Depends(get_leaderboard)) -> ForkNodeResponse:
    tree = leaderboard.fork_tree(strategy_id)
    if tree is None:
        raise ApiError(code="strategy.not_found", message=f"Strategy not found: {strategy_id}", status=404)
    return ForkNodeResponse.model_validate(tree.to_dict())
