from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from fastapi import Request

from blockbench.backtest.engine import StrategyExecutionEngine
from blockbench.backtest.runner import build_engine
from blockbench.core.config import Config
from blockbench.core.store import Store
from blockbench.leaderboard.ranker import LeaderboardService


@lru_cache
def _repo_root() -> Path:
    # Assume running from repo root (uvicorn started there). Fallback to parent of this file.
    here = Path(__file__).resolve()
    for p in [Path.cwd(), here.parent.parent]:
        if (p / "config" / "default.yaml").exists():
            return p
    return Path.cwd()


@lru_cache
def _load_config() -> Config:
    return Config.from_repo_defaults(_repo_root())


def open_store(config: Config) -> Store:
    db_path = config.db_path if config.db_path.is_absolute() else _repo_root() / config.db_path
    return Store(db_path, max_backtests_per_strategy=config.store.max_backtests_per_strategy)


def get_config(request: Request) -> Config:
    cfg = getattr(request.app.state, "config", None)
    return cfg or _load_config()


def get_store(request: Request) -> Store:
    store = getattr(request.app.state, "store", None)
    if store is None:
        store = request.app.state.store = open_store(get_config(request))
    return store


def get_engine(request: Request) -> StrategyExecutionEngine:
    # one engine (and so one historical cache) per app; runs share it
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = request.app.state.engine = build_engine(get_config(request))
    return engine


def get_leaderboard(request: Request) -> LeaderboardService:
    return LeaderboardService(get_store(request))
