"""blockbench.leaderboard.ranker

Leaderboard and fork provenance.

The ranker is pure: it takes a snapshot (strategies, their backtest records,
their fork records) and returns views. It never reads or writes storage.
``LeaderboardService`` is the thin layer that pulls the snapshot out of the
store and pushes forks back in.

Ranking: best backtest per strategy by Sharpe; strategies sorted by that
Sharpe, descending; equal Sharpe keeps listing (creation) order. A strategy
that has never been backtested ranks with zeros.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from blockbench.core.store import BacktestRecord, ForkRecord, SavedStrategy, Store

logger = logging.getLogger(__name__)

MEDALS = ("#1", "#2", "#3")
DEFAULT_FORK_AUTHOR = "You"
UNKNOWN_AUTHOR = "Unknown"


@dataclass(frozen=True, slots=True)
class RankedEntry:
    strategy: SavedStrategy
    rank: int
    sharpe_ratio: float
    total_return: float  # percent
    max_drawdown: float  # percent
    win_rate: float
    total_trades: int
    fork_count: int
    parent_id: str | None
    medal: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.to_dict(),
            "rank": self.rank,
            "sharpe_ratio": self.sharpe_ratio,
            "total_return": self.total_return,
            "max_drawdown": self.max_drawdown,
            "win_rate": self.win_rate,
            "total_trades": self.total_trades,
            "fork_count": self.fork_count,
            "parent_id": self.parent_id,
            "medal": self.medal,
        }


@dataclass(slots=True)
class ForkNode:
    id: str
    name: str
    author: str
    sharpe_ratio: float
    children: list[ForkNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "author": self.author,
            "sharpe_ratio": self.sharpe_ratio,
            "children": [c.to_dict() for c in self.children],
        }

    def size(self) -> int:
        return 1 + sum(c.size() for c in self.children)


def _metric(record: BacktestRecord | None, name: str) -> float:
    if record is None:
        return 0.0
    v = record.metrics.get(name)
    return float(v) if isinstance(v, int | float) else 0.0


BestResultOf = Callable[[str], BacktestRecord | None]


class LeaderboardRanker:
    @staticmethod
    def best_backtest(records: Sequence[BacktestRecord]) -> BacktestRecord | None:
        """Highest Sharpe; the earliest record wins a tie."""

        best: BacktestRecord | None = None
        for r in records:
            if best is None or _metric(r, "sharpe_ratio") > _metric(best, "sharpe_ratio"):
                best = r
        return best

    def rank(
        self,
        strategies: Sequence[SavedStrategy],
        best_result_of: BestResultOf,
        fork_metadata: Mapping[str, ForkRecord],
    ) -> list[RankedEntry]:
        rows: list[tuple[SavedStrategy, BacktestRecord | None, ForkRecord | None]] = [
            (s, best_result_of(s.id), fork_metadata.get(s.id)) for s in strategies
        ]
        # sorted() is stable: equal Sharpe keeps listing order
        rows = sorted(rows, key=lambda row: _metric(row[1], "sharpe_ratio"), reverse=True)

        out: list[RankedEntry] = []
        for i, (s, best, fork) in enumerate(rows):
            out.append(
                RankedEntry(
                    strategy=s,
                    rank=i + 1,
                    sharpe_ratio=_metric(best, "sharpe_ratio"),
                    total_return=_metric(best, "total_return_pct"),
                    max_drawdown=_metric(best, "max_drawdown_pct"),
                    win_rate=_metric(best, "win_rate"),
                    total_trades=int(_metric(best, "total_trades")),
                    fork_count=fork.fork_count if fork else 0,
                    parent_id=fork.fork_of_id if fork else None,
                    medal=MEDALS[i] if i < len(MEDALS) else None,
                )
            )
        return out

    @staticmethod
    def top(entries: Sequence[RankedEntry], n: int = 10) -> list[RankedEntry]:
        return list(entries[: max(n, 0)])

    def build_fork_tree(
        self,
        root_id: str,
        strategies: Sequence[SavedStrategy],
        fork_metadata: Mapping[str, ForkRecord],
        best_result_of: BestResultOf,
    ) -> ForkNode | None:
        by_id = {s.id: s for s in strategies}
        if root_id not in by_id:
            return None

        # parent -> children, in listing order, built once
        children_of: dict[str, list[str]] = {}
        for s in strategies:
            fork = fork_metadata.get(s.id)
            if fork is not None and fork.fork_of_id is not None:
                children_of.setdefault(fork.fork_of_id, []).append(s.id)

        def node(sid: str) -> ForkNode:
            fork = fork_metadata.get(sid)
            return ForkNode(
                id=sid,
                name=by_id[sid].name,
                author=(fork.author if fork and fork.author else None) or by_id[sid].author or UNKNOWN_AUTHOR,
                sharpe_ratio=_metric(best_result_of(sid), "sharpe_ratio"),
            )

        root = node(root_id)
        seen = {root_id}
        stack = [root]
        while stack:
            parent = stack.pop()
            for cid in children_of.get(parent.id, []):
                if cid in seen:
                    continue
                seen.add(cid)
                child = node(cid)
                parent.children.append(child)
                stack.append(child)
        return root


class LeaderboardService:
    """Ranker over a :class:`Store` snapshot, plus the fork write path."""

    def __init__(self, store: Store, ranker: LeaderboardRanker | None = None) -> None:
        self.store = store
        self.ranker = ranker or LeaderboardRanker()

    def _snapshot(self) -> tuple[list[SavedStrategy], BestResultOf, dict[str, ForkRecord]]:
        strategies = self.store.strategies.list_all()
        history = self.store.backtests.list_all()
        best = {sid: self.ranker.best_backtest(records) for sid, records in history.items()}
        return strategies, best.get, self.store.forks.list_all()

    def rankings(self) -> list[RankedEntry]:
        strategies, best_of, forks = self._snapshot()
        return self.ranker.rank(strategies, best_of, forks)

    def top_strategies(self, n: int = 10) -> list[RankedEntry]:
        return self.ranker.top(self.rankings(), n)

    def fork(self, strategy_id: str, *, new_name: str | None = None, author: str = DEFAULT_FORK_AUTHOR) -> SavedStrategy:
        """Copy ``strategy_id`` under a new id and record where it came from."""

        original = self.store.strategies.require(strategy_id)
        child = SavedStrategy.new(
            name=new_name or f"{original.name} (Fork)",
            operations=[dict(op) for op in original.operations],
            author=author,
            description=original.description,
        )
        self.store.fork_strategy(strategy_id, child, author=author)
        logger.info("strategy_forked", extra={"parent_id": strategy_id, "strategy_id": child.id, "author": author})
        return child

    def fork_tree(self, strategy_id: str) -> ForkNode | None:
        strategies, best_of, forks = self._snapshot()
        return self.ranker.build_fork_tree(strategy_id, strategies, forks, best_of)

    def is_fork(self, strategy_id: str) -> bool:
        rec = self.store.forks.get(strategy_id)
        return rec is not None and rec.fork_of_id is not None

    def parent_of(self, strategy_id: str) -> SavedStrategy | None:
        rec = self.store.forks.get(strategy_id)
        if rec is None or rec.fork_of_id is None:
            return None
        return self.store.strategies.get(rec.fork_of_id)

    def fork_count(self, strategy_id: str) -> int:
        rec = self.store.forks.get(strategy_id)
        return rec.fork_count if rec else 0
