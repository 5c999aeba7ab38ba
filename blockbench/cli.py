"""blockbench.cli

Command line interface entry point for blockbench.

Design constraints:
- argparse-based.
- Lazy imports: do not import heavy dependencies at parse time.
- Every command returns an exit code; nothing calls sys.exit but main's caller.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

EPILOG = "Backtests are cheap. Mainnet is not."


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blockbench",
        description="DeFi strategy backtesting with a fork-aware leaderboard.",
        epilog=EPILOG,
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )

    sub = parser.add_subparsers(dest="command")

    p_bt = sub.add_parser("backtest", help="Backtest a saved strategy or an operations file")
    src = p_bt.add_mutually_exclusive_group(required=True)
    src.add_argument("--strategy", dest="strategy_id", default=None, help="Saved strategy id")
    src.add_argument("--file", type=Path, default=None, help="JSON file with a list of operations")
    p_bt.add_argument("--start", required=True, help="Window start (ISO-8601 or unix seconds)")
    p_bt.add_argument("--end", required=True, help="Window end, inclusive")
    p_bt.add_argument("--capital", type=float, default=10_000.0, help="Initial capital in the quote asset")
    p_bt.add_argument("--interval", default=None, help="Tick interval, e.g. 1h, 4h, 1d")
    p_bt.add_argument("--json", action="store_true", help="Print the full result as JSON")
    p_bt.add_argument("--no-save", action="store_true", help="Do not record the run for a saved strategy")

    p_strat = sub.add_parser("strategies", help="Manage saved strategies")
    strat_sub = p_strat.add_subparsers(dest="strategies_command")
    strat_sub.add_parser("list", help="List saved strategies")
    p_add = strat_sub.add_parser("add", help="Save a strategy from a JSON operations file")
    p_add.add_argument("--name", required=True)
    p_add.add_argument("--file", type=Path, required=True)
    p_add.add_argument("--author", default="")
    p_add.add_argument("--description", default="")
    p_show = strat_sub.add_parser("show", help="Print one strategy")
    p_show.add_argument("strategy_id")
    p_del = strat_sub.add_parser("delete", help="Delete a strategy and its history")
    p_del.add_argument("strategy_id")

    p_val = sub.add_parser("validate", help="Check an operations file without running it")
    p_val.add_argument("file", type=Path)

    p_lb = sub.add_parser("leaderboard", help="Rank saved strategies by Sharpe ratio")
    p_lb.add_argument("--limit", type=int, default=10)
    p_lb.add_argument("--json", action="store_true")

    p_fork = sub.add_parser("fork", help="Fork a saved strategy")
    p_fork.add_argument("strategy_id")
    p_fork.add_argument("--name", default=None)
    p_fork.add_argument("--author", default="You")

    p_tree = sub.add_parser("fork-tree", help="Show everything forked from a strategy")
    p_tree.add_argument("strategy_id")
    p_tree.add_argument("--json", action="store_true")

    p_api = sub.add_parser("api", help="Start FastAPI server")
    p_api.add_argument("--host", default=None)
    p_api.add_argument("--port", type=int, default=None)

    return parser


def _print_version() -> None:
    from blockbench import __version__

    print(f"blockbench v{__version__}")


def _load_config(ctx: CliContext):
    from blockbench.core.config import Config
    from blockbench.core.logs import configure_logging

    config = Config.from_repo_defaults(ctx.repo_root)
    configure_logging(config.logging)
    return config


def _open_store(ctx: CliContext, config):
    from blockbench.core.store import Store

    db_path = config.db_path if config.db_path.is_absolute() else ctx.repo_root / config.db_path
    return Store(db_path, max_backtests_per_strategy=config.store.max_backtests_per_strategy)


def _read_operations(path: Path) -> list[dict[str, Any]]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("operations", [])
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a list of operations")
    return raw


def _print_metrics(metrics: dict[str, Any]) -> None:
    for key in (
        "total_return",
        "total_return_pct",
        "max_drawdown",
        "max_drawdown_pct",
        "sharpe_ratio",
        "win_rate",
        "profit_factor",
        "total_trades",
        "total_gas_spent",
        "total_fees_spent",
        "impermanent_loss",
    ):
        v = metrics.get(key)
        shown = f"{v:.6g}" if isinstance(v, float) else str(v)
        print(f"- {key}: {shown}")


def _cmd_backtest(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio
    from datetime import timedelta

    from pydantic import ValidationError

    from blockbench.backtest.runner import build_engine, close_engine, config_for_strategy, run_backtest, to_record
    from blockbench.backtest.scheduler import ProgressEvent, SchedulerEvent, SimulationScheduler
    from blockbench.core.exceptions import BlockbenchError
    from blockbench.core.store import SavedStrategy
    from blockbench.core.time import parse_dt, parse_interval

    config = _load_config(ctx)
    store = _open_store(ctx, config) if args.strategy_id else None

    try:
        if store is not None:
            strategy = store.strategies.require(args.strategy_id)
        else:
            strategy = SavedStrategy.new(name=args.file.stem, operations=_read_operations(args.file))

        interval = (
            parse_interval(args.interval)
            if args.interval
            else timedelta(hours=config.simulation.default_tick_interval_hours)
        )
        bt_config = config_for_strategy(
            strategy,
            start=parse_dt(args.start),
            end=parse_dt(args.end),
            initial_capital=args.capital,
            tick_interval=interval,
        )
    except (BlockbenchError, ValidationError, ValueError, OSError) as e:
        print(f"backtest failed: {e}", file=sys.stderr)
        return 1

    def on_event(event: SchedulerEvent) -> None:
        if isinstance(event, ProgressEvent):
            print(f"[{event.percent:3d}%] {event.message}", file=sys.stderr)

    async def _run():
        engine = build_engine(config)
        try:
            return await run_backtest(SimulationScheduler(engine), bt_config, on_event=on_event)
        finally:
            await close_engine(engine)

    try:
        result = asyncio.run(_run())
    except BlockbenchError as e:
        print(f"backtest failed: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("backtest cancelled", file=sys.stderr)
        return 130

    if result is None:
        print("backtest cancelled", file=sys.stderr)
        return 130

    if store is not None and not args.no_save:
        record = store.backtests.put(to_record(strategy.id, bt_config, result))
        print(f"recorded backtest {record.id} for {strategy.id}", file=sys.stderr)

    if args.json:
        payload = result.to_dict()
        payload["metrics"] = result.metrics.to_json_dict()
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(f"{strategy.name}: {len(result.equity_curve)} ticks, {len(result.trades)} trades")
        _print_metrics(result.metrics.to_json_dict())
    return 0


def _cmd_strategies(ctx: CliContext, args: argparse.Namespace) -> int:
    from pydantic import ValidationError

    from blockbench.backtest.operations import dump_operations, parse_operations
    from blockbench.core.exceptions import StrategyNotFoundError
    from blockbench.core.store import SavedStrategy

    config = _load_config(ctx)
    store = _open_store(ctx, config)
    sub = args.strategies_command or "list"

    if sub == "list":
        for s in store.strategies.list_all():
            print(f"{s.id}  {s.name}  ({len(s.operations)} ops)")
        return 0

    if sub == "add":
        try:
            ops = dump_operations(parse_operations(_read_operations(args.file)))
        except (ValidationError, ValueError, OSError) as e:
            print(f"invalid strategy: {e}", file=sys.stderr)
            return 1
        saved = store.strategies.put(
            SavedStrategy.new(name=args.name, operations=ops, author=args.author, description=args.description)
        )
        print(saved.id)
        return 0

    try:
        if sub == "show":
            print(json.dumps(store.strategies.require(args.strategy_id).to_dict(), indent=2, sort_keys=True))
            return 0
        if sub == "delete":
            if not store.strategies.delete(args.strategy_id):
                raise StrategyNotFoundError(args.strategy_id)
            print(f"deleted {args.strategy_id}")
            return 0
    except StrategyNotFoundError as e:
        print(f"strategy not found: {e}", file=sys.stderr)
        return 1

    print(f"Unknown strategies command: {sub}", file=sys.stderr)
    return 2


def _cmd_validate(ctx: CliContext, args: argparse.Namespace) -> int:
    from pydantic import ValidationError

    from blockbench.backtest.operations import parse_operations
    from blockbench.backtest.validation import validate_strategy

    try:
        ops = parse_operations(_read_operations(args.file))
    except (ValidationError, ValueError, OSError) as e:
        print(f"invalid: {e}", file=sys.stderr)
        return 1

    report = validate_strategy(ops)
    for issue in (*report.errors, *report.warnings):
        where = f"#{issue.index}" if issue.index is not None else "strategy"
        print(f"{issue.severity}: {where}: {issue.message}")
    print("ok" if report.valid else "invalid")
    return 0 if report.valid else 1


def _cmd_leaderboard(ctx: CliContext, args: argparse.Namespace) -> int:
    from blockbench.leaderboard.ranker import LeaderboardService

    config = _load_config(ctx)
    service = LeaderboardService(_open_store(ctx, config))
    entries = service.top_strategies(args.limit)

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2, sort_keys=True))
        return 0

    for e in entries:
        medal = f" {e.medal}" if e.medal else ""
        print(
            f"{e.rank:>3}.{medal} {e.strategy.name}  sharpe={e.sharpe_ratio:.3f}  "
            f"return={e.total_return:.2f}%  forks={e.fork_count}"
        )
    return 0


def _cmd_fork(ctx: CliContext, args: argparse.Namespace) -> int:
    from blockbench.core.exceptions import StrategyNotFoundError
    from blockbench.leaderboard.ranker import LeaderboardService

    config = _load_config(ctx)
    service = LeaderboardService(_open_store(ctx, config))
    try:
        child = service.fork(args.strategy_id, new_name=args.name, author=args.author)
    except StrategyNotFoundError as e:
        print(f"strategy not found: {e}", file=sys.stderr)
        return 1
    print(child.id)
    return 0


def _print_tree(node, depth: int = 0) -> None:
    print(f"{'  ' * depth}- {node.name} [{node.id}] by {node.author}  sharpe={node.sharpe_ratio:.3f}")
    for child in node.children:
        _print_tree(child, depth + 1)


def _cmd_fork_tree(ctx: CliContext, args: argparse.Namespace) -> int:
    from blockbench.leaderboard.ranker import LeaderboardService

    config = _load_config(ctx)
    tree = LeaderboardService(_open_store(ctx, config)).fork_tree(args.strategy_id)
    if tree is None:
        print(f"strategy not found: {args.strategy_id}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(tree.to_dict(), indent=2, sort_keys=True))
    else:
        _print_tree(tree)
    return 0


def _cmd_api(ctx: CliContext, args: argparse.Namespace) -> int:
    from blockbench.core.config import Config

    config = Config.from_repo_defaults(ctx.repo_root)

    host = args.host or config.api.host
    port = args.port or config.api.port

    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "backtest": _cmd_backtest,
        "strategies": _cmd_strategies,
        "validate": _cmd_validate,
        "leaderboard": _cmd_leaderboard,
        "fork": _cmd_fork,
        "fork-tree": _cmd_fork_tree,
        "api": _cmd_api,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
