"""blockbench.core.store

The notebook: saved strategies, what they did, and who copied whom.

One SQLite file, three tables, three small repositories over a shared
connection. Payloads (operation lists, metrics) are stored as canonical JSON;
the store never interprets them.

Backtest history is bounded per strategy. The oldest record goes first.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from blockbench.core.exceptions import StoreError, StrategyNotFoundError
from blockbench.core.time import parse_dt, utc_now

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Strategies
-- ============================================================
CREATE TABLE IF NOT EXISTS strategies (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    author TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    operations TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- ============================================================
-- Backtest history (bounded per strategy)
-- ============================================================
CREATE TABLE IF NOT EXISTS backtests (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    strategy_id TEXT NOT NULL REFERENCES strategies(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    config TEXT NOT NULL,
    metrics TEXT NOT NULL,
    final_equity REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_backtests_strategy ON backtests(strategy_id);

-- ============================================================
-- Fork provenance
-- ============================================================
CREATE TABLE IF NOT EXISTS fork_records (
    strategy_id TEXT PRIMARY KEY REFERENCES strategies(id) ON DELETE CASCADE,
    fork_of_id TEXT,
    fork_count INTEGER NOT NULL DEFAULT 0 CHECK(fork_count >= 0),
    author TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_fork_records_parent ON fork_records(fork_of_id);
"""


def _dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _loads(raw: str, *, what: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise StoreError(f"corrupt {what} payload: {e}") from e


@dataclass(frozen=True, slots=True)
class SavedStrategy:
    id: str
    name: str
    operations: list[dict[str, Any]]
    author: str = ""
    description: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(cls, *, name: str, operations: list[dict[str, Any]], author: str = "", description: str = "") -> SavedStrategy:
        now = utc_now()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            operations=operations,
            author=author,
            description=description,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "author": self.author,
            "description": self.description,
            "operations": self.operations,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class BacktestRecord:
    id: str
    strategy_id: str
    created_at: datetime
    config: dict[str, Any]
    metrics: dict[str, Any]
    final_equity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "created_at": self.created_at.isoformat(),
            "config": self.config,
            "metrics": self.metrics,
            "final_equity": self.final_equity,
        }


@dataclass(frozen=True, slots=True)
class ForkRecord:
    strategy_id: str
    fork_of_id: str | None = None
    fork_count: int = 0
    author: str = ""


class Store:
    """SQLite-backed persistence; safe to share between threads."""

    def __init__(self, db_path: str | Path, *, max_backtests_per_strategy: int = 50) -> None:
        if max_backtests_per_strategy < 1:
            raise ValueError("max_backtests_per_strategy must be >= 1")
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

        self.strategies = StrategyRepository(self)
        self.backtests = BacktestRepository(self, max_per_strategy=max_backtests_per_strategy)
        self.forks = ForkRepository(self)

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        try:
            with self.conn:
                self.conn.executescript(SCHEMA)
                self.conn.execute("PRAGMA journal_mode=WAL")
                self.conn.execute("PRAGMA foreign_keys=ON")
                self.conn.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        except sqlite3.Error as e:
            raise StoreError(f"cannot initialise store at {self.db_path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    def fork_strategy(self, parent_id: str, child: SavedStrategy, *, author: str) -> ForkRecord:
        """Insert ``child`` as a fork of ``parent_id`` and bump the parent's count.

        All or nothing: a failure leaves neither the child nor the count change.
        """

        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM strategies WHERE id = ?", (parent_id,)).fetchone() is None:
                raise StrategyNotFoundError(parent_id)
            self.strategies._insert(conn, child)
            conn.execute(
                """
                INSERT INTO fork_records (strategy_id, fork_of_id, fork_count, author) VALUES (?, NULL, 1, '')
                ON CONFLICT(strategy_id) DO UPDATE SET fork_count = fork_count + 1
                """,
                (parent_id,),
            )
            conn.execute(
                "INSERT INTO fork_records (strategy_id, fork_of_id, fork_count, author) VALUES (?, ?, 0, ?)",
                (child.id, parent_id, author),
            )
        return ForkRecord(strategy_id=child.id, fork_of_id=parent_id, fork_count=0, author=author)


class StrategyRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    @staticmethod
    def _row_to_strategy(row: sqlite3.Row) -> SavedStrategy:
        return SavedStrategy(
            id=str(row["id"]),
            name=str(row["name"]),
            author=str(row["author"] or ""),
            description=str(row["description"] or ""),
            operations=_loads(str(row["operations"]), what="operations"),
            created_at=parse_dt(str(row["created_at"])),
            updated_at=parse_dt(str(row["updated_at"])),
        )

    @staticmethod
    def _insert(conn: sqlite3.Connection, s: SavedStrategy) -> None:
        conn.execute(
            """
            INSERT INTO strategies (id, name, author, description, operations, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (s.id, s.name, s.author, s.description, _dumps(s.operations), s.created_at.isoformat(), s.updated_at.isoformat()),
        )

    def get(self, strategy_id: str) -> SavedStrategy | None:
        row = self._store.conn.execute(
            "SELECT id, name, author, description, operations, created_at, updated_at FROM strategies WHERE id = ?",
            (strategy_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_strategy(row)

    def require(self, strategy_id: str) -> SavedStrategy:
        s = self.get(strategy_id)
        if s is None:
            raise StrategyNotFoundError(strategy_id)
        return s

    def put(self, strategy: SavedStrategy) -> SavedStrategy:
        """Insert, or replace name/operations of an existing id (creation order kept)."""

        with self._store.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE strategies
                SET name = ?, author = ?, description = ?, operations = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    strategy.name,
                    strategy.author,
                    strategy.description,
                    _dumps(strategy.operations),
                    utc_now().isoformat(),
                    strategy.id,
                ),
            )
            if cur.rowcount == 0:
                self._insert(conn, strategy)
        return self.require(strategy.id)

    def list_all(self) -> list[SavedStrategy]:
        """Every strategy in creation order."""

        rows = self._store.conn.execute(
            "SELECT id, name, author, description, operations, created_at, updated_at FROM strategies ORDER BY seq ASC",
        ).fetchall()
        return [self._row_to_strategy(r) for r in rows]

    def delete(self, strategy_id: str) -> bool:
        with self._store.transaction() as conn:
            cur = conn.execute("DELETE FROM strategies WHERE id = ?", (strategy_id,))
        return cur.rowcount > 0

    def rename(self, strategy_id: str, name: str) -> SavedStrategy:
        return self.put(replace(self.require(strategy_id), name=name))


class BacktestRepository:
    def __init__(self, store: Store, *, max_per_strategy: int) -> None:
        self._store = store
        self.max_per_strategy = max_per_strategy

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> BacktestRecord:
        return BacktestRecord(
            id=str(row["id"]),
            strategy_id=str(row["strategy_id"]),
            created_at=parse_dt(str(row["created_at"])),
            config=_loads(str(row["config"]), what="config"),
            metrics=_loads(str(row["metrics"]), what="metrics"),
            final_equity=float(row["final_equity"]),
        )

    def put(self, record: BacktestRecord) -> BacktestRecord:
        with self._store.transaction() as conn:
            if conn.execute("SELECT 1 FROM strategies WHERE id = ?", (record.strategy_id,)).fetchone() is None:
                raise StrategyNotFoundError(record.strategy_id)
            conn.execute(
                """
                INSERT INTO backtests (id, strategy_id, created_at, config, metrics, final_equity)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.strategy_id,
                    record.created_at.isoformat(),
                    _dumps(record.config),
                    _dumps(record.metrics),
                    float(record.final_equity),
                ),
            )
            conn.execute(
                """
                DELETE FROM backtests
                WHERE strategy_id = ? AND seq NOT IN (
                    SELECT seq FROM backtests WHERE strategy_id = ? ORDER BY seq DESC LIMIT ?
                )
                """,
                (record.strategy_id, record.strategy_id, self.max_per_strategy),
            )
        return record

    def get(self, record_id: str) -> BacktestRecord | None:
        row = self._store.conn.execute(
            "SELECT id, strategy_id, created_at, config, metrics, final_equity FROM backtests WHERE id = ?",
            (record_id,),
        ).fetchone()
        return None if row is None else self._row_to_record(row)

    def list_for(self, strategy_id: str) -> list[BacktestRecord]:
        """Oldest first."""

        rows = self._store.conn.execute(
            """
            SELECT id, strategy_id, created_at, config, metrics, final_equity
            FROM backtests WHERE strategy_id = ? ORDER BY seq ASC
            """,
            (strategy_id,),
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def list_all(self) -> dict[str, list[BacktestRecord]]:
        rows = self._store.conn.execute(
            "SELECT id, strategy_id, created_at, config, metrics, final_equity FROM backtests ORDER BY seq ASC",
        ).fetchall()
        out: dict[str, list[BacktestRecord]] = {}
        for r in rows:
            rec = self._row_to_record(r)
            out.setdefault(rec.strategy_id, []).append(rec)
        return out


class ForkRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    @staticmethod
    def _row_to_fork(row: sqlite3.Row) -> ForkRecord:
        parent = row["fork_of_id"]
        return ForkRecord(
            strategy_id=str(row["strategy_id"]),
            fork_of_id=None if parent is None else str(parent),
            fork_count=int(row["fork_count"]),
            author=str(row["author"] or ""),
        )

    def get(self, strategy_id: str) -> ForkRecord | None:
        row = self._store.conn.execute(
            "SELECT strategy_id, fork_of_id, fork_count, author FROM fork_records WHERE strategy_id = ?",
            (strategy_id,),
        ).fetchone()
        return None if row is None else self._row_to_fork(row)

    def put(self, record: ForkRecord) -> ForkRecord:
        with self._store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO fork_records (strategy_id, fork_of_id, fork_count, author) VALUES (?, ?, ?, ?)
                ON CONFLICT(strategy_id) DO UPDATE
                SET fork_of_id = excluded.fork_of_id, fork_count = excluded.fork_count, author = excluded.author
                """,
                (record.strategy_id, record.fork_of_id, int(record.fork_count), record.author),
            )
        return record

    def list_all(self) -> dict[str, ForkRecord]:
        rows = self._store.conn.execute(
            "SELECT strategy_id, fork_of_id, fork_count, author FROM fork_records",
        ).fetchall()
        return {str(r["strategy_id"]): self._row_to_fork(r) for r in rows}
