"""SQLite 本地状态存储。

- strategy_state：key -> JSON（staking 进度、session 计数、风控快照），重启后恢复。
- trades：每笔交易的最新状态（按 trade id upsert）。
- trade_events：状态变迁，append-only，用于审计。
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from shared.models.models import Trade

logger = logging.getLogger(__name__)

DEFAULT_STATE_KEY = "digit_differ"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


def _json_dumps(obj: Any) -> str:
    if is_dataclass(obj):
        obj = asdict(obj)  # type: ignore
    return json.dumps(obj, ensure_ascii=False, default=_json_default, allow_nan=False)


class SqliteStateStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS strategy_state (
              key TEXT PRIMARY KEY,
              state_json TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
              trade_id TEXT PRIMARY KEY,
              symbol TEXT NOT NULL,
              contract_type TEXT NOT NULL,
              stake REAL NOT NULL,
              barrier INTEGER,
              status TEXT NOT NULL,
              contract_id INTEGER,
              profit REAL,
              won INTEGER,
              updated_at TEXT NOT NULL,
              raw_json TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS trade_events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              trade_id TEXT NOT NULL,
              status TEXT NOT NULL,
              ts TEXT NOT NULL,
              raw_json TEXT NOT NULL
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trade_events_tid ON trade_events(trade_id);")

    def load_strategy_state(self, key: str = DEFAULT_STATE_KEY) -> Optional[dict[str, Any]]:
        """没有记录或内容损坏时返回 None（调用方回退默认值）。"""
        row = self._conn.execute(
            "SELECT state_json FROM strategy_state WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()
        if row is None:
            return None
        try:
            state = json.loads(row[0])
        except ValueError as e:
            logger.warning(f"⚠️ Stored state '{key}' is corrupt, ignoring: {e}")
            return None
        if not isinstance(state, dict):
            logger.warning(f"⚠️ Stored state '{key}' is not an object, ignoring")
            return None
        return state

    def save_strategy_state(self, state: dict[str, Any], key: str = DEFAULT_STATE_KEY) -> None:
        self._conn.execute(
            """
            INSERT INTO strategy_state (key, state_json, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET state_json = excluded.state_json, updated_at = excluded.updated_at;
            """,
            (key, _json_dumps(state), _utc_now_iso()),
        )

    def record_trade(self, trade: Trade) -> None:
        ts = _utc_now_iso()
        raw = _json_dumps(trade)
        status = trade.status.value
        self._conn.execute(
            """
            INSERT INTO trades (
              trade_id, symbol, contract_type, stake, barrier, status, contract_id, profit, won, updated_at, raw_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(trade_id) DO UPDATE SET
              status = excluded.status,
              contract_id = excluded.contract_id,
              profit = excluded.profit,
              won = excluded.won,
              updated_at = excluded.updated_at,
              raw_json = excluded.raw_json;
            """,
            (
                trade.id,
                trade.asset,
                trade.direction,
                float(trade.stake),
                trade.barrier,
                status,
                trade.contract_id,
                trade.profit,
                None if trade.won is None else int(trade.won),
                ts,
                raw,
            ),
        )
        self._conn.execute(
            "INSERT INTO trade_events (trade_id, status, ts, raw_json) VALUES (?, ?, ?, ?);",
            (trade.id, status, ts, raw),
        )

    def get_trade(self, trade_id: str) -> Optional[dict[str, Any]]:
        cur = self._conn.execute("SELECT * FROM trades WHERE trade_id = ? LIMIT 1;", (trade_id,))
        row = cur.fetchone()
        if row is None:
            return None
        cols = [c[0] for c in cur.description]
        return {cols[i]: row[i] for i in range(len(cols))}

    def trade_history(self, trade_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT status FROM trade_events WHERE trade_id = ? ORDER BY id ASC;",
            (trade_id,),
        ).fetchall()
        return [str(r[0]) for r in rows]
