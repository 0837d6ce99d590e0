from pathlib import Path

import pytest

from shared.models.models import Trade, TradeStatus
from shared.state.sqlite_store import SqliteStateStore


@pytest.fixture
def store(tmp_path: Path):
    s = SqliteStateStore(tmp_path / "nested" / "state.sqlite3")
    yield s
    s.close()


def test_missing_state_returns_none(store):
    assert store.load_strategy_state() is None


def test_state_upsert(store):
    store.save_strategy_state({"staking": {"current_stake": 2.0}})
    store.save_strategy_state({"staking": {"current_stake": 4.0}})
    assert store.load_strategy_state() == {"staking": {"current_stake": 4.0}}
    assert store.load_strategy_state("other") is None


def test_corrupt_state_is_ignored(store):
    store.save_strategy_state({"ok": True})
    store._conn.execute("UPDATE strategy_state SET state_json = '{broken' WHERE key = 'digit_differ';")
    assert store.load_strategy_state() is None


def test_record_trade_keeps_latest_row_and_full_history(store):
    trade = Trade(id="abc123", asset="R_50", direction="DIGITDIFF", stake=1.0, barrier=5)
    trade.status = TradeStatus.PLACED
    trade.contract_id = 5001
    store.record_trade(trade)

    trade.status = TradeStatus.SETTLED
    trade.profit = 0.09
    trade.won = True
    store.record_trade(trade)

    row = store.get_trade("abc123")
    assert row["status"] == "Settled"
    assert row["won"] == 1
    assert row["profit"] == pytest.approx(0.09)
    assert row["contract_id"] == 5001
    assert store.trade_history("abc123") == ["Placed", "Settled"]
    assert store.get_trade("missing") is None


def test_state_survives_reopen(tmp_path: Path):
    path = tmp_path / "state.sqlite3"
    s1 = SqliteStateStore(path)
    s1.save_strategy_state({"session": {"trades": 3}})
    s1.close()

    s2 = SqliteStateStore(path)
    assert s2.load_strategy_state() == {"session": {"trades": 3}}
    s2.close()
