"""账户风控：下单闸门 + 仓位计算 + 风险状态。

RiskState 只在本模块的方法内被修改；拒绝是正常返回值（RiskDecision），不抛异常。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Callable, Optional

from shared.config.schema import RiskConfig
from shared.models.models import RiskDecision, Trade

logger = logging.getLogger(__name__)

DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
MAX_DRAWDOWN = "MAX_DRAWDOWN"
LOW_BALANCE = "LOW_BALANCE"
CONSECUTIVE_LOSSES = "CONSECUTIVE_LOSSES"
MAX_CONCURRENT_TRADES = "MAX_CONCURRENT_TRADES"
POSITION_SIZE_EXCEEDED = "POSITION_SIZE_EXCEEDED"

# 触发后整个引擎停止，而不只是当前品种
HARD_STOP_CODES = frozenset({DAILY_LOSS_LIMIT, MAX_DRAWDOWN, CONSECUTIVE_LOSSES})


@dataclass
class RiskState:
    daily_loss: float = 0.0
    daily_loss_limit: float = 0.0
    max_balance_seen: float = 0.0
    consecutive_losses: int = 0
    active_trade_count: int = 0
    last_reset_date: Optional[date] = None


def floor_to_step(value: float, step: float) -> float:
    step_d = Decimal(str(step))
    units = (Decimal(str(value)) / step_d).to_integral_value(rounding=ROUND_FLOOR)
    return float(units * step_d)


class RiskManager:
    """风险管理器。

    Parameters
    ----------
    cfg:
        风控配置（日损/回撤/余额/连亏/并发/仓位比例）。
    today_fn:
        返回本地日期，用于跨日重置；测试中可注入。
    """

    def __init__(self, cfg: RiskConfig, *, today_fn: Callable[[], date] = date.today):
        self.cfg = cfg
        self.today_fn = today_fn
        self.state = RiskState(daily_loss_limit=cfg.daily_loss_limit, last_reset_date=today_fn())

    def _maybe_reset_daily(self) -> None:
        today = self.today_fn()
        last = self.state.last_reset_date
        if last is None or today > last:
            if self.state.daily_loss:
                logger.info(f"📅 New trading day {today.isoformat()}: daily loss {self.state.daily_loss:.2f} reset")
            self.state.daily_loss = 0.0
            self.state.last_reset_date = today

    def drawdown(self, balance: float) -> float:
        peak = self.state.max_balance_seen
        if peak <= 0:
            return 0.0
        return max(0.0, (peak - balance) / peak)

    def can_trade(self, balance: float, proposed_stake: float) -> RiskDecision:
        """按固定优先级检查；第一个失败项决定拒绝原因。"""
        self._maybe_reset_daily()
        s = self.state
        cfg = self.cfg

        if s.daily_loss >= s.daily_loss_limit:
            return RiskDecision.deny(
                DAILY_LOSS_LIMIT, f"Daily loss {s.daily_loss:.2f} reached limit {s.daily_loss_limit:.2f}"
            )
        dd = self.drawdown(balance)
        if dd >= cfg.max_drawdown_pct:
            return RiskDecision.deny(
                MAX_DRAWDOWN, f"Drawdown {dd * 100:.2f}% >= {cfg.max_drawdown_pct * 100:.2f}%"
            )
        if balance < cfg.min_balance_to_trade:
            return RiskDecision.deny(
                LOW_BALANCE, f"Balance {balance:.2f} below minimum {cfg.min_balance_to_trade:.2f}"
            )
        if s.consecutive_losses >= cfg.stop_after_consecutive_losses:
            return RiskDecision.deny(
                CONSECUTIVE_LOSSES,
                f"{s.consecutive_losses} consecutive losses (limit {cfg.stop_after_consecutive_losses})",
            )
        if s.active_trade_count >= cfg.max_concurrent_trades:
            return RiskDecision.deny(
                MAX_CONCURRENT_TRADES,
                f"{s.active_trade_count} active trades (limit {cfg.max_concurrent_trades})",
            )
        max_position = balance * cfg.position_size_pct
        if proposed_stake > max_position:
            return RiskDecision.deny(
                POSITION_SIZE_EXCEEDED, f"Stake {proposed_stake:.2f} exceeds max position {max_position:.2f}"
            )
        return RiskDecision.allow()

    def confidence_tier(self, confidence: float) -> str:
        return "high" if confidence >= self.cfg.high_confidence_threshold else "normal"

    def size_position(self, balance: float, confidence_tier: str = "normal") -> float:
        base = balance * self.cfg.position_size_pct
        multiplier = self.cfg.confidence_multipliers.get(confidence_tier, 1.0)
        dampener = max(0.5, 1.0 - 0.1 * self.state.consecutive_losses)
        return floor_to_step(base * multiplier * dampener, self.cfg.stake_step)

    def observe_balance(self, balance: float) -> None:
        if balance > self.state.max_balance_seen:
            self.state.max_balance_seen = float(balance)

    def record_open(self) -> None:
        self.state.active_trade_count += 1

    def release(self) -> None:
        """在途交易未结算即失败时释放并发名额。"""
        self.state.active_trade_count = max(0, self.state.active_trade_count - 1)

    def record_settlement(self, trade: Trade, won: bool, pnl: float, balance: float | None = None) -> None:
        self._maybe_reset_daily()
        s = self.state
        if won:
            s.consecutive_losses = 0
        else:
            s.daily_loss += abs(pnl)
            s.consecutive_losses += 1
        s.active_trade_count = max(0, s.active_trade_count - 1)
        if balance is not None:
            self.observe_balance(balance)
        logger.debug(
            f"Risk after {trade.id}: daily_loss={s.daily_loss:.2f} consecutive_losses={s.consecutive_losses}"
        )

    def get_risk_metrics(self, balance: float) -> dict[str, Any]:
        s = self.state
        return {
            "daily_loss": s.daily_loss,
            "daily_loss_limit": s.daily_loss_limit,
            "remaining_daily_budget": max(0.0, s.daily_loss_limit - s.daily_loss),
            "max_balance_seen": s.max_balance_seen,
            "drawdown": self.drawdown(balance),
            "consecutive_losses": s.consecutive_losses,
            "active_trades": s.active_trade_count,
            "can_trade": self.can_trade(balance, 0.0).allowed,
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self.state)
        data["last_reset_date"] = self.state.last_reset_date.isoformat() if self.state.last_reset_date else None
        data.pop("active_trade_count")
        return data

    def load_dict(self, data: dict[str, Any]) -> None:
        """从持久化快照恢复（并发计数总是从 0 开始）。"""
        s = self.state
        s.daily_loss = float(data.get("daily_loss", 0.0))
        s.max_balance_seen = max(s.max_balance_seen, float(data.get("max_balance_seen", 0.0)))
        s.consecutive_losses = int(data.get("consecutive_losses", 0))
        raw_date = data.get("last_reset_date")
        if raw_date:
            s.last_reset_date = date.fromisoformat(raw_date)
        self._maybe_reset_daily()
