"""下单金额策略：fixed / martingale / capped_progression / sized。

进度只由已结算交易推进，且每个 trade id 至多推进一次。
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Optional

from shared.config.schema import StakingConfig
from shared.models.models import StakePlan
from strategies.digit_differ.core.risk_manager import RiskManager

logger = logging.getLogger(__name__)

_SETTLED_MEMORY = 1000


def next_martingale_stake(
    current: float,
    won: bool,
    *,
    base: float,
    multiplier: float,
    max_stake: float,
    cap_mode: str = "hold",
) -> float:
    """纯函数：(current, won) -> next stake。

    cap_mode="hold": 翻倍会超过上限时保持当前金额（10→20→40→80→80）。
    cap_mode="clamp": 截断到上限（80→100）。
    """
    if won:
        return round(base, 2)
    candidate = round(current * multiplier, 2)
    if candidate <= max_stake:
        return candidate
    if cap_mode == "clamp":
        return round(max_stake, 2)
    return round(min(current, max_stake), 2)


class StakeManager:
    def __init__(self, cfg: StakingConfig, risk: Optional[RiskManager] = None):
        self.cfg = cfg
        self.risk = risk
        self.current_stake = cfg.base_stake
        self.step = 0
        self.stopped = False
        self._settled: OrderedDict[str, bool] = OrderedDict()

    def _clamp(self, amount: float) -> float:
        return round(min(max(amount, self.cfg.min_stake), self.cfg.max_stake), 2)

    def plan(self, balance: float, confidence: float = 0.0) -> StakePlan:
        policy = self.cfg.policy
        if policy == "fixed":
            return StakePlan(self._clamp(self.cfg.base_stake), "fixed")
        if policy == "sized":
            if self.risk is None:
                raise ValueError("sized staking requires a RiskManager")
            tier = self.risk.confidence_tier(confidence)
            return StakePlan(self._clamp(self.risk.size_position(balance, tier)), f"sized/{tier}")
        return StakePlan(self._clamp(self.current_stake), f"{policy} step {self.step}")

    def on_settlement(self, trade_id: str, won: bool) -> float:
        """推进进度并返回下一笔金额；同一 trade id 重复调用无副作用。"""
        if trade_id in self._settled:
            return self.current_stake
        self._settled[trade_id] = won
        while len(self._settled) > _SETTLED_MEMORY:
            self._settled.popitem(last=False)

        cfg = self.cfg
        if cfg.policy in ("fixed", "sized"):
            return self.current_stake

        if won:
            self.current_stake = cfg.base_stake
            self.step = 0
            return self.current_stake

        self.step += 1
        if cfg.policy == "martingale":
            self.current_stake = next_martingale_stake(
                self.current_stake,
                False,
                base=cfg.base_stake,
                multiplier=cfg.loss_multiplier,
                max_stake=cfg.max_stake,
                cap_mode=cfg.cap_mode,
            )
            return self.current_stake

        # capped_progression
        if self.step >= cfg.max_steps:
            if cfg.reset_after_max == "reset":
                logger.info(f"🔁 Max progression steps ({cfg.max_steps}) reached, stake reset to base")
                self.current_stake = cfg.base_stake
                self.step = 0
                return self.current_stake
            if cfg.reset_after_max == "stop":
                logger.warning(f"🛑 Max progression steps ({cfg.max_steps}) reached, staking stopped")
                self.stopped = True
                return self.current_stake
        self.current_stake = round(min(self.current_stake * cfg.loss_multiplier, cfg.max_stake), 2)
        return self.current_stake

    def to_dict(self) -> dict[str, Any]:
        return {"current_stake": self.current_stake, "step": self.step, "stopped": self.stopped}

    def load_dict(self, data: dict[str, Any]) -> None:
        stake = float(data.get("current_stake", self.cfg.base_stake))
        self.current_stake = self._clamp(stake)
        self.step = int(data.get("step", 0))
        self.stopped = bool(data.get("stopped", False))
