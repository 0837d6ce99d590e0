"""核心数据结构：Tick/Signal/Trade/Subscription/StakePlan/RiskDecision。"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Tick:
    """交易所推送的一次报价（接收后不可变）。"""
    symbol: str
    epoch: int
    value: Decimal


@dataclass(frozen=True)
class Signal:
    """分析器输出：是否交易 + 目标数字 + 置信度。"""
    should_trade: bool
    target: int | None
    confidence: float
    reason: str
    details: dict[str, Any] = field(default_factory=dict)


class TradeStatus(str, Enum):
    PROPOSED = "Proposed"
    PLACED = "Placed"
    OPEN = "Open"
    SETTLED = "Settled"
    FAILED = "Failed"


IN_FLIGHT_STATUSES = frozenset({TradeStatus.PROPOSED, TradeStatus.PLACED, TradeStatus.OPEN})


@dataclass
class Trade:
    """一笔交易的生命周期记录。"""
    id: str
    asset: str
    direction: str       # contract_type, e.g. DIGITDIFF
    stake: float
    barrier: int | None = None
    status: TradeStatus = TradeStatus.PROPOSED
    contract_id: int | None = None
    subscription_id: str | None = None
    buy_price: float | None = None
    profit: float | None = None
    won: bool | None = None
    exit_digit: int | None = None
    reason: str | None = None
    opened_at: float | None = None
    settled_at: float | None = None

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES


@dataclass(frozen=True)
class Subscription:
    """订阅确认后创建；断线后全部失效。"""
    id: str
    kind: str            # "tick" | "contract" | "balance"
    target: str
    snapshot: dict[str, Any] | None = None


@dataclass(frozen=True)
class StakePlan:
    """具体下单金额与其来源（staking policy）。"""
    amount: float
    basis: str


@dataclass(frozen=True)
class RiskDecision:
    """风控结果：拒绝是正常返回值，不抛异常。"""
    allowed: bool
    code: str | None = None
    message: str = ""

    @classmethod
    def allow(cls) -> "RiskDecision":
        return cls(True, None, "OK")

    @classmethod
    def deny(cls, code: str, message: str) -> "RiskDecision":
        return cls(False, code, message)
