"""引擎事件：所有入站消息与定时器都以事件形式排队，按到达顺序串行处理。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class TickEvent:
    symbol: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class ContractUpdateEvent:
    contract: Dict[str, Any]
    subscription_id: str | None = None


@dataclass(frozen=True)
class BalanceEvent:
    balance: float
    currency: str = ""


@dataclass(frozen=True)
class CooldownExpired:
    symbol: str
    token: int


@dataclass(frozen=True)
class ResubscribeEvent:
    """市场关闭等情况下延迟重新订阅行情。"""
    symbol: str


@dataclass(frozen=True)
class ReconfirmEvent:
    """在途合约订阅失败后的再次确认。"""
    trade_id: str


@dataclass(frozen=True)
class ConnectionLostEvent:
    error: Exception


@dataclass(frozen=True)
class ReconnectedEvent:
    auth: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FatalEvent:
    error: Exception


@dataclass(frozen=True)
class StopEvent:
    reason: str = "stop requested"
