from __future__ import annotations

from typing import Any, Protocol, Sequence, runtime_checkable

from shared.models.models import Signal
from strategies.digit_differ.core.digit_stats import is_valid_digits


@runtime_checkable
class TickAnalyzer(Protocol):
    """analyze(history) -> Signal。

    实现必须是纯函数：不联网、无副作用，同样的 history + 配置得到同样的结果。
    """

    name: str
    min_history_length: int

    def analyze(self, history: Sequence[int]) -> Signal: ...


def no_trade(reason: str, *, confidence: float = 0.0, target: int | None = None, details: dict[str, Any] | None = None) -> Signal:
    return Signal(
        should_trade=False,
        target=target,
        confidence=clamp01(confidence),
        reason=reason,
        details=details or {},
    )


def check_history(history: Sequence[int], min_length: int) -> str | None:
    """校验输入；返回拒绝原因，合法时返回 None。"""
    if len(history) < min_length:
        return f"Insufficient history: {len(history)} < {min_length}"
    if not is_valid_digits(history):
        return "Invalid history: symbol outside 0-9"
    return None


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
