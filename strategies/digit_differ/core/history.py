"""Tick 历史窗口与末位数字提取。"""

from __future__ import annotations

from collections import deque
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Iterable

from shared.models.models import Tick
from strategies.digit_differ.core.errors import DataError


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise DataError(f"Invalid quote: {value!r}")
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise DataError(f"Invalid quote: {value!r}") from exc
    if not dec.is_finite():
        raise DataError(f"Invalid quote: {value!r}")
    return dec


def last_digit(value: Any, decimals: int) -> int:
    """取报价在第 `decimals` 位小数上的数字（尾随 0 也计入）。

    e.g. last_digit("1234.5670", 4) -> 0, last_digit(100.25, 2) -> 5
    """
    dec = to_decimal(value)
    quantized = dec.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
    text = format(abs(quantized), "f")
    return int(text[-1])


def parse_tick(payload: dict[str, Any]) -> Tick:
    """解析 `tick` 消息体；字段缺失或非法时抛 DataError。"""
    if not isinstance(payload, dict):
        raise DataError("tick payload must be a dict")
    symbol = payload.get("symbol")
    if not symbol:
        raise DataError("tick without symbol")
    try:
        epoch = int(payload["epoch"])
    except (KeyError, TypeError, ValueError) as exc:
        raise DataError(f"tick without valid epoch: {payload!r}") from exc
    if "quote" not in payload:
        raise DataError(f"tick without quote: {payload!r}")
    return Tick(symbol=str(symbol), epoch=epoch, value=to_decimal(payload["quote"]))


class DigitHistory:
    """固定长度的滑动窗口：满了之后丢弃最旧元素。

    只由 tick 摄入路径修改；分析器拿到的是不可变快照。
    """

    def __init__(self, maxlen: int):
        if maxlen < 1:
            raise ValueError("maxlen must be >= 1")
        self.maxlen = int(maxlen)
        self._digits: deque[int] = deque(maxlen=self.maxlen)
        self.last_tick: Tick | None = None
        self.last_epoch: int | None = None

    def __len__(self) -> int:
        return len(self._digits)

    def append(self, digit: int) -> None:
        if not isinstance(digit, int) or isinstance(digit, bool) or not 0 <= digit <= 9:
            raise DataError(f"digit out of domain: {digit!r}")
        self._digits.append(digit)

    def is_stale(self, tick: Tick) -> bool:
        return self.last_epoch is not None and tick.epoch <= self.last_epoch

    def append_tick(self, tick: Tick, decimals: int) -> int | None:
        """追加一个 tick；epoch 不晚于已见最新 tick 的重复推送返回 None。"""
        if self.is_stale(tick):
            return None
        digit = last_digit(tick.value, decimals)
        self.append(digit)
        self.last_tick = tick
        self.last_epoch = tick.epoch
        return digit

    def reset(self, digits: Iterable[int], last_epoch: int | None = None) -> None:
        """用历史回填结果替换窗口（重连后调用）。

        last_epoch 为回填中最新 tick 的 epoch，订阅确认里重复的那个 tick 会被丢弃。
        """
        self._digits.clear()
        for d in digits:
            self.append(d)
        self.last_epoch = last_epoch

    def snapshot(self) -> tuple[int, ...]:
        return tuple(self._digits)

    @property
    def current(self) -> int | None:
        return self._digits[-1] if self._digits else None
