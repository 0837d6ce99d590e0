"""数字序列统计（纯函数，无副作用）。

所有函数都接收 0-9 的整数序列；并列时一律取数值最小的数字，保证可复现。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

NUM_SYMBOLS = 10
EXPECTED_REPETITION_RATE = 1.0 / NUM_SYMBOLS
MAX_ENTROPY = math.log2(NUM_SYMBOLS)


def is_valid_digits(history: Sequence[int]) -> bool:
    for d in history:
        if not isinstance(d, (int, np.integer)) or isinstance(d, bool) or not 0 <= d <= 9:
            return False
    return True


def repetition_count(history: Sequence[int]) -> int:
    if len(history) < 2:
        return 0
    arr = np.asarray(history, dtype=np.int64)
    return int(np.count_nonzero(arr[1:] == arr[:-1]))


def repetition_rate(history: Sequence[int]) -> float:
    """相邻相等的比例：count(h[i] == h[i-1]) / (n - 1)。"""
    n = len(history)
    if n < 2:
        return 0.0
    return repetition_count(history) / (n - 1)


def non_repetition_streaks(history: Sequence[int]) -> tuple[int, int]:
    """返回 (当前, 最大) 连续“不重复”转移次数。"""
    current = 0
    longest = 0
    for i in range(1, len(history)):
        if history[i] == history[i - 1]:
            longest = max(longest, current)
            current = 0
        else:
            current += 1
    return current, max(longest, current)


def current_streak_length(history: Sequence[int]) -> int:
    """末尾相同数字的连续长度（至少为 1）。"""
    if not history:
        return 0
    last = history[-1]
    streak = 1
    for i in range(len(history) - 2, -1, -1):
        if history[i] != last:
            break
        streak += 1
    return streak


def digit_counts(history: Sequence[int]) -> np.ndarray:
    if not history:
        return np.zeros(NUM_SYMBOLS, dtype=np.int64)
    return np.bincount(np.asarray(history, dtype=np.int64), minlength=NUM_SYMBOLS)


def frequency_deviation(history: Sequence[int]) -> list[float]:
    """各数字频率相对均匀期望 (1/10) 的偏差。"""
    n = len(history)
    if n == 0:
        return [0.0] * NUM_SYMBOLS
    freqs = digit_counts(history) / n
    return [float(f - EXPECTED_REPETITION_RATE) for f in freqs]


def most_frequent(history: Sequence[int]) -> int:
    # np.argmax 返回第一个最大值，即并列时数值最小的数字
    return int(np.argmax(digit_counts(history)))


def least_frequent(history: Sequence[int]) -> int:
    return int(np.argmin(digit_counts(history)))


@dataclass(frozen=True)
class TransitionStats:
    probabilities: tuple[float, ...]
    sample_size: int
    self_transition_rate: float
    least_likely_next: int
    most_likely_next: int


def transition_stats(history: Sequence[int], from_digit: int) -> TransitionStats:
    """从 `from_digit` 出发的下一位转移概率。"""
    if len(history) < 2:
        uniform = tuple([EXPECTED_REPETITION_RATE] * NUM_SYMBOLS)
        return TransitionStats(uniform, 0, 0.0, 0, 0)
    arr = np.asarray(history, dtype=np.int64)
    nxt = arr[1:][arr[:-1] == from_digit]
    total = int(nxt.size)
    if total == 0:
        uniform = tuple([EXPECTED_REPETITION_RATE] * NUM_SYMBOLS)
        return TransitionStats(uniform, 0, 0.0, 0, 0)
    counts = np.bincount(nxt, minlength=NUM_SYMBOLS)
    probs = counts / total
    return TransitionStats(
        probabilities=tuple(float(p) for p in probs),
        sample_size=total,
        self_transition_rate=float(probs[from_digit]),
        least_likely_next=int(np.argmin(probs)),
        most_likely_next=int(np.argmax(probs)),
    )


def normalized_entropy(history: Sequence[int]) -> float:
    """香农熵 / log2(10)，取值 [0, 1]。"""
    n = len(history)
    if n == 0:
        return 0.0
    counts = digit_counts(history)
    p = counts[counts > 0] / n
    entropy = float(-(p * np.log2(p)).sum())
    return entropy / MAX_ENTROPY


def repetition_z_score(rate: float, n: int) -> float:
    """重复率相对 10% 期望的 z-score。"""
    if n <= 0:
        return 0.0
    std = math.sqrt(EXPECTED_REPETITION_RATE * (1 - EXPECTED_REPETITION_RATE) / n)
    return (rate - EXPECTED_REPETITION_RATE) / std


@dataclass(frozen=True)
class DigitBehavior:
    frequency: float
    occurrences: int
    self_repetitions: int
    self_repetition_rate: float
    avg_gap: float
    current_gap: int


def digit_behavior(history: Sequence[int], digit: int) -> DigitBehavior:
    """某个数字的出现频率、自我重复率与间隔。"""
    n = len(history)
    positions = [i for i, d in enumerate(history) if d == digit]
    occurrences = len(positions)
    self_reps = sum(1 for i in positions if i > 0 and history[i - 1] == digit)
    gaps = [b - a for a, b in zip(positions, positions[1:])]
    avg_gap = sum(gaps) / len(gaps) if gaps else float(n)
    current_gap = (n - 1 - positions[-1]) if positions else n
    return DigitBehavior(
        frequency=occurrences / n if n else 0.0,
        occurrences=occurrences,
        self_repetitions=self_reps,
        self_repetition_rate=self_reps / (occurrences - 1) if occurrences > 1 else 0.0,
        avg_gap=avg_gap,
        current_gap=current_gap,
    )
