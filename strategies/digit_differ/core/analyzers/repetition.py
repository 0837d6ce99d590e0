"""重复模式分析器：全局 / 当前数字 / 当前序列 三层重复概率同时低于阈值才下单。"""

from __future__ import annotations

from typing import Sequence

from shared.models.models import Signal
from strategies.digit_differ.core import digit_stats as ds
from strategies.digit_differ.core.analyzers.base import check_history, clamp01, no_trade


def sequence_repeat_probability(history: Sequence[int], length: int) -> tuple[float, int]:
    """历史上出现“末尾 `length` 位序列”之后，下一位重复其最后一位的概率。

    返回 (probability, samples)；没有样本时概率为 0。
    """
    n = len(history)
    if length < 1 or n <= length:
        return 0.0, 0
    tail = tuple(history[-length:])
    last = tail[-1]
    samples = 0
    repeats = 0
    # 不包含末尾窗口自身（其下一位尚未出现）
    for i in range(n - length):
        if tuple(history[i:i + length]) == tail:
            samples += 1
            if history[i + length] == last:
                repeats += 1
    return (repeats / samples if samples else 0.0), samples


class RepetitionPatternAnalyzer:
    name = "repetition_pattern"

    def __init__(
        self,
        min_history_length: int = 100,
        global_threshold: float = 0.10,
        digit_threshold: float = 0.10,
        sequence_threshold: float = 0.10,
        sequence_length: int = 5,
        min_digit_samples: int = 10,
    ):
        self.min_history_length = int(min_history_length)
        self.global_threshold = float(global_threshold)
        self.digit_threshold = float(digit_threshold)
        self.sequence_threshold = float(sequence_threshold)
        self.sequence_length = int(sequence_length)
        self.min_digit_samples = int(min_digit_samples)

    def analyze(self, history: Sequence[int]) -> Signal:
        problem = check_history(history, self.min_history_length)
        if problem:
            return no_trade(problem)

        current = history[-1]
        global_rate = ds.repetition_rate(history)
        transitions = ds.transition_stats(history, current)
        digit_rate = transitions.self_transition_rate
        seq_rate, seq_samples = sequence_repeat_probability(history, self.sequence_length)

        details = {
            "current_digit": current,
            "global_rate": global_rate,
            "digit_rate": digit_rate,
            "digit_samples": transitions.sample_size,
            "sequence_rate": seq_rate,
            "sequence_samples": seq_samples,
        }
        confidence = clamp01(1.0 - max(global_rate, digit_rate, seq_rate))

        if global_rate >= self.global_threshold:
            reason = f"Global repetition {global_rate * 100:.1f}% >= {self.global_threshold * 100:.1f}%"
        elif digit_rate >= self.digit_threshold:
            reason = f"Digit {current} repetition {digit_rate * 100:.1f}% >= {self.digit_threshold * 100:.1f}%"
        elif seq_rate >= self.sequence_threshold:
            reason = f"Sequence repetition {seq_rate * 100:.1f}% >= {self.sequence_threshold * 100:.1f}%"
        elif transitions.sample_size < self.min_digit_samples:
            reason = f"Not enough samples for digit {current}: {transitions.sample_size} < {self.min_digit_samples}"
        else:
            return Signal(
                should_trade=True,
                target=current,
                confidence=confidence,
                reason=f"Low repetition on all levels (digit {current})",
                details=details,
            )
        return no_trade(reason, confidence=confidence, target=current, details=details)
