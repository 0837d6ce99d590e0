"""统计型分析器：重复率 / 连续不重复 / 转移概率 / 熵 的加权评分。

押注“下一位数字 != 当前数字”（DIGITDIFF），目标即当前末位数字。
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from shared.models.models import Signal
from strategies.digit_differ.core import digit_stats as ds
from strategies.digit_differ.core.analyzers.base import check_history, clamp01, no_trade

# 每个因子是一组 (op, threshold, delta) 分段，命中第一段即生效
DEFAULT_SCORING: dict[str, Any] = {
    "base": 0.5,
    "overall_rate": [["<", 0.08, 0.15], ["<", 0.10, 0.10], [">", 0.12, -0.10]],
    "recent_rate": [["<", 0.08, 0.10], [">", 0.15, -0.15]],
    "non_rep_streak": [[">=", 15, 0.08], [">=", 10, 0.05], ["<", 3, -0.05]],
    "digit_self_rep_rate": [["<", 0.08, 0.10], [">", 0.15, -0.10]],
    "self_transition_rate": [["<", 0.08, 0.05], [">", 0.15, -0.08]],
    "recent_entropy": [[">", 0.98, -0.05]],
    "significance_bonus": 0.05,
    "significance_z": -2.0,
    "streak_penalty": 0.10,
}

_OPS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


def _band(value: float, bands: Sequence[Sequence[Any]]) -> float:
    for op, threshold, delta in bands:
        if _OPS[op](value, threshold):
            return float(delta)
    return 0.0


class StatisticalAnalyzer:
    name = "statistical"

    def __init__(
        self,
        min_history_length: int = 100,
        min_confidence: float = 0.45,
        max_repetition_rate: float = 0.10,
        min_streak: int = 3,
        recent_window: int = 100,
        entropy_window: int = 200,
        min_transition_samples: int = 50,
        max_recent_repetition_rate: float | None = None,
        max_digit_self_repetition_rate: float | None = None,
        scoring: Mapping[str, Any] | None = None,
    ):
        self.min_history_length = int(min_history_length)
        self.min_confidence = float(min_confidence)
        self.max_repetition_rate = float(max_repetition_rate)
        self.min_streak = int(min_streak)
        self.recent_window = int(recent_window)
        self.entropy_window = int(entropy_window)
        self.min_transition_samples = int(min_transition_samples)
        self.max_recent_repetition_rate = max_recent_repetition_rate
        self.max_digit_self_repetition_rate = max_digit_self_repetition_rate
        self.scoring = {**DEFAULT_SCORING, **dict(scoring or {})}

    def compute_stats(self, history: Sequence[int]) -> dict[str, Any]:
        current = history[-1]
        recent = history[-self.recent_window:]
        cur_streak, max_streak = ds.non_repetition_streaks(history)
        overall_rate = ds.repetition_rate(history)
        behavior = ds.digit_behavior(history, current)
        transitions = ds.transition_stats(history, current)
        return {
            "current_digit": current,
            "overall_rate": overall_rate,
            "recent_rate": ds.repetition_rate(recent),
            "z_score": ds.repetition_z_score(overall_rate, len(history)),
            "non_rep_streak": cur_streak,
            "max_non_rep_streak": max_streak,
            "current_streak_length": ds.current_streak_length(history),
            "digit_self_rep_rate": behavior.self_repetition_rate,
            "digit_frequency": behavior.frequency,
            "frequency_deviation": ds.frequency_deviation(history),
            "most_frequent": ds.most_frequent(history),
            "least_frequent": ds.least_frequent(history),
            "self_transition_rate": transitions.self_transition_rate,
            "transition_samples": transitions.sample_size,
            "entropy": ds.normalized_entropy(history),
            "recent_entropy": ds.normalized_entropy(history[-self.entropy_window:]),
        }

    def score(self, stats: Mapping[str, Any]) -> float:
        s = self.scoring
        confidence = float(s["base"])
        confidence += _band(stats["overall_rate"], s["overall_rate"])
        confidence += _band(stats["recent_rate"], s["recent_rate"])
        confidence += _band(stats["non_rep_streak"], s["non_rep_streak"])
        confidence += _band(stats["digit_self_rep_rate"], s["digit_self_rep_rate"])
        if stats["transition_samples"] >= self.min_transition_samples:
            confidence += _band(stats["self_transition_rate"], s["self_transition_rate"])
        if stats["z_score"] < float(s["significance_z"]):
            confidence += float(s["significance_bonus"])
        if stats["current_streak_length"] > 1:
            confidence -= float(s["streak_penalty"]) * (stats["current_streak_length"] - 1)
        confidence += _band(stats["recent_entropy"], s["recent_entropy"])
        return clamp01(confidence)

    def analyze(self, history: Sequence[int]) -> Signal:
        problem = check_history(history, self.min_history_length)
        if problem:
            return no_trade(problem)

        stats = self.compute_stats(history)
        confidence = self.score(stats)
        target = stats["current_digit"]

        reason = self._first_failure(stats, confidence)
        if reason:
            return no_trade(reason, confidence=confidence, target=target, details=stats)
        return Signal(
            should_trade=True,
            target=target,
            confidence=confidence,
            reason=f"All conditions met - confidence {confidence * 100:.1f}%",
            details=stats,
        )

    def _first_failure(self, stats: Mapping[str, Any], confidence: float) -> str | None:
        if confidence < self.min_confidence:
            return f"Confidence too low: {confidence * 100:.1f}% < {self.min_confidence * 100:.1f}%"
        if stats["overall_rate"] > self.max_repetition_rate:
            return (
                f"Repetition rate too high: {stats['overall_rate'] * 100:.1f}% "
                f"> {self.max_repetition_rate * 100:.1f}%"
            )
        if stats["non_rep_streak"] < self.min_streak:
            return f"Non-repetition streak too short: {stats['non_rep_streak']} < {self.min_streak}"
        if stats["current_streak_length"] != 1:
            return f"Current digit is repeating: streak {stats['current_streak_length']}"
        if self.max_recent_repetition_rate is not None and stats["recent_rate"] > self.max_recent_repetition_rate:
            return f"Recent repetition rate too high: {stats['recent_rate'] * 100:.1f}%"
        if (
            self.max_digit_self_repetition_rate is not None
            and stats["digit_self_rep_rate"] > self.max_digit_self_repetition_rate
        ):
            return f"Digit self-repetition rate too high: {stats['digit_self_rep_rate'] * 100:.1f}%"
        return None
