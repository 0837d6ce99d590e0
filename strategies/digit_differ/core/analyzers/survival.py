"""生存分析器：把“连续不重复”视为存活，按经验风险率估计下一步仍不重复的概率。

run 长度 k 表示第 k 次转移时发生了重复；当前处在第 (当前不重复连击 + 1) 步。
"""

from __future__ import annotations

from collections import Counter
from typing import Sequence

from shared.models.models import Signal
from strategies.digit_differ.core.analyzers.base import check_history, clamp01, no_trade


def completed_runs(history: Sequence[int]) -> tuple[list[int], int]:
    """返回 (已结束的 run 长度列表, 当前未结束 run 已存活的步数)。"""
    runs: list[int] = []
    alive = 0
    for i in range(1, len(history)):
        if history[i] == history[i - 1]:
            runs.append(alive + 1)
            alive = 0
        else:
            alive += 1
    return runs, alive


def kaplan_meier(runs: Sequence[int], upto: int) -> float:
    """S(upto)：存活超过 `upto` 步的估计概率。"""
    freq = Counter(runs)
    at_risk = len(runs)
    survival = 1.0
    for k in range(1, upto + 1):
        if at_risk <= 0:
            break
        events = freq.get(k, 0)
        survival *= 1.0 - events / at_risk
        at_risk -= events
    return survival


class SurvivalAnalyzer:
    name = "survival"

    def __init__(
        self,
        min_history_length: int = 100,
        survival_threshold: float = 0.9,
        min_runs: int = 10,
        medium_runs: int = 20,
        high_runs: int = 50,
        unknown_hazard: float = 0.1,
    ):
        self.min_history_length = int(min_history_length)
        self.survival_threshold = float(survival_threshold)
        self.min_runs = int(min_runs)
        self.medium_runs = int(medium_runs)
        self.high_runs = int(high_runs)
        self.unknown_hazard = float(unknown_hazard)

    def _tier(self, n_runs: int) -> str:
        if n_runs > self.high_runs:
            return "high"
        if n_runs > self.medium_runs:
            return "medium"
        return "low"

    def analyze(self, history: Sequence[int]) -> Signal:
        problem = check_history(history, self.min_history_length)
        if problem:
            return no_trade(problem)

        current = history[-1]
        runs, alive = completed_runs(history)
        if len(runs) < self.min_runs:
            return no_trade(
                f"Not enough completed runs: {len(runs)} < {self.min_runs}",
                confidence=0.5,
                target=current,
                details={"runs": len(runs), "tier": "low"},
            )

        next_step = alive + 1
        at_risk = sum(1 for r in runs if r >= next_step)
        events = sum(1 for r in runs if r == next_step)
        hazard = events / at_risk if at_risk else 0.0
        # 无观测（风险集为空或从未在此步结束）时退回先验风险率
        if hazard == 0.0:
            hazard = self.unknown_hazard
        probability = clamp01(1.0 - hazard)
        tier = self._tier(len(runs))

        details = {
            "current_digit": current,
            "runs": len(runs),
            "alive_steps": alive,
            "at_risk": at_risk,
            "hazard": hazard,
            "km_survival": kaplan_meier(runs, alive),
            "tier": tier,
        }
        if tier == "low":
            return no_trade(f"Low data confidence ({len(runs)} runs)", confidence=probability, target=current, details=details)
        if probability < self.survival_threshold:
            return no_trade(
                f"Survival probability {probability * 100:.1f}% < {self.survival_threshold * 100:.1f}%",
                confidence=probability,
                target=current,
                details=details,
            )
        return Signal(
            should_trade=True,
            target=current,
            confidence=probability,
            reason=f"Survival {probability * 100:.1f}% at step {next_step} ({tier})",
            details=details,
        )
