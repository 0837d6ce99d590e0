import pytest

from shared.config.schema import RiskConfig, StakingConfig
from strategies.digit_differ.core.risk_manager import RiskManager
from strategies.digit_differ.core.staking import StakeManager, next_martingale_stake


def _martingale(**overrides) -> StakeManager:
    cfg = StakingConfig(**{"policy": "martingale", "base_stake": 10, "loss_multiplier": 2, "max_stake": 100, **overrides})
    return StakeManager(cfg)


def test_next_martingale_stake_holds_at_cap():
    stakes = [10.0]
    for _ in range(4):
        stakes.append(next_martingale_stake(stakes[-1], False, base=10, multiplier=2, max_stake=100))
    assert stakes == [10.0, 20.0, 40.0, 80.0, 80.0]


def test_next_martingale_stake_clamp_mode():
    assert next_martingale_stake(80, False, base=10, multiplier=2, max_stake=100, cap_mode="clamp") == 100.0


def test_next_martingale_stake_win_resets():
    assert next_martingale_stake(80, True, base=10, multiplier=2, max_stake=100) == 10.0


def test_martingale_progression_and_reset():
    sm = _martingale()
    seen = [sm.current_stake]
    for i in range(4):
        seen.append(sm.on_settlement(f"t{i}", False))
    assert seen == [10, 20.0, 40.0, 80.0, 80.0]
    assert sm.step == 4

    assert sm.on_settlement("t-win", True) == 10
    assert sm.step == 0


def test_settlement_is_idempotent_per_trade_id():
    sm = _martingale()
    sm.on_settlement("t1", False)
    sm.on_settlement("t1", False)
    sm.on_settlement("t1", True)
    assert sm.current_stake == 20.0
    assert sm.step == 1


def test_plan_reports_policy_step():
    sm = _martingale()
    sm.on_settlement("t1", False)
    plan = sm.plan(1000.0)
    assert plan.amount == 20.0
    assert plan.basis == "martingale step 1"


def test_fixed_policy_never_progresses():
    sm = StakeManager(StakingConfig(policy="fixed", base_stake=2))
    sm.on_settlement("t1", False)
    sm.on_settlement("t2", False)
    assert sm.plan(1000.0).amount == 2.0
    assert sm.plan(1000.0).basis == "fixed"


def test_capped_progression_resets_after_max_steps():
    sm = StakeManager(StakingConfig(policy="capped_progression", base_stake=1, max_steps=3, reset_after_max="reset"))
    assert sm.on_settlement("t1", False) == 2.0
    assert sm.on_settlement("t2", False) == 4.0
    assert sm.on_settlement("t3", False) == 1
    assert sm.step == 0


def test_capped_progression_stops_after_max_steps():
    sm = StakeManager(StakingConfig(policy="capped_progression", base_stake=1, max_steps=3, reset_after_max="stop"))
    for i in range(3):
        sm.on_settlement(f"t{i}", False)
    assert sm.stopped is True
    assert sm.current_stake == 4.0


def test_capped_progression_continue_keeps_doubling_up_to_max():
    sm = StakeManager(StakingConfig(
        policy="capped_progression", base_stake=1, max_steps=3, reset_after_max="continue", max_stake=6,
    ))
    results = [sm.on_settlement(f"t{i}", False) for i in range(4)]
    assert results == [2.0, 4.0, 6.0, 6.0]


def test_sized_policy_uses_risk_manager():
    risk = RiskManager(RiskConfig(position_size_pct=0.05))
    sm = StakeManager(StakingConfig(policy="sized", base_stake=1, max_stake=100), risk)
    plan = sm.plan(1000.0, confidence=0.9)
    assert plan.amount == pytest.approx(75.0)
    assert plan.basis == "sized/high"
    assert sm.plan(1000.0, confidence=0.5).amount == pytest.approx(50.0)


def test_plan_clamps_to_bounds():
    risk = RiskManager(RiskConfig(position_size_pct=0.05))
    sm = StakeManager(StakingConfig(policy="sized", base_stake=1, min_stake=0.35, max_stake=10), risk)
    assert sm.plan(1000.0).amount == 10.0
    assert sm.plan(2.0).amount == 0.35


def test_sized_policy_without_risk_manager():
    sm = StakeManager(StakingConfig(policy="sized", base_stake=1))
    with pytest.raises(ValueError):
        sm.plan(1000.0)


def test_state_round_trip_clamps_stake():
    sm = _martingale()
    sm.on_settlement("t1", False)
    restored = _martingale()
    restored.load_dict(sm.to_dict())
    assert restored.current_stake == 20.0
    assert restored.step == 1

    restored.load_dict({"current_stake": 5000})
    assert restored.current_stake == 100.0
