import random

import pytest

from strategies.digit_differ.core import digit_stats as ds


def _brute_repetition_rate(history):
    if len(history) < 2:
        return 0.0
    reps = sum(1 for i in range(1, len(history)) if history[i] == history[i - 1])
    return reps / (len(history) - 1)


def test_repetition_rate_basic():
    assert ds.repetition_rate([1, 1, 2, 3, 3, 3]) == pytest.approx(3 / 5)
    assert ds.repetition_rate([1, 2, 3, 4]) == 0.0


def test_repetition_rate_short_history_is_zero():
    assert ds.repetition_rate([]) == 0.0
    assert ds.repetition_rate([7]) == 0.0


def test_repetition_rate_matches_definition_on_random_histories():
    rng = random.Random(42)
    for _ in range(50):
        history = [rng.randint(0, 9) for _ in range(rng.randint(0, 300))]
        assert ds.repetition_rate(history) == pytest.approx(_brute_repetition_rate(history))


def test_non_repetition_streaks():
    # 1→2→3 不重复 2 次，3→3 重复，之后 3→4→5 不重复 2 次
    assert ds.non_repetition_streaks([1, 2, 3, 3, 4, 5]) == (2, 2)
    assert ds.non_repetition_streaks([1, 2, 3, 4, 4, 5]) == (1, 3)
    assert ds.non_repetition_streaks([5]) == (0, 0)


def test_current_streak_length():
    assert ds.current_streak_length([5, 3, 3, 3]) == 3
    assert ds.current_streak_length([1, 2]) == 1
    assert ds.current_streak_length([]) == 0


def test_frequency_ties_resolve_to_lowest_digit():
    assert ds.most_frequent([2, 1, 2, 1]) == 1
    assert ds.least_frequent(list(range(10))) == 0
    # 0 从未出现
    assert ds.least_frequent([1, 1, 2, 3]) == 0


def test_frequency_deviation_sums_to_zero():
    dev = ds.frequency_deviation([1, 1, 2, 3, 9])
    assert len(dev) == 10
    assert sum(dev) == pytest.approx(0.0)
    assert dev[1] == pytest.approx(0.4 - 0.1)


def test_transition_stats_from_digit():
    stats = ds.transition_stats([1, 2, 1, 3, 1, 2], 1)
    assert stats.sample_size == 3
    assert stats.probabilities[2] == pytest.approx(2 / 3)
    assert stats.probabilities[3] == pytest.approx(1 / 3)
    assert stats.self_transition_rate == 0.0
    assert stats.most_likely_next == 2
    assert stats.least_likely_next == 0


def test_transition_stats_without_samples_is_uniform():
    stats = ds.transition_stats([4, 5, 6], 9)
    assert stats.sample_size == 0
    assert stats.probabilities == tuple([0.1] * 10)


def test_normalized_entropy_bounds():
    assert ds.normalized_entropy(list(range(10)) * 5) == pytest.approx(1.0)
    assert ds.normalized_entropy([7] * 20) == pytest.approx(0.0)
    assert ds.normalized_entropy([]) == 0.0


def test_repetition_z_score():
    assert ds.repetition_z_score(0.1, 100) == pytest.approx(0.0)
    assert ds.repetition_z_score(0.0, 100) == pytest.approx(-0.1 / 0.03)
    assert ds.repetition_z_score(0.5, 0) == 0.0


def test_digit_behavior():
    b = ds.digit_behavior([3, 3, 5, 3], 3)
    assert b.occurrences == 3
    assert b.self_repetitions == 1
    assert b.self_repetition_rate == pytest.approx(0.5)
    assert b.avg_gap == pytest.approx(1.5)
    assert b.current_gap == 0
    assert b.frequency == pytest.approx(0.75)


def test_is_valid_digits():
    assert ds.is_valid_digits([0, 5, 9])
    assert not ds.is_valid_digits([0, 10])
    assert not ds.is_valid_digits([1, -1])
    assert not ds.is_valid_digits([True, 1])
