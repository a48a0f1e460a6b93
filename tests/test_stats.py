"""Tests for the two-proportion significance engine."""

import math

import pytest

from src.experiments.stats import (
    AnalysisSummary,
    Counts,
    ResultState,
    analyze_experiment,
    calculate_lift,
    calculate_minimum_sample_size,
    calculate_z_score,
    classify_results,
    estimate_days_to_significance,
    get_confidence_level,
    get_status_message,
    is_significant,
)
from src.experiments.results import VariantStats


def _stats(variant_id, users, conversions, name=None):
    return VariantStats(
        variant_id=variant_id,
        variant_name=name or variant_id,
        users=users,
        conversions=conversions,
        conversion_rate=conversions / users * 100 if users else 0.0,
    )


class TestZScore:
    def test_better_variant_positive(self):
        z = calculate_z_score(Counts(1000, 100), Counts(1000, 150))
        assert z > 0
        # pooled p = 0.125, se = sqrt(0.125 * 0.875 * 0.002)
        assert z == pytest.approx(0.05 / math.sqrt(0.125 * 0.875 * 0.002))

    def test_worse_variant_negative(self):
        assert calculate_z_score(Counts(1000, 150), Counts(1000, 100)) < 0

    def test_equal_rates_zero(self):
        assert calculate_z_score(Counts(500, 50), Counts(500, 50)) == 0

    @pytest.mark.parametrize("control,variant", [
        (Counts(9, 9), Counts(1000, 10)),
        (Counts(1000, 10), Counts(9, 0)),
        (Counts(0, 0), Counts(0, 0)),
    ])
    def test_insufficient_sample(self, control, variant):
        assert calculate_z_score(control, variant) == 0

    def test_degenerate_pooled_proportion(self):
        assert calculate_z_score(Counts(100, 0), Counts(100, 0)) == 0
        assert calculate_z_score(Counts(100, 100), Counts(100, 100)) == 0


class TestConfidenceLevel:
    @pytest.mark.parametrize("z,expected", [
        (2.576, 99),
        (3.5, 99),
        (1.96, 95),
        (-1.96, 95),
        (1.645, 90),
        (1.282, 80),
        (0.674, 50),
        (0.0, 0),
    ])
    def test_breakpoints(self, z, expected):
        assert get_confidence_level(z) == expected

    def test_interpolation_stays_below_80(self):
        assert 50 < get_confidence_level(1.0) < 80
        assert get_confidence_level(1.2819) <= 80

    def test_monotonic(self):
        previous = get_confidence_level(0)
        for step in range(1, 4001):
            current = get_confidence_level(step / 1000)
            assert current >= previous
            previous = current

    def test_symmetric(self):
        for z in (0.3, 0.9, 1.5, 2.0, 2.7):
            assert get_confidence_level(z) == get_confidence_level(-z)

    def test_nan_is_zero(self):
        assert get_confidence_level(float("nan")) == 0


class TestLift:
    def test_relative_change(self):
        assert calculate_lift(Counts(100, 10), Counts(100, 15)) == pytest.approx(50.0)
        assert calculate_lift(Counts(100, 20), Counts(100, 15)) == pytest.approx(-25.0)

    def test_zero_baseline(self):
        assert calculate_lift(Counts(100, 0), Counts(100, 5)) == 100
        assert calculate_lift(Counts(100, 0), Counts(100, 0)) == 0

    def test_empty_arms(self):
        assert calculate_lift(Counts(0, 0), Counts(0, 0)) == 0


class TestSignificance:
    def test_default_threshold(self):
        assert is_significant(1.96)
        assert is_significant(-2.5)
        assert not is_significant(1.95)

    def test_custom_threshold(self):
        assert is_significant(1.7, threshold=1.645)
        assert not is_significant(2.0, threshold=2.576)


class TestSampleSize:
    def test_standard_case(self):
        n = calculate_minimum_sample_size(0.10, 0.10, 95, 0.8)
        assert isinstance(n, int)
        # 2 * 2.802^2 * 0.105 * 0.895 / 0.01^2 ~= 14,757
        assert 14_000 < n < 16_000

    def test_higher_confidence_needs_more(self):
        assert calculate_minimum_sample_size(0.1, 0.1, 99) > calculate_minimum_sample_size(0.1, 0.1, 95)
        assert calculate_minimum_sample_size(0.1, 0.1, 95, 0.9) > calculate_minimum_sample_size(0.1, 0.1, 95, 0.8)

    def test_unknown_levels_fall_back(self):
        assert calculate_minimum_sample_size(0.1, 0.1, 97, 0.85) == calculate_minimum_sample_size(0.1, 0.1, 95, 0.8)

    def test_zero_effect_is_infinite(self):
        assert calculate_minimum_sample_size(0.1, 0.0) == math.inf
        assert calculate_minimum_sample_size(0.0, 0.2) == math.inf

    def test_high_baseline_stays_positive(self):
        # p2 = min(1, 0.97 * 1.1) = 1.0; 2 * 2.802^2 * 0.985 * 0.015 / 0.03^2 ~= 257.8
        assert calculate_minimum_sample_size(0.97, 0.10) == 258
        assert calculate_minimum_sample_size(0.5, -3.0) > 0

    def test_non_finite_inputs(self):
        assert calculate_minimum_sample_size(float("nan"), 0.1) == math.inf
        assert calculate_minimum_sample_size(0.1, float("nan")) == math.inf
        assert calculate_minimum_sample_size(float("inf"), 0.1) == math.inf
        assert estimate_days_to_significance(1000, float("nan"), 0.1) == math.inf

    def test_days_to_significance(self):
        per_variant = calculate_minimum_sample_size(0.1, 0.1)
        days = estimate_days_to_significance(1000, 0.1, 0.1)
        assert days == math.ceil(per_variant * 2 / 1000)
        assert estimate_days_to_significance(1000, 0.1, 0.1, num_variants=3) >= days

    def test_days_degenerate(self):
        assert estimate_days_to_significance(0, 0.1, 0.1) == math.inf
        assert estimate_days_to_significance(1000, 0.1, 0.0) == math.inf


class TestAnalyzeExperiment:
    def test_needs_two_variants(self):
        assert analyze_experiment([]) == AnalysisSummary(is_significant=False)
        summary = analyze_experiment([_stats("control", 1000, 100)])
        assert summary.is_significant is False
        assert summary.winner is None
        assert summary.z_score is None

    def test_winner_is_better_variant(self):
        summary = analyze_experiment([
            _stats("control", 1000, 100),
            _stats("variant_a", 1000, 150),
        ])
        assert summary.is_significant
        assert summary.winner == "variant_a"
        assert summary.confidence_level == 99
        assert summary.lift_percentage == 50.0
        assert summary.z_score == round(summary.z_score, 3)

    def test_control_wins_when_variant_worse(self):
        summary = analyze_experiment([
            _stats("control", 1000, 150),
            _stats("variant_a", 1000, 100),
        ])
        assert summary.is_significant
        assert summary.winner == "control"
        assert summary.z_score < 0

    def test_control_found_by_name(self):
        summary = analyze_experiment([
            _stats("v_b", 1000, 150),
            _stats("v_a", 1000, 100, name="control"),
        ])
        assert summary.winner == "v_b"
        assert summary.z_score > 0

    def test_strongest_variant_reported(self):
        summary = analyze_experiment([
            _stats("control", 2000, 200),
            _stats("small", 2000, 210),
            _stats("big", 2000, 280),
        ])
        assert summary.winner == "big"
        assert summary.lift_percentage == 40.0

    def test_not_significant_has_no_winner(self):
        summary = analyze_experiment([
            _stats("control", 200, 20),
            _stats("variant_a", 200, 22),
        ])
        assert not summary.is_significant
        assert summary.winner is None
        assert summary.confidence_level < 95

    def test_tiny_sample_is_neutral(self):
        summary = analyze_experiment([_stats("control", 5, 1), _stats("variant_a", 5, 5)])
        assert summary.z_score == 0
        assert summary.confidence_level == 0
        assert not summary.is_significant


class TestStatusMessage:
    def test_states(self):
        assert classify_results(99, True, "v1", 50) == ResultState.INSUFFICIENT_DATA
        assert classify_results(99, True, "v1", None) == ResultState.INSUFFICIENT_DATA
        assert classify_results(85, False, None, 500) == ResultState.TRENDING
        assert classify_results(60, False, None, 500) == ResultState.INCONCLUSIVE
        assert classify_results(95, True, "v1", 500) == ResultState.WINNER_FOUND
        assert classify_results(95, True, None, 500) == ResultState.SIGNIFICANT

    def test_messages(self):
        assert get_status_message(0, False).startswith("Collecting data")
        assert "85% confidence" in get_status_message(85, False, None, 500)
        assert get_status_message(60, False, None, 500).startswith("No significant difference")
        assert get_status_message(95, True, "variant_a", 500) == (
            "Winner found! variant_a with 95% confidence."
        )
        assert get_status_message(99, True, None, 500) == (
            "Statistically significant result at 99% confidence."
        )
