"""
Test A/B significance and winner selection
"""
import pytest

from deployment.ab_testing import evaluate, two_proportion_significance, MAX_CONFIDENCE
from deployment.models import ABTestResults, ABTestWinner, VariantResults


def _results(control_users, control_conv, treatment_users, treatment_conv):
    return ABTestResults(
        test_name="composer",
        control=VariantResults(name="classic", users=control_users, conversions=control_conv),
        treatment=VariantResults(name="rich", users=treatment_users, conversions=treatment_conv),
    )


def test_no_users_means_no_significance():
    assert two_proportion_significance(VariantResults("a"), VariantResults("b")) == 0.0


def test_zero_variance_means_no_significance():
    """Nobody converted in either variant"""
    results = _results(500, 0, 500, 0)
    assert two_proportion_significance(results.control, results.treatment) == 0.0


def test_significant_treatment_wins():
    results = evaluate(_results(1000, 100, 1000, 150), minimum_sample_size=100)

    assert results.statistical_significance > 0.99
    assert results.confidence == MAX_CONFIDENCE
    assert results.winner == ABTestWinner.TREATMENT


def test_significant_control_wins():
    results = evaluate(_results(1000, 150, 1000, 100), minimum_sample_size=100)
    assert results.winner == ABTestWinner.CONTROL


def test_small_difference_is_inconclusive():
    results = evaluate(_results(1000, 100, 1000, 102), minimum_sample_size=100)

    assert results.statistical_significance < 0.95
    assert results.winner == ABTestWinner.INCONCLUSIVE


def test_no_winner_before_minimum_sample():
    results = evaluate(_results(1000, 100, 50, 40), minimum_sample_size=100)

    assert results.statistical_significance > 0.95
    assert results.winner is None


def test_significance_is_bounded():
    results = evaluate(_results(10000, 0, 10000, 10000), minimum_sample_size=100)

    assert 0.0 <= results.statistical_significance <= 1.0
    assert results.statistical_significance == pytest.approx(1.0)
