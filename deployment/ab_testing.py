"""
A/B Test Evaluation

Statistical comparison of the control and treatment conversion rates of a
deployment's A/B test.
"""
from statistics import NormalDist
import math

from .models import ABTestResults, ABTestWinner, VariantResults

SIGNIFICANCE_LEVEL = 0.95
MAX_CONFIDENCE = 0.95


def two_proportion_significance(control: VariantResults, treatment: VariantResults) -> float:
    """
    Two-sided two-proportion z-test on conversions

    Returns:
        1 - p-value in [0, 1]; 0 when either variant has no users or the
        pooled rate leaves no variance to test against
    """
    if control.users <= 0 or treatment.users <= 0:
        return 0.0

    pooled_rate = (control.conversions + treatment.conversions) / (control.users + treatment.users)
    variance = pooled_rate * (1 - pooled_rate) * (1 / control.users + 1 / treatment.users)
    if variance <= 0:
        return 0.0

    z_score = abs(treatment.conversion_rate - control.conversion_rate) / math.sqrt(variance)
    p_value = 2 * (1 - NormalDist().cdf(z_score))

    return min(1.0, max(0.0, 1 - p_value))


def evaluate(results: ABTestResults, minimum_sample_size: int) -> ABTestResults:
    """
    Refresh significance, confidence and winner in place

    A winner is only declared once both variants reach ``minimum_sample_size``
    users: a significant difference picks the higher conversion rate, anything
    else is inconclusive.
    """
    significance = two_proportion_significance(results.control, results.treatment)

    results.statistical_significance = significance
    results.confidence = min(significance, MAX_CONFIDENCE)

    sample_reached = (
        results.control.users >= minimum_sample_size
        and results.treatment.users >= minimum_sample_size
    )

    if not sample_reached:
        results.winner = None
    elif significance < SIGNIFICANCE_LEVEL:
        results.winner = ABTestWinner.INCONCLUSIVE
    elif results.treatment.conversion_rate > results.control.conversion_rate:
        results.winner = ABTestWinner.TREATMENT
    else:
        results.winner = ABTestWinner.CONTROL

    return results
