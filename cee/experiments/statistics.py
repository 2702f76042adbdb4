"""Significance tests and interval estimates used by the analyzer.

All functions degrade to neutral results (statistic 0, p-value 1) when the
input is too small to test instead of raising.
"""

import math
from collections.abc import Sequence

from scipy import stats


def two_proportion_z_test(
    successes1: float,
    n1: int,
    successes2: float,
    n2: int,
) -> tuple[float, float]:
    """Two-sided two-proportion z-test.

    Args:
        successes1: Successes observed in the first group.
        n1: Observations in the first group.
        successes2: Successes observed in the second group.
        n2: Observations in the second group.

    Returns:
        Tuple of (z_statistic, p_value). Positive z means the first group's
        proportion is higher.
    """
    if n1 < 1 or n2 < 1:
        return (0.0, 1.0)

    p1 = successes1 / n1
    p2 = successes2 / n2
    pooled = (successes1 + successes2) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))

    if se < 1e-12:
        if abs(p1 - p2) < 1e-12:
            return (0.0, 1.0)
        return (math.copysign(math.inf, p1 - p2), 0.0)

    z = (p1 - p2) / se
    p_value = float(2 * stats.norm.sf(abs(z)))
    return (z, p_value)


def welch_t_test(
    values1: Sequence[float],
    values2: Sequence[float],
) -> tuple[float, float]:
    """Welch's t-test for two samples with unequal variances.

    Returns:
        Tuple of (t_statistic, p_value). Positive t means the first sample's
        mean is higher.
    """
    if len(values1) < 2 or len(values2) < 2:
        return (0.0, 1.0)

    mean1 = sum(values1) / len(values1)
    mean2 = sum(values2) / len(values2)
    var1 = sum((v - mean1) ** 2 for v in values1) / (len(values1) - 1)
    var2 = sum((v - mean2) ** 2 for v in values2) / (len(values2) - 1)

    # Constant samples: scipy would return nan
    if var1 / len(values1) + var2 / len(values2) < 1e-12:
        if abs(mean1 - mean2) < 1e-12:
            return (0.0, 1.0)
        return (math.copysign(math.inf, mean1 - mean2), 0.0)

    result = stats.ttest_ind(values1, values2, equal_var=False)
    t_stat = float(result.statistic)
    p_value = float(result.pvalue)
    if math.isnan(t_stat) or math.isnan(p_value):
        return (0.0, 1.0)
    return (t_stat, p_value)


def bonferroni(p_value: float, comparisons: int) -> float:
    """Bonferroni-adjust a p-value for ``comparisons`` simultaneous tests."""
    return min(1.0, p_value * max(comparisons, 1))


def mean_confidence_interval(
    values: Sequence[float],
    confidence: float = 0.95,
) -> tuple[float, float]:
    """Student-t confidence interval of the mean.

    A single value yields a zero-width interval; no values yield (0, 0).
    """
    n = len(values)
    if n == 0:
        return (0.0, 0.0)
    mean = sum(values) / n
    if n == 1:
        return (mean, mean)

    std = math.sqrt(sum((v - mean) ** 2 for v in values) / (n - 1))
    t_critical = float(stats.t.ppf((1 + confidence) / 2, df=n - 1))
    margin = t_critical * std / math.sqrt(n)
    return (mean - margin, mean + margin)


def proportion_confidence_interval(
    rate_percent: float,
    n: int,
    confidence: float = 0.95,
) -> tuple[float, float]:
    """Normal-approximation interval of a rate given as a percentage."""
    if n < 1:
        return (rate_percent, rate_percent)
    p = min(max(rate_percent / 100, 0.0), 1.0)
    z = float(stats.norm.ppf((1 + confidence) / 2))
    margin = z * math.sqrt(p * (1 - p) / n)
    return (max(0.0, p - margin) * 100, min(1.0, p + margin) * 100)


def cohens_d(mean1: float, std1: float, mean2: float, std2: float) -> float:
    """Cohen's d using the average of the two variances."""
    pooled_std = math.sqrt((std1**2 + std2**2) / 2)
    if pooled_std < 1e-10:
        return 0.0
    return (mean1 - mean2) / pooled_std


def trend_slope(values: Sequence[float]) -> float:
    """Least-squares slope of an evenly spaced series (change per step)."""
    if len(values) < 2:
        return 0.0
    if max(values) - min(values) < 1e-12:
        return 0.0
    result = stats.linregress(range(len(values)), values)
    slope = float(result.slope)
    return 0.0 if math.isnan(slope) else slope
