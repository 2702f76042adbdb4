"""Metric families and their aggregation strategies.

Every recorded ``metric_name`` maps to one ``MetricAggregator``. The
aggregator knows how values of that family are validated, summarised,
rated and compared between a variant and the control.
"""

import math
from collections.abc import Sequence
from enum import Enum

from cee.experiments.schemas import MetricComparison, MetricStats, SampleRecord


class MetricFamily(str, Enum):
    """Family a metric belongs to."""

    RATE = "rate"  # Percentages in [0, 100]
    COUNT = "count"  # Non-negative event counts
    DURATION = "duration"  # Seconds, at most one day
    COST = "cost"  # Money amounts and ratios
    GENERIC = "generic"  # Anything unrecognised


class SignificanceTest(str, Enum):
    """Statistical test used to compare a family against the control."""

    TWO_PROPORTION_Z = "two_proportion_z"
    WELCH_T = "welch_t"


RATING_LABELS = ("poor", "fair", "good", "very_good", "excellent")

# Upper bounds (exclusive) of the poor/fair/good/very_good bands for rates
_RATE_BANDS = (1.0, 3.0, 5.0, 10.0)

# Upper bounds (inclusive) of the excellent..fair bands for bounce rate
_BOUNCE_BANDS = (20.0, 40.0, 60.0, 80.0)

MAX_DURATION_SECONDS = 86400.0


class MetricAggregator:
    """Base strategy shared by all metric families."""

    family: MetricFamily = MetricFamily.GENERIC
    test: SignificanceTest = SignificanceTest.WELCH_T
    default_minimum_sample_size: int = 20
    minimum_value: float | None = None
    maximum_value: float | None = None

    def validate(self, metric_name: str, value: float) -> str | None:
        """Return an error message if ``value`` is not valid for the family."""
        if math.isnan(value) or math.isinf(value):
            return f"Value for {metric_name} must be a finite number"
        if self.minimum_value is not None and value < self.minimum_value:
            return self._range_error(metric_name, value)
        if self.maximum_value is not None and value > self.maximum_value:
            return self._range_error(metric_name, value)
        return None

    def _range_error(self, metric_name: str, value: float) -> str:
        if self.maximum_value is None:
            return (
                f"Value {value:g} for {metric_name} must be >= "
                f"{self.minimum_value:g}"
            )
        return (
            f"Value {value:g} for {metric_name} must be between "
            f"{self.minimum_value:g} and {self.maximum_value:g}"
        )

    def lower_is_better(self, metric_name: str) -> bool:
        return False

    def expected_minimum_sample_size(self, metric_name: str) -> int:
        return self.default_minimum_sample_size

    def rating(self, metric_name: str, average: float) -> str | None:
        """Qualitative band of an average, None where the family has none."""
        return None

    def aggregate(
        self, metric_name: str, samples: Sequence[SampleRecord]
    ) -> MetricStats:
        """Summarise the rows of one metric.

        ``average`` is the unweighted mean over rows.
        """
        values = [s.value for s in samples]
        if not values:
            return MetricStats(metric_name=metric_name)

        count = len(values)
        total = sum(values)
        average = total / count
        sample_size = sum(s.sample_size for s in samples)
        weighted_average = (
            sum(s.value * s.sample_size for s in samples) / sample_size
            if sample_size > 0
            else average
        )

        std = 0.0
        if count > 1:
            variance = sum((v - average) ** 2 for v in values) / (count - 1)
            std = math.sqrt(variance)

        return MetricStats(
            metric_name=metric_name,
            count=count,
            total=total,
            average=average,
            weighted_average=weighted_average,
            sample_size=sample_size,
            std=std,
            min_value=min(values),
            max_value=max(values),
            rating=self.rating(metric_name, average),
        )

    def compare(
        self,
        metric_name: str,
        control: MetricStats,
        variant: MetricStats,
    ) -> MetricComparison:
        """Compare a variant's aggregates with the control's."""
        delta = variant.average - control.average
        relative_improvement: float | None = None
        if abs(control.average) > 1e-10:
            relative_improvement = delta / abs(control.average) * 100

        if self.lower_is_better(metric_name):
            is_better = delta < 0
        else:
            is_better = delta > 0

        return MetricComparison(
            metric_name=metric_name,
            control_average=control.average,
            variant_average=variant.average,
            delta=delta,
            relative_improvement=relative_improvement,
            is_better=is_better,
        )


class RateAggregator(MetricAggregator):
    """Percentages such as click or conversion rate."""

    family = MetricFamily.RATE
    test = SignificanceTest.TWO_PROPORTION_Z
    default_minimum_sample_size = 100
    minimum_value = 0.0
    maximum_value = 100.0

    def lower_is_better(self, metric_name: str) -> bool:
        return metric_name == "bounce_rate"

    def expected_minimum_sample_size(self, metric_name: str) -> int:
        if metric_name.startswith("engagement"):
            return 50
        return self.default_minimum_sample_size

    def rating(self, metric_name: str, average: float) -> str | None:
        if metric_name == "bounce_rate":
            for label, bound in zip(reversed(RATING_LABELS), _BOUNCE_BANDS):
                if average <= bound:
                    return label
            return RATING_LABELS[0]

        for label, bound in zip(RATING_LABELS, _RATE_BANDS):
            if average < bound:
                return label
        return RATING_LABELS[-1]


class CountAggregator(MetricAggregator):
    """Event counts: impressions, clicks, conversions and the like."""

    family = MetricFamily.COUNT
    minimum_value = 0.0


class DurationAggregator(MetricAggregator):
    """Time spent, in seconds."""

    family = MetricFamily.DURATION
    minimum_value = 0.0
    maximum_value = MAX_DURATION_SECONDS


class CostAggregator(MetricAggregator):
    """Spend, revenue and return ratios."""

    family = MetricFamily.COST
    default_minimum_sample_size = 30
    minimum_value = 0.0

    def lower_is_better(self, metric_name: str) -> bool:
        return metric_name.startswith("cost_per_")


KNOWN_METRICS: dict[str, MetricFamily] = {
    "click_rate": MetricFamily.RATE,
    "conversion_rate": MetricFamily.RATE,
    "engagement_rate": MetricFamily.RATE,
    "open_rate": MetricFamily.RATE,
    "response_rate": MetricFamily.RATE,
    "share_rate": MetricFamily.RATE,
    "bounce_rate": MetricFamily.RATE,
    "impressions": MetricFamily.COUNT,
    "clicks": MetricFamily.COUNT,
    "conversions": MetricFamily.COUNT,
    "views": MetricFamily.COUNT,
    "shares": MetricFamily.COUNT,
    "likes": MetricFamily.COUNT,
    "comments": MetricFamily.COUNT,
    "signups": MetricFamily.COUNT,
    "purchases": MetricFamily.COUNT,
    "time_on_page": MetricFamily.DURATION,
    "cost_per_click": MetricFamily.COST,
    "cost_per_conversion": MetricFamily.COST,
    "revenue": MetricFamily.COST,
    "return_on_ad_spend": MetricFamily.COST,
}

_AGGREGATORS: dict[MetricFamily, MetricAggregator] = {
    MetricFamily.RATE: RateAggregator(),
    MetricFamily.COUNT: CountAggregator(),
    MetricFamily.DURATION: DurationAggregator(),
    MetricFamily.COST: CostAggregator(),
    MetricFamily.GENERIC: MetricAggregator(),
}


def metric_family(metric_name: str) -> MetricFamily:
    """Resolve the family of a metric by name."""
    family = KNOWN_METRICS.get(metric_name)
    if family is not None:
        return family
    if metric_name.endswith("_rate"):
        return MetricFamily.RATE
    if metric_name.startswith("cost_per_"):
        return MetricFamily.COST
    return MetricFamily.GENERIC


def get_aggregator(metric_name: str) -> MetricAggregator:
    """Get the aggregation strategy for a metric."""
    return _AGGREGATORS[metric_family(metric_name)]


def expected_minimum_sample_size(metric_name: str) -> int:
    return get_aggregator(metric_name).expected_minimum_sample_size(metric_name)


def lower_is_better(metric_name: str) -> bool:
    return get_aggregator(metric_name).lower_is_better(metric_name)
