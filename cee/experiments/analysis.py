"""Analysis and reporting over an experiment snapshot.

``ExperimentAnalyzer`` is pure: it reads an ``ExperimentSnapshot`` loaded in a
single pass and never touches storage. Missing data degrades to empty or zero
sections instead of raising, so reports stay renderable at any point in an
experiment's life.
"""

import math
from collections import defaultdict
from datetime import date, datetime
from typing import Any

from cee.core.settings import ExperimentSettings
from cee.experiments import statistics
from cee.experiments.metrics import (
    MetricFamily,
    SignificanceTest,
    expected_minimum_sample_size,
    get_aggregator,
    metric_family,
)
from cee.experiments.schemas import (
    ExperimentSnapshot,
    MetricComparison,
    MetricStats,
    PerformanceReport,
    Priority,
    Recommendation,
    RecommendationType,
    SampleRecord,
    SignificanceResult,
    TrendSignal,
    VariantSnapshot,
    WinnerVerdict,
)
from cee.experiments.status import TERMINAL_STATUSES, ExperimentStatus

# Minimum days of data before a trend is reported
MIN_TREND_DAYS = 3

# Run length that covers a full weekly traffic cycle
FULL_WEEK_DAYS = 7

FUNNEL_STEPS = ("impressions", "clicks", "conversions")


def _group_by_metric(samples: list[SampleRecord]) -> dict[str, list[SampleRecord]]:
    grouped: dict[str, list[SampleRecord]] = defaultdict(list)
    for sample in samples:
        grouped[sample.metric_name].append(sample)
    return dict(sorted(grouped.items()))


def _daily_averages(samples: list[SampleRecord]) -> dict[date, float]:
    by_day: dict[date, list[float]] = defaultdict(list)
    for sample in samples:
        by_day[sample.recorded_date].append(sample.value)
    return {day: sum(values) / len(values) for day, values in sorted(by_day.items())}


class ExperimentAnalyzer:
    """Derives statistics, winner verdicts and recommendations for one experiment.

    Args:
        snapshot: Experiment, variants and samples read in one pass.
        settings: Trend window and threshold. Defaults apply when omitted.
        today: Reference day for elapsed-time calculations.
    """

    def __init__(
        self,
        snapshot: ExperimentSnapshot,
        settings: ExperimentSettings | None = None,
        today: date | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.settings = settings or ExperimentSettings()
        self.today = today or date.today()

    @property
    def primary_goal(self) -> str:
        return self.snapshot.primary_goal

    @property
    def is_draft(self) -> bool:
        return self.snapshot.status == ExperimentStatus.DRAFT.value

    @property
    def has_samples(self) -> bool:
        return any(v.samples for v in self.snapshot.variants)

    # ==================== Per-variant aggregates ====================

    def performance_metrics(self, variant: VariantSnapshot) -> dict[str, MetricStats]:
        """Aggregates for every metric recorded against a variant.

        Args:
            variant: Variant to summarise.

        Returns:
            Mapping of metric name to its statistics, empty without samples.
        """
        return {
            metric_name: get_aggregator(metric_name).aggregate(metric_name, rows)
            for metric_name, rows in _group_by_metric(variant.samples).items()
        }

    def compare_with_control(
        self, variant: VariantSnapshot
    ) -> dict[str, MetricComparison]:
        """Compare a variant with the control on every shared metric.

        Returns an empty mapping when the control has no samples.
        """
        control = self.snapshot.control
        if control is None or not control.samples:
            return {}

        control_metrics = self.performance_metrics(control)
        variant_metrics = self.performance_metrics(variant)
        comparisons: dict[str, MetricComparison] = {}
        for metric_name, variant_stats in variant_metrics.items():
            control_stats = control_metrics.get(metric_name)
            if control_stats is None:
                continue
            comparisons[metric_name] = get_aggregator(metric_name).compare(
                metric_name, control_stats, variant_stats
            )
        return comparisons

    # ==================== Significance ====================

    def _primary_rows(self, variant: VariantSnapshot) -> list[SampleRecord]:
        return [s for s in variant.samples if s.metric_name == self.primary_goal]

    def _tested_treatments(self) -> list[VariantSnapshot]:
        return [v for v in self.snapshot.treatments if self._primary_rows(v)]

    def significance(
        self, variant: VariantSnapshot, comparisons: int = 1
    ) -> SignificanceResult:
        """Test a variant's primary goal against the control.

        Args:
            variant: Treatment variant.
            comparisons: Number of variants tested simultaneously; the
                p-value is Bonferroni-adjusted by this factor.

        Returns:
            SignificanceResult; neutral when either side lacks data.
        """
        metric_name = self.primary_goal
        aggregator = get_aggregator(metric_name)
        required = float(self.snapshot.confidence_level)
        result = SignificanceResult(
            variant_id=variant.id,
            variant_name=variant.name,
            metric_name=metric_name,
            test=aggregator.test.value,
            required_confidence=required,
            sample_size=variant.sample_size,
            meets_sample_size=variant.sample_size >= self.snapshot.minimum_sample_size,
        )

        control = self.snapshot.control
        variant_rows = self._primary_rows(variant)
        control_rows = self._primary_rows(control) if control else []
        if not variant_rows or not control_rows:
            return result

        if aggregator.test is SignificanceTest.TWO_PROPORTION_Z:
            variant_n = sum(s.sample_size for s in variant_rows)
            control_n = sum(s.sample_size for s in control_rows)
            statistic, p_value = statistics.two_proportion_z_test(
                sum(s.value / 100 * s.sample_size for s in variant_rows),
                variant_n,
                sum(s.value / 100 * s.sample_size for s in control_rows),
                control_n,
            )
        else:
            statistic, p_value = statistics.welch_t_test(
                [s.value for s in variant_rows],
                [s.value for s in control_rows],
            )

        if math.isnan(p_value):
            return result

        comparison = aggregator.compare(
            metric_name,
            aggregator.aggregate(metric_name, control_rows),
            aggregator.aggregate(metric_name, variant_rows),
        )
        adjusted = statistics.bonferroni(p_value, comparisons)
        alpha = 1 - required / 100

        result.statistic = statistic if math.isfinite(statistic) else 0.0
        result.p_value = p_value
        result.adjusted_p_value = adjusted
        result.confidence_achieved = round((1 - adjusted) * 100, 4)
        result.relative_improvement = comparison.relative_improvement
        result.improves_on_control = comparison.is_better
        result.is_significant = adjusted <= alpha
        return result

    def declare_winner(self) -> WinnerVerdict:
        """Pick the winning variant on the primary goal, if any.

        A variant is a candidate only when its own sample size reaches the
        experiment minimum and it beats the control at the configured
        confidence level after correction for the number of variants.
        """
        tested = self._tested_treatments()
        results = [self.significance(v, comparisons=len(tested)) for v in tested]
        verdict = WinnerVerdict(
            metric_name=self.primary_goal,
            required_confidence=float(self.snapshot.confidence_level),
            results=results,
        )
        if not results:
            return verdict

        leading = [r for r in results if r.improves_on_control]
        if leading:
            leader = max(leading, key=self._improvement_key)
            verdict.leading_variant_id = leader.variant_id
            verdict.leading_variant_name = leader.variant_name

        candidates = [r for r in results if r.is_candidate]
        if candidates:
            winner = max(
                candidates,
                key=lambda r: (r.confidence_achieved, self._improvement_key(r)),
            )
            verdict.declared = True
            verdict.winner_variant_id = winner.variant_id
            verdict.winner_variant_name = winner.variant_name
            verdict.confidence_achieved = winner.confidence_achieved
        else:
            verdict.confidence_achieved = max(r.confidence_achieved for r in results)
        return verdict

    def _improvement_key(self, result: SignificanceResult) -> float:
        improvement = result.relative_improvement or 0.0
        if get_aggregator(result.metric_name).lower_is_better(result.metric_name):
            return -improvement
        return improvement

    # ==================== Trends ====================

    def performance_trends(self) -> dict[str, dict[str, dict[str, float]]]:
        """Daily averages per variant and metric.

        Returns:
            ``{variant_name: {metric_name: {iso_date: average}}}``.
        """
        trends: dict[str, dict[str, dict[str, float]]] = {}
        for variant in self.snapshot.variants:
            per_metric: dict[str, dict[str, float]] = {}
            for metric_name, rows in _group_by_metric(variant.samples).items():
                per_metric[metric_name] = {
                    day.isoformat(): average
                    for day, average in _daily_averages(rows).items()
                }
            trends[variant.name] = per_metric
        return trends

    def trend_signals(self) -> list[TrendSignal]:
        """Direction of each variant's primary goal over the recent window."""
        window = self.settings.trend_window_days
        signals: list[TrendSignal] = []
        for variant in self.snapshot.variants:
            series = list(_daily_averages(self._primary_rows(variant)).values())
            series = series[-window:]
            signal = TrendSignal(
                variant_id=variant.id,
                variant_name=variant.name,
                metric_name=self.primary_goal,
                days=len(series),
            )
            if len(series) >= MIN_TREND_DAYS:
                slope = statistics.trend_slope(series)
                mean = sum(series) / len(series)
                drift = 0.0
                if abs(mean) > 1e-10:
                    drift = slope * (len(series) - 1) / abs(mean)
                signal.slope = slope
                signal.relative_drift = drift
                signal.is_moving = abs(drift) >= self.settings.trend_threshold
            signals.append(signal)
        return signals

    # ==================== Report sections ====================

    def _days_running(self) -> int:
        start = self.snapshot.start_date
        if start is None:
            return 0
        end = self.today
        if self.snapshot.status in {s.value for s in TERMINAL_STATUSES}:
            end = min(end, self._end_day() or end)
        return max((end - start.date()).days, 0)

    def _end_day(self) -> date | None:
        completed_at = self.snapshot.metadata.get("completed_at")
        if isinstance(completed_at, str):
            try:
                return datetime.fromisoformat(completed_at).date()
            except ValueError:
                pass
        if self.snapshot.end_date is not None:
            return self.snapshot.end_date.date()
        return None

    def test_summary(self) -> dict[str, Any]:
        snapshot = self.snapshot
        days_running = self._days_running()
        return {
            "experiment_id": snapshot.id,
            "name": snapshot.name,
            "status": snapshot.status,
            "campaign_ref": snapshot.campaign_ref,
            "primary_goal": snapshot.primary_goal,
            "secondary_goals": snapshot.secondary_goals,
            "confidence_level": snapshot.confidence_level,
            "minimum_sample_size": snapshot.minimum_sample_size,
            "total_sample_size": snapshot.total_sample_size,
            "variant_count": len(snapshot.treatments),
            "start_date": (
                snapshot.start_date.isoformat() if snapshot.start_date else None
            ),
            "end_date": snapshot.end_date.isoformat() if snapshot.end_date else None,
            "duration_days": snapshot.duration_days,
            "days_running": days_running,
            "days_remaining": max(snapshot.duration_days - days_running, 0),
            "winner_variant_id": snapshot.winner_variant_id,
            "statistical_significance": snapshot.statistical_significance,
        }

    def _arm(self, variant: VariantSnapshot, traffic_split: float) -> dict[str, Any]:
        return {
            "variant_id": variant.id,
            "variant_name": variant.name,
            "content_ref": variant.content_ref,
            "content_title": variant.content_title,
            "traffic_split": traffic_split,
            "status": variant.status,
            "sample_size": variant.sample_size,
            "metrics": {
                name: stats.model_dump()
                for name, stats in self.performance_metrics(variant).items()
            },
        }

    def current_results(self) -> dict[str, Any]:
        """Control snapshot, per-variant aggregates and the statistical section."""
        snapshot = self.snapshot
        allocated = sum(v.traffic_split for v in snapshot.treatments)

        control = snapshot.control
        control_section = (
            self._arm(control, round(max(100.0 - allocated, 0.0), 4)) if control else {}
        )

        variants: list[dict[str, Any]] = []
        for variant in snapshot.treatments:
            entry = self._arm(variant, variant.traffic_split)
            entry["comparison"] = {
                name: comparison.model_dump()
                for name, comparison in self.compare_with_control(variant).items()
            }
            variants.append(entry)

        return {
            "control": control_section,
            "variants": variants,
            "statistical_analysis": self.statistical_analysis(),
        }

    def statistical_analysis(self) -> dict[str, Any]:
        """Verdict, test power proxy, effect size and confidence intervals."""
        snapshot = self.snapshot
        verdict = self.declare_winner()
        total = snapshot.total_sample_size
        minimum = snapshot.minimum_sample_size
        family = metric_family(self.primary_goal)

        intervals: dict[str, dict[str, float]] = {}
        for variant in snapshot.variants:
            rows = self._primary_rows(variant)
            if not rows:
                continue
            if family is MetricFamily.RATE:
                n = sum(s.sample_size for s in rows)
                rate = sum(s.value * s.sample_size for s in rows) / n if n else 0.0
                lower, upper = statistics.proportion_confidence_interval(rate, n)
            else:
                lower, upper = statistics.mean_confidence_interval(
                    [s.value for s in rows]
                )
            intervals[variant.name] = {"lower": lower, "upper": upper}

        effect_size = 0.0
        best_id = verdict.winner_variant_id or verdict.leading_variant_id
        control = snapshot.control
        best = snapshot.get_variant(best_id) if best_id is not None else None
        if best is not None and control is not None:
            aggregator = get_aggregator(self.primary_goal)
            best_stats = aggregator.aggregate(
                self.primary_goal, self._primary_rows(best)
            )
            control_stats = aggregator.aggregate(
                self.primary_goal, self._primary_rows(control)
            )
            effect_size = statistics.cohens_d(
                best_stats.average,
                best_stats.std,
                control_stats.average,
                control_stats.std,
            )

        return {
            "primary_metric": self.primary_goal,
            "metric_family": family.value,
            "confidence_level": snapshot.confidence_level,
            "minimum_sample_size": minimum,
            "expected_minimum_sample_size": expected_minimum_sample_size(
                self.primary_goal
            ),
            "total_sample_size": total,
            "test_power": round(min(total / minimum, 1.0) * 100, 2) if minimum else 0.0,
            "winner_declared": verdict.declared,
            "winner_variant_id": verdict.winner_variant_id,
            "winner_variant_name": verdict.winner_variant_name,
            "leading_variant_id": verdict.leading_variant_id,
            "leading_variant_name": verdict.leading_variant_name,
            "confidence_achieved": verdict.confidence_achieved,
            "effect_size": effect_size,
            "confidence_intervals": intervals,
            "results": [r.model_dump() for r in verdict.results],
        }

    def conversion_funnel(self) -> dict[str, dict[str, float]]:
        """Impressions, clicks and conversions totals per variant."""
        funnel: dict[str, dict[str, float]] = {}
        for variant in self.snapshot.variants:
            totals = {step: 0.0 for step in FUNNEL_STEPS}
            for sample in variant.samples:
                if sample.metric_name in totals:
                    totals[sample.metric_name] += sample.value
            if not any(totals.values()):
                continue
            impressions = totals["impressions"]
            clicks = totals["clicks"]
            funnel[variant.name] = {
                **totals,
                "click_through_rate": (
                    clicks / impressions * 100 if impressions else 0.0
                ),
                "conversion_rate": (
                    totals["conversions"] / clicks * 100 if clicks else 0.0
                ),
            }
        return funnel

    def key_insights(self) -> list[str]:
        snapshot = self.snapshot
        if not self.has_samples:
            return ["No results have been recorded yet"]

        insights: list[str] = []
        verdict = self.declare_winner()
        best_id = verdict.winner_variant_id or verdict.leading_variant_id
        best = snapshot.get_variant(best_id) if best_id is not None else None
        if best is not None:
            comparison = self.compare_with_control(best).get(self.primary_goal)
            if comparison is not None:
                improvement = (
                    f" ({comparison.relative_improvement:+.1f}% vs control)"
                    if comparison.relative_improvement is not None
                    else ""
                )
                insights.append(
                    f"Best performer: {best.name} with "
                    f"{comparison.variant_average:.2f} average "
                    f"{self.primary_goal}{improvement}"
                )
        else:
            insights.append(
                f"No variant is outperforming the control on {self.primary_goal}"
            )

        insights.append(
            f"Total traffic: {snapshot.total_sample_size:,} samples across "
            f"{len(snapshot.variants)} arms"
        )
        insights.append(
            f"Duration: {self._days_running()} of {snapshot.duration_days} planned days"
        )
        return insights

    def recommendations(self) -> list[Recommendation]:
        """Next steps for the experiment; empty only for drafts."""
        if self.is_draft:
            return []

        snapshot = self.snapshot
        verdict = self.declare_winner()
        total = snapshot.total_sample_size
        minimum = snapshot.minimum_sample_size
        finished = snapshot.status in {s.value for s in TERMINAL_STATUSES}
        recs: list[Recommendation] = []

        if total < minimum:
            recs.append(
                Recommendation(
                    type=RecommendationType.SAMPLE_SIZE,
                    message=(
                        f"Insufficient sample size: {total:,} of {minimum:,} required "
                        f"samples collected ({total / minimum * 100:.0f}%). "
                        "Continue collecting data before drawing conclusions."
                    ),
                    priority=Priority.HIGH,
                )
            )
        expected = expected_minimum_sample_size(self.primary_goal)
        if minimum < expected:
            recs.append(
                Recommendation(
                    type=RecommendationType.SAMPLE_SIZE,
                    message=(
                        f"A minimum sample size of {minimum:,} is low for "
                        f"{self.primary_goal}; at least {expected:,} is recommended."
                    ),
                    priority=Priority.LOW,
                )
            )

        days_running = self._days_running()
        if not finished and snapshot.status == ExperimentStatus.ACTIVE.value:
            if days_running < FULL_WEEK_DAYS <= snapshot.duration_days:
                recs.append(
                    Recommendation(
                        type=RecommendationType.DURATION,
                        message=(
                            f"The test has run for {days_running} days; run it for "
                            f"at least {FULL_WEEK_DAYS} days to cover weekly traffic "
                            "patterns."
                        ),
                        priority=Priority.LOW,
                    )
                )
            elif days_running >= snapshot.duration_days and not verdict.declared:
                recs.append(
                    Recommendation(
                        type=RecommendationType.DURATION,
                        message=(
                            "The planned duration has elapsed without a significant "
                            "result. Extend the test or increase its traffic."
                        ),
                        priority=Priority.MEDIUM,
                    )
                )

        if verdict.declared:
            result = next(
                r for r in verdict.results if r.variant_id == verdict.winner_variant_id
            )
            improvement = (
                f" by {abs(result.relative_improvement):.1f}%"
                if result.relative_improvement is not None
                else ""
            )
            recs.append(
                Recommendation(
                    type=RecommendationType.WINNER,
                    message=(
                        f"{verdict.winner_variant_name} outperforms the control on "
                        f"{self.primary_goal}{improvement} with "
                        f"{verdict.confidence_achieved:.1f}% confidence."
                    ),
                    priority=Priority.HIGH,
                )
            )
        else:
            if verdict.leading_variant_id is not None:
                recs.append(
                    Recommendation(
                        type=RecommendationType.LEADING_VARIANT,
                        message=(
                            f"{verdict.leading_variant_name} is currently the stronger "
                            f"performer on {self.primary_goal}, but the result is not "
                            "yet significant at "
                            f"{snapshot.confidence_level}% confidence "
                            f"({verdict.confidence_achieved:.1f}% achieved)."
                        ),
                        priority=Priority.MEDIUM,
                    )
                )
            if total >= minimum:
                recs.append(
                    Recommendation(
                        type=RecommendationType.INCONCLUSIVE,
                        message=(
                            "Results are not statistically significant. Consider "
                            "running the test longer or testing a bolder change."
                        ),
                        priority=Priority.MEDIUM,
                    )
                )

        for signal in self.trend_signals():
            if not signal.is_moving:
                continue
            direction = "rising" if signal.relative_drift > 0 else "falling"
            action = (
                "Consider re-testing to confirm the result."
                if finished
                else "Extend the test until it stabilises."
            )
            recs.append(
                Recommendation(
                    type=RecommendationType.TREND,
                    message=(
                        f"{signal.metric_name} for {signal.variant_name} is still "
                        f"{direction} ({signal.relative_drift:+.0%} over the last "
                        f"{signal.days} days). {action}"
                    ),
                    priority=Priority.LOW if finished else Priority.MEDIUM,
                )
            )

        if snapshot.status == ExperimentStatus.COMPLETED.value:
            if verdict.declared:
                winner = snapshot.get_variant(verdict.winner_variant_id)
                content = f" ({winner.content_ref})" if winner else ""
                message = (
                    f"Roll out {verdict.winner_variant_name}{content} as the new "
                    "default content."
                )
                priority = Priority.HIGH
            else:
                message = (
                    "Keep the control content; no variant beat it with enough "
                    "confidence."
                )
                priority = Priority.MEDIUM
            recs.append(
                Recommendation(
                    type=RecommendationType.IMPLEMENTATION,
                    message=message,
                    priority=priority,
                )
            )
            follow_up = (
                f" on {', '.join(snapshot.secondary_goals)}"
                if snapshot.secondary_goals
                else ""
            )
            recs.append(
                Recommendation(
                    type=RecommendationType.FUTURE_TESTING,
                    message=(
                        "Use these learnings to plan a follow-up test"
                        f"{follow_up}, varying a single element at a time."
                    ),
                    priority=Priority.LOW,
                )
            )

        return recs

    def export_data(self) -> dict[str, Any]:
        """Flat dump for offline analysis.

        Carries the experiment record, each variant with its metric aggregates,
        every raw sample in the snapshot (already narrowed to the requested
        date range) and the ``current_results`` section as summary metrics.
        """
        snapshot = self.snapshot
        return {
            "test_details": snapshot.model_dump(mode="json", exclude={"variants"}),
            "variants": [
                {
                    **self._arm(variant, variant.traffic_split),
                    "is_control": variant.is_control,
                    "sample_count": len(variant.samples),
                }
                for variant in snapshot.variants
            ],
            "results": [
                {"variant_name": variant.name, **sample.model_dump(mode="json")}
                for variant in snapshot.variants
                for sample in sorted(
                    variant.samples, key=lambda s: (s.recorded_date, s.id)
                )
            ],
            "summary_metrics": self.current_results(),
        }

    def performance_report(self) -> PerformanceReport:
        """Full report; empty for draft experiments."""
        if self.is_draft:
            return PerformanceReport()

        return PerformanceReport(
            test_summary=self.test_summary(),
            current_results=self.current_results(),
            performance_trends=self.performance_trends(),
            statistical_analysis={
                **self.statistical_analysis(),
                "conversion_funnel": self.conversion_funnel(),
            },
            recommendations=self.recommendations(),
            key_insights=self.key_insights(),
            export_data=self.export_data(),
        )
