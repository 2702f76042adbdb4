"""Value types exchanged with the experiment engine.

Inputs (``ExperimentConfig``, ``ContentCandidate``, ``ResultEntry``), the
``OperationResult`` envelope returned by operator actions, read-side
snapshots loaded from storage, and the analysis/report models.
"""

import datetime as dt
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


# ==================== Operation envelope ====================


@dataclass
class OperationResult(Generic[T]):
    """Outcome of an operator action.

    Business-rule violations are collected in ``errors`` instead of raised.
    ``success`` is False when the operation was refused, in which case the
    stored state is unchanged.
    """

    success: bool
    value: T | None = None
    errors: list[str] = field(default_factory=list)
    not_found: bool = False

    @classmethod
    def ok(
        cls, value: T | None = None, errors: list[str] | None = None
    ) -> "OperationResult[T]":
        return cls(success=True, value=value, errors=list(errors or []))

    @classmethod
    def fail(cls, *errors: str, value: T | None = None) -> "OperationResult[T]":
        return cls(success=False, value=value, errors=list(errors))

    @classmethod
    def missing(
        cls, experiment_id: int, value: T | None = None
    ) -> "OperationResult[T]":
        """Refusal for an experiment id that does not exist."""
        return cls(
            success=False,
            value=value,
            errors=[f"Experiment {experiment_id} not found"],
            not_found=True,
        )

    def __bool__(self) -> bool:
        return self.success


# ==================== Inputs ====================


class ExperimentConfig(BaseModel):
    """Configuration for a new experiment.

    Field constraints are enforced by the orchestration service so that every
    violation is reported together rather than on the first failure.
    """

    name: str = Field(default="", description="Experiment name")
    description: str | None = Field(None, description="Free-form description")
    campaign_ref: str | None = Field(None, description="Owning campaign/plan")
    control_content_ref: str | None = Field(
        None, description="Baseline content artifact"
    )
    control_title: str | None = Field(None, description="Baseline content title")
    primary_goal: str = Field(default="click_rate", description="Goal metric name")
    secondary_goals: list[str] | None = Field(
        None, description="Additional metrics (defaulted from the primary goal)"
    )
    confidence_level: int = Field(default=95, description="Target confidence (%)")
    minimum_sample_size: int = Field(
        default=100, description="Aggregate sample size required to complete"
    )
    duration_days: int = Field(default=14, description="Planned duration in days")
    traffic_allocation: float = Field(
        default=100.0, description="Share of total traffic in the experiment (%)"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContentCandidate(BaseModel):
    """A pre-generated content artifact offered as control or variant."""

    content_ref: str = Field(..., min_length=1)
    title: str | None = None


class ResultEntry(BaseModel):
    """One performance observation pushed by an ingestion pipeline.

    The variant is addressed by id or, failing that, by name.
    """

    variant_id: int | None = None
    variant_name: str | None = None
    metric_name: str = Field(..., min_length=1)
    value: float
    sample_size: int = Field(default=1)
    date: dt.date | None = None
    data_source: str | None = None
    metadata: dict[str, Any] | None = None


# ==================== Read snapshots ====================


class SampleRecord(BaseModel):
    """Immutable copy of a MetricSample row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    variant_id: int
    metric_name: str
    value: float
    sample_size: int
    recorded_date: date
    data_source: str = "manual"


class VariantSnapshot(BaseModel):
    """Variant state plus its samples as read in one pass."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    content_ref: str
    traffic_split: float
    is_control: bool
    status: str
    sample_size: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    samples: list[SampleRecord] = Field(default_factory=list)

    @property
    def content_title(self) -> str | None:
        return self.metadata.get("content_title")


class ExperimentSnapshot(BaseModel):
    """Experiment state with every variant and sample, read in one pass."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    campaign_ref: str | None = None
    created_by: str | None = None
    control_content_ref: str
    primary_goal: str
    secondary_goals: list[str] = Field(default_factory=list)
    confidence_level: int
    minimum_sample_size: int
    duration_days: int
    traffic_allocation: float
    status: str
    start_date: datetime | None = None
    end_date: datetime | None = None
    winner_variant_id: int | None = None
    statistical_significance: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    variants: list[VariantSnapshot] = Field(default_factory=list)

    @property
    def control(self) -> VariantSnapshot | None:
        for variant in self.variants:
            if variant.is_control:
                return variant
        return None

    @property
    def treatments(self) -> list[VariantSnapshot]:
        return [v for v in self.variants if not v.is_control]

    @property
    def total_sample_size(self) -> int:
        return sum(v.sample_size for v in self.variants)

    def get_variant(self, variant_id: int) -> VariantSnapshot | None:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


# ==================== Analysis models ====================


class Priority(str, Enum):
    """Recommendation priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecommendationType(str, Enum):
    """Kinds of recommendations emitted by the analyzer."""

    SAMPLE_SIZE = "sample_size"
    DURATION = "duration"
    INCONCLUSIVE = "inconclusive"
    LEADING_VARIANT = "leading_variant"
    WINNER = "winner"
    TREND = "trend"
    IMPLEMENTATION = "implementation"
    FUTURE_TESTING = "future_testing"


class Recommendation(BaseModel):
    """Human-readable next step."""

    type: RecommendationType
    message: str
    priority: Priority


class MetricStats(BaseModel):
    """Aggregates of one metric over a variant's sample rows.

    ``average`` is the unweighted mean over rows; ``weighted_average`` weights
    each row by its sample size.
    """

    metric_name: str
    count: int = 0
    total: float = 0.0
    average: float = 0.0
    weighted_average: float = 0.0
    sample_size: int = 0
    std: float = 0.0
    min_value: float | None = None
    max_value: float | None = None
    rating: str | None = None


class MetricComparison(BaseModel):
    """One metric of a variant set against the control."""

    metric_name: str
    control_average: float
    variant_average: float
    delta: float
    relative_improvement: float | None = Field(
        None, description="Percent change versus control (None if control is 0)"
    )
    is_better: bool = False


class SignificanceResult(BaseModel):
    """Significance test of a variant's primary metric against the control."""

    variant_id: int
    variant_name: str
    metric_name: str
    test: str = Field(..., description="two_proportion_z or welch_t")
    statistic: float = 0.0
    p_value: float = 1.0
    adjusted_p_value: float = 1.0
    confidence_achieved: float = Field(
        0.0, description="(1 - adjusted p-value) as a percentage"
    )
    required_confidence: float
    relative_improvement: float | None = None
    improves_on_control: bool = False
    is_significant: bool = False
    sample_size: int = 0
    meets_sample_size: bool = False

    @property
    def is_candidate(self) -> bool:
        return (
            self.meets_sample_size
            and self.improves_on_control
            and self.is_significant
        )


class WinnerVerdict(BaseModel):
    """Winner declaration for the primary goal."""

    metric_name: str
    declared: bool = False
    winner_variant_id: int | None = None
    winner_variant_name: str | None = None
    confidence_achieved: float = 0.0
    required_confidence: float
    leading_variant_id: int | None = None
    leading_variant_name: str | None = None
    results: list[SignificanceResult] = Field(default_factory=list)


class TrendSignal(BaseModel):
    """Direction of a variant's daily primary-metric series."""

    variant_id: int
    variant_name: str
    metric_name: str
    days: int = 0
    slope: float = 0.0
    relative_drift: float = 0.0
    is_moving: bool = False


class PerformanceReport(BaseModel):
    """Full report rendered for dashboards."""

    test_summary: dict[str, Any] = Field(default_factory=dict)
    current_results: dict[str, Any] = Field(default_factory=dict)
    performance_trends: dict[str, dict[str, dict[str, float]]] = Field(
        default_factory=dict
    )
    statistical_analysis: dict[str, Any] = Field(default_factory=dict)
    recommendations: list[Recommendation] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    export_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.test_summary
