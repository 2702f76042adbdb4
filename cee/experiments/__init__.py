"""Content experiments: storage, orchestration and analysis.

Example usage:
    from cee.experiments import ExperimentConfig, ExperimentDatabase, ExperimentService

    database = ExperimentDatabase("sqlite+aiosqlite:///experiments.db")
    await database.create_tables()
    service = ExperimentService(database)

    result = await service.bulk_create_from_content_list(
        ["post-100", "post-101", "post-102"],
        ExperimentConfig(name="Spring headline", primary_goal="click_rate"),
    )
"""

from cee.experiments.analysis import ExperimentAnalyzer
from cee.experiments.database import ExperimentDatabase, init_database
from cee.experiments.locks import ExperimentLocks
from cee.experiments.metrics import (
    MetricAggregator,
    MetricFamily,
    get_aggregator,
    metric_family,
)
from cee.experiments.models import Experiment, ExperimentsBase, MetricSample, Variant
from cee.experiments.repository import ExperimentRepository
from cee.experiments.schemas import (
    ContentCandidate,
    ExperimentConfig,
    ExperimentSnapshot,
    MetricComparison,
    MetricStats,
    OperationResult,
    PerformanceReport,
    Recommendation,
    RecommendationType,
    ResultEntry,
    SampleRecord,
    SignificanceResult,
    VariantSnapshot,
    WinnerVerdict,
)
from cee.experiments.service import ExperimentService
from cee.experiments.status import ExperimentStatus, Transition

__all__ = [
    # Storage
    "ExperimentDatabase",
    "ExperimentRepository",
    "ExperimentsBase",
    "Experiment",
    "Variant",
    "MetricSample",
    "init_database",
    # Orchestration
    "ExperimentService",
    "ExperimentLocks",
    "ExperimentStatus",
    "Transition",
    # Analysis
    "ExperimentAnalyzer",
    "MetricAggregator",
    "MetricFamily",
    "get_aggregator",
    "metric_family",
    # Value types
    "ContentCandidate",
    "ExperimentConfig",
    "ExperimentSnapshot",
    "MetricComparison",
    "MetricStats",
    "OperationResult",
    "PerformanceReport",
    "Recommendation",
    "RecommendationType",
    "ResultEntry",
    "SampleRecord",
    "SignificanceResult",
    "VariantSnapshot",
    "WinnerVerdict",
]
