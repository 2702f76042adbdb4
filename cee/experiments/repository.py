"""Repository for experiment CRUD operations, sample ingestion and reads."""

from collections import defaultdict
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cee.experiments.models import Experiment, MetricSample, Variant
from cee.experiments.schemas import (
    ExperimentSnapshot,
    SampleRecord,
    VariantSnapshot,
)


def variant_snapshot(
    variant: Variant,
    samples: list[SampleRecord] | None = None,
) -> VariantSnapshot:
    """Copy a Variant row (and optionally its samples) into a snapshot."""
    return VariantSnapshot(
        id=variant.id,
        name=variant.name,
        content_ref=variant.content_ref,
        traffic_split=variant.traffic_split,
        is_control=variant.is_control,
        status=variant.status,
        sample_size=variant.sample_size,
        metadata=variant.variant_metadata,
        samples=samples or [],
    )


def experiment_snapshot(
    experiment: Experiment,
    samples: dict[int, list[SampleRecord]] | None = None,
) -> ExperimentSnapshot:
    """Copy an Experiment with its loaded variants into a snapshot."""
    samples = samples or {}
    return ExperimentSnapshot(
        id=experiment.id,
        name=experiment.name,
        description=experiment.description,
        campaign_ref=experiment.campaign_ref,
        created_by=experiment.created_by,
        control_content_ref=experiment.control_content_ref,
        primary_goal=experiment.primary_goal,
        secondary_goals=experiment.secondary_goals,
        confidence_level=experiment.confidence_level,
        minimum_sample_size=experiment.minimum_sample_size,
        duration_days=experiment.duration_days,
        traffic_allocation=experiment.traffic_allocation,
        status=experiment.status,
        start_date=experiment.start_date,
        end_date=experiment.end_date,
        winner_variant_id=experiment.winner_variant_id,
        statistical_significance=bool(experiment.statistical_significance),
        metadata=experiment.experiment_metadata,
        created_at=experiment.created_at,
        updated_at=experiment.updated_at,
        variants=[
            variant_snapshot(v, samples.get(v.id)) for v in experiment.variants
        ],
    )


class ExperimentRepository:
    """Repository for experiment operations.

    Provides CRUD operations on experiments and variants, the append-only
    sample ledger, and the single-pass snapshot reads used for analysis.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self._session = session

    async def flush(self) -> None:
        """Flush pending changes so later reads in the transaction see them."""
        await self._session.flush()

    # ==================== Experiment CRUD Operations ====================

    async def create_experiment(
        self,
        *,
        name: str,
        control_content_ref: str,
        primary_goal: str,
        confidence_level: int,
        minimum_sample_size: int,
        duration_days: int,
        traffic_allocation: float = 100.0,
        secondary_goals: list[str] | None = None,
        description: str | None = None,
        campaign_ref: str | None = None,
        created_by: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Experiment:
        """Create a new experiment in draft status.

        Args:
            name: Experiment name.
            control_content_ref: Baseline content artifact.
            primary_goal: Goal metric name.
            confidence_level: Target confidence (percent).
            minimum_sample_size: Aggregate sample size required to complete.
            duration_days: Planned duration.
            traffic_allocation: Share of total traffic (percent).
            secondary_goals: Additional metric names.
            description: Optional description.
            campaign_ref: Optional owning campaign.
            created_by: Optional creator reference.
            metadata: Optional additional metadata.

        Returns:
            Created Experiment instance (without variants).
        """
        experiment = Experiment(
            name=name,
            control_content_ref=control_content_ref,
            primary_goal=primary_goal,
            secondary_goals_json=secondary_goals,
            confidence_level=confidence_level,
            minimum_sample_size=minimum_sample_size,
            duration_days=duration_days,
            traffic_allocation=traffic_allocation,
            description=description,
            campaign_ref=campaign_ref,
            created_by=created_by,
            status="draft",
            metadata_json=metadata,
            variants=[],
        )
        self._session.add(experiment)
        await self._session.flush()
        return experiment

    async def get_experiment(
        self,
        experiment_id: int,
        *,
        for_update: bool = False,
    ) -> Experiment | None:
        """Get an experiment with its variants.

        Args:
            experiment_id: Experiment ID.
            for_update: Lock the experiment row until the transaction ends
                (ignored by SQLite).

        Returns:
            Experiment if found, None otherwise.
        """
        stmt = (
            select(Experiment)
            .where(Experiment.id == experiment_id)
            .options(selectinload(Experiment.variants))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_experiments(
        self,
        *,
        status: str | None = None,
        campaign_ref: str | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Experiment]:
        """List experiments with optional filtering, newest first.

        Args:
            status: Filter by status.
            campaign_ref: Filter by owning campaign.
            search: Case-insensitive match on name or description.
            limit: Maximum number of results.
            offset: Number of results to skip.

        Returns:
            List of experiments with their variants loaded.
        """
        stmt = (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .order_by(Experiment.created_at.desc(), Experiment.id.desc())
        )

        if status is not None:
            stmt = stmt.where(Experiment.status == status)
        if campaign_ref is not None:
            stmt = stmt.where(Experiment.campaign_ref == campaign_ref)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Experiment.name).like(pattern),
                    func.lower(Experiment.description).like(pattern),
                )
            )

        stmt = stmt.limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_experiment(self, experiment_id: int) -> bool:
        """Delete an experiment with its variants and samples.

        Args:
            experiment_id: Experiment ID.

        Returns:
            True if deleted, False if not found.
        """
        await self._session.execute(
            delete(MetricSample).where(MetricSample.experiment_id == experiment_id)
        )
        await self._session.execute(
            delete(Variant).where(Variant.experiment_id == experiment_id)
        )
        result = await self._session.execute(
            delete(Experiment).where(Experiment.id == experiment_id)
        )
        return result.rowcount > 0

    # ==================== Variant Operations ====================

    async def add_variant(
        self,
        experiment: Experiment,
        *,
        name: str,
        content_ref: str,
        traffic_split: float,
        is_control: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Variant:
        """Attach a new variant in the experiment's current status.

        Args:
            experiment: Parent experiment (variants loaded).
            name: Variant name, unique within the experiment.
            content_ref: Linked content artifact.
            traffic_split: Traffic percentage.
            is_control: Whether this variant wraps the control content.
            metadata: Optional additional metadata.

        Returns:
            Created Variant instance.
        """
        variant = Variant(
            name=name,
            content_ref=content_ref,
            traffic_split=traffic_split,
            is_control=is_control,
            status=experiment.status,
            sample_size=0,
            metadata_json=metadata,
        )
        experiment.variants.append(variant)
        await self._session.flush()
        return variant

    async def remove_variant(self, experiment: Experiment, variant: Variant) -> None:
        """Remove a variant and its samples from the experiment."""
        await self._session.execute(
            delete(MetricSample).where(MetricSample.variant_id == variant.id)
        )
        experiment.variants.remove(variant)
        await self._session.flush()

    async def total_sample_size(self, experiment_id: int) -> int:
        """Sum of the running sample-size counters over all variants."""
        stmt = select(func.coalesce(func.sum(Variant.sample_size), 0)).where(
            Variant.experiment_id == experiment_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    # ==================== MetricSample Operations ====================

    async def add_sample(
        self,
        *,
        experiment_id: int,
        variant_id: int,
        metric_name: str,
        value: float,
        sample_size: int,
        recorded_date: date,
        data_source: str = "manual",
        metadata: dict[str, Any] | None = None,
    ) -> MetricSample:
        """Append one metric sample.

        The variant's running counter is not touched here; see
        ``increment_sample_size``.
        """
        sample = MetricSample(
            experiment_id=experiment_id,
            variant_id=variant_id,
            metric_name=metric_name,
            value=value,
            sample_size=sample_size,
            recorded_date=recorded_date,
            data_source=data_source,
            metadata_json=metadata,
        )
        self._session.add(sample)
        await self._session.flush()
        return sample

    async def increment_sample_size(self, variant_id: int, amount: int) -> None:
        """Atomically add ``amount`` to a variant's running sample size."""
        stmt = (
            update(Variant)
            .where(Variant.id == variant_id)
            .values(sample_size=Variant.sample_size + amount)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def sample_size_totals(self, experiment_id: int) -> dict[int, int]:
        """Sum of sample sizes over the ledger, per variant."""
        stmt = (
            select(MetricSample.variant_id, func.sum(MetricSample.sample_size))
            .where(MetricSample.experiment_id == experiment_id)
            .group_by(MetricSample.variant_id)
        )
        result = await self._session.execute(stmt)
        return {variant_id: int(total) for variant_id, total in result.all()}

    async def list_samples(
        self,
        experiment_id: int,
        *,
        variant_id: int | None = None,
        metric_name: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[MetricSample]:
        """List samples of an experiment in recording order.

        Args:
            experiment_id: Experiment ID.
            variant_id: Filter by variant.
            metric_name: Filter by metric.
            start_date: Earliest recorded date (inclusive).
            end_date: Latest recorded date (inclusive).

        Returns:
            List of samples.
        """
        stmt = (
            select(MetricSample)
            .where(MetricSample.experiment_id == experiment_id)
            .order_by(MetricSample.recorded_date, MetricSample.id)
        )

        if variant_id is not None:
            stmt = stmt.where(MetricSample.variant_id == variant_id)
        if metric_name is not None:
            stmt = stmt.where(MetricSample.metric_name == metric_name)
        if start_date is not None:
            stmt = stmt.where(MetricSample.recorded_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(MetricSample.recorded_date <= end_date)

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # ==================== Snapshot Reads ====================

    async def load_snapshot(
        self,
        experiment_id: int,
        *,
        include_samples: bool = True,
        date_range: tuple[date | None, date | None] | None = None,
    ) -> ExperimentSnapshot | None:
        """Read an experiment, its variants and samples in one pass.

        Args:
            experiment_id: Experiment ID.
            include_samples: Whether to load the sample ledger.
            date_range: Optional inclusive (start, end) recorded-date filter.

        Returns:
            ExperimentSnapshot if found, None otherwise.
        """
        experiment = await self.get_experiment(experiment_id)
        if experiment is None:
            return None
        if not include_samples:
            return experiment_snapshot(experiment)

        start_date, end_date = date_range or (None, None)
        rows = await self.list_samples(
            experiment_id, start_date=start_date, end_date=end_date
        )
        by_variant: dict[int, list[SampleRecord]] = defaultdict(list)
        for row in rows:
            by_variant[row.variant_id].append(SampleRecord.model_validate(row))
        return experiment_snapshot(experiment, by_variant)

    # ==================== Analytics ====================

    async def analytics_summary(self) -> dict[str, Any]:
        """Totals across all experiments.

        Returns:
            Dictionary with totals, counts by status and goal, and the
            average duration of completed experiments in days.
        """
        total = await self._session.scalar(select(func.count(Experiment.id)))

        by_status_rows = await self._session.execute(
            select(Experiment.status, func.count(Experiment.id)).group_by(
                Experiment.status
            )
        )
        by_goal_rows = await self._session.execute(
            select(Experiment.primary_goal, func.count(Experiment.id)).group_by(
                Experiment.primary_goal
            )
        )
        completed_rows = await self._session.execute(
            select(Experiment.start_date, Experiment.end_date).where(
                Experiment.status == "completed",
                Experiment.start_date.is_not(None),
                Experiment.end_date.is_not(None),
            )
        )
        durations = [
            (end - start).total_seconds() / 86400
            for start, end in completed_rows.all()
            if isinstance(start, datetime) and isinstance(end, datetime)
        ]
        total_samples = await self._session.scalar(
            select(func.coalesce(func.sum(Variant.sample_size), 0))
        )

        return {
            "total_experiments": int(total or 0),
            "by_status": {status: count for status, count in by_status_rows.all()},
            "by_goal": {goal: count for goal, count in by_goal_rows.all()},
            "total_sample_size": int(total_samples or 0),
            "average_completed_duration_days": (
                round(sum(durations) / len(durations), 2) if durations else None
            ),
        }
