"""Experiment orchestration service.

The operational façade over the experiment store: creates experiments and
variants, drives the lifecycle state machine, ingests result batches and
renders reports.

Every mutating operation runs in one transaction, serialized per experiment
by ``ExperimentLocks`` and by a row lock on databases that support one. The
experiment and all of its variants are loaded, preconditions are checked
against that in-memory state, and every mutation commits together.
Business-rule violations come back as ``OperationResult.errors``; storage
faults are raised as ``StorageError``.

Example usage:
    from cee.experiments import ExperimentDatabase, ExperimentService

    service = ExperimentService(ExperimentDatabase(url), settings.experiments)
    created = await service.create_experiment(config, actor="user-7")
    await service.add_variant(created.value.id, "post-124", traffic_split=50)
    await service.start(created.value.id)
"""

import string
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from cee.core.exceptions import (
    ExperimentNotFoundError,
    StorageError,
    VariantNotFoundError,
)
from cee.core.logging import bind_context, get_logger
from cee.core.settings import ExperimentSettings
from cee.experiments.analysis import ExperimentAnalyzer
from cee.experiments.database import ExperimentDatabase
from cee.experiments.locks import ExperimentLocks
from cee.experiments.metrics import get_aggregator
from cee.experiments.models import Experiment, Variant
from cee.experiments.repository import (
    ExperimentRepository,
    experiment_snapshot,
    variant_snapshot,
)
from cee.experiments.schemas import (
    ContentCandidate,
    ExperimentConfig,
    ExperimentSnapshot,
    MetricComparison,
    MetricStats,
    OperationResult,
    PerformanceReport,
    ResultEntry,
    VariantSnapshot,
    WinnerVerdict,
)
from cee.experiments.status import (
    RECORDING_STATUSES,
    ExperimentStatus,
    Transition,
    can_transition,
    target_status,
    transition_error,
)

logger = get_logger(__name__)

CONTROL_VARIANT_NAME = "Control"

# Secondary goals tracked by default for well-known primary goals
DEFAULT_SECONDARY_GOALS: dict[str, list[str]] = {
    "conversion_rate": ["click_rate", "engagement_rate"],
    "click_rate": ["engagement_rate", "time_on_page"],
    "engagement_rate": ["click_rate", "share_rate"],
}

SYSTEM_ACTOR = "system"

# Metadata written by lifecycle operations; callers cannot preset these
LIFECYCLE_METADATA_KEYS = frozenset(
    {
        "started_at",
        "started_by",
        "pause_reason",
        "paused_at",
        "paused_by",
        "resume_reason",
        "resumed_at",
        "resumed_by",
        "stop_reason",
        "stopped_at",
        "stopped_by",
        "completed_at",
        "completed_by",
        "final_report",
    }
)


def default_secondary_goals(primary_goal: str) -> list[str]:
    """Secondary goals implied by a primary goal."""
    return list(DEFAULT_SECONDARY_GOALS.get(primary_goal, []))


def variant_label(index: int) -> str:
    """Default name of the ``index``-th variant: Variant A, B, ... Z, AA, AB."""
    letters = string.ascii_uppercase
    label = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, len(letters))
        label = letters[remainder] + label
    return f"Variant {label}"


def even_split(count: int) -> float:
    """Equal traffic share for ``count`` variants, one decimal place.

    Rounds to the nearest tenth unless that would allocate more than 100%.
    """
    split = round(100 / count, 1)
    if split * count > 100:
        split = int(1000 / count) / 10
    return split


class ExperimentService:
    """Orchestrates the lifecycle of content experiments.

    Args:
        database: Experiment store.
        settings: Behavioural settings; defaults apply when omitted.
        locks: Per-experiment lock registry. Share one registry between
            services that use the same database in one process.
        clock: Returns the current time; ``datetime.now`` by default.
    """

    def __init__(
        self,
        database: ExperimentDatabase,
        settings: ExperimentSettings | None = None,
        locks: ExperimentLocks | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._database = database
        self._settings = settings or ExperimentSettings()
        self._locks = locks or ExperimentLocks()
        self._clock = clock or datetime.now

    @property
    def settings(self) -> ExperimentSettings:
        return self._settings

    @property
    def locks(self) -> ExperimentLocks:
        return self._locks

    def _now(self) -> datetime:
        return self._clock()

    def _today(self) -> date:
        return self._clock().date()

    # ==================== Transactions ====================

    @asynccontextmanager
    async def _transaction(
        self,
        operation: str,
        experiment_id: int | None = None,
    ) -> AsyncIterator[ExperimentRepository]:
        """One transaction, holding the experiment's lock when an id is given.

        Log events emitted inside carry ``operation`` and ``experiment_id``.
        """
        context: dict[str, Any] = {"operation": operation}
        if experiment_id is not None:
            context["experiment_id"] = experiment_id
        with bind_context(**context):
            try:
                if experiment_id is None:
                    async with self._database.session() as session:
                        yield ExperimentRepository(session)
                else:
                    async with self._locks.hold(experiment_id):
                        async with self._database.session() as session:
                            yield ExperimentRepository(session)
            except SQLAlchemyError as e:
                logger.error("storage_error", error=str(e))
                raise StorageError(str(e), operation=operation) from e

    # ==================== Validation ====================

    def validate_config(self, config: ExperimentConfig) -> list[str]:
        """Collect every configuration error of a new experiment."""
        errors: list[str] = []
        name = config.name.strip()
        if not name:
            errors.append("Experiment name is required")
        elif len(name) > 255:
            errors.append("Experiment name must be at most 255 characters")

        if not config.control_content_ref:
            errors.append("Control content is required")
        if not config.primary_goal.strip():
            errors.append("Primary goal is required")

        allowed = self._settings.allowed_confidence_levels
        if config.confidence_level not in allowed:
            levels = ", ".join(str(level) for level in allowed)
            errors.append(f"Confidence level must be one of {levels}")

        if config.minimum_sample_size <= 0:
            errors.append("Minimum sample size must be greater than 0")

        if config.duration_days <= 0:
            errors.append("Duration must be greater than 0 days")
        elif config.duration_days > self._settings.max_duration_days:
            errors.append(
                f"Duration cannot exceed {self._settings.max_duration_days} days"
            )

        if not 0 < config.traffic_allocation <= 100:
            errors.append("Traffic allocation must be between 0 and 100")

        return errors

    @staticmethod
    def _variant_errors(
        experiment: Experiment,
        content_ref: str,
        name: str,
        traffic_split: float,
        rebalance: bool = False,
    ) -> list[str]:
        """Collect every reason a variant cannot be added.

        With ``rebalance`` every variant ends up on the same even split, so
        the current allocation is not checked.
        """
        errors: list[str] = []
        if experiment.status != ExperimentStatus.DRAFT.value:
            errors.append(
                "Variants can only be added to draft experiments "
                f"(status: {experiment.status})"
            )

        if not content_ref:
            errors.append("Variant content is required")
        elif content_ref == experiment.control_content_ref:
            errors.append("Variant content cannot be the control content")

        if not 0 < traffic_split <= 100:
            errors.append("Traffic split must be between 0 and 100")
        elif not rebalance:
            allocated = sum(v.traffic_split for v in experiment.variants)
            if round(allocated + traffic_split, 6) > 100:
                errors.append(
                    f"Traffic split exceeded: {allocated:g}% already allocated, "
                    f"adding {traffic_split:g}% would exceed 100%"
                )

        if any(v.name == name for v in experiment.variants):
            errors.append(f"Variant name '{name}' is already used in this experiment")

        return errors

    @staticmethod
    def _next_variant_name(experiment: Experiment) -> str:
        used = {v.name for v in experiment.variants}
        index = sum(1 for v in experiment.variants if not v.is_control)
        while variant_label(index) in used:
            index += 1
        return variant_label(index)

    # ==================== Creation ====================

    async def _create(
        self,
        repo: ExperimentRepository,
        config: ExperimentConfig,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> Experiment:
        secondary_goals = config.secondary_goals
        if secondary_goals is None:
            secondary_goals = default_secondary_goals(config.primary_goal)
        user_metadata = {
            key: value
            for key, value in config.metadata.items()
            if key not in LIFECYCLE_METADATA_KEYS
        }

        experiment = await repo.create_experiment(
            name=config.name.strip(),
            control_content_ref=config.control_content_ref or "",
            primary_goal=config.primary_goal.strip(),
            secondary_goals=secondary_goals,
            confidence_level=config.confidence_level,
            minimum_sample_size=config.minimum_sample_size,
            duration_days=config.duration_days,
            traffic_allocation=config.traffic_allocation,
            description=config.description,
            campaign_ref=config.campaign_ref,
            created_by=actor,
            metadata={**user_metadata, **(metadata or {})} or None,
        )
        control_metadata = {"creation_method": "control"}
        if config.control_title:
            control_metadata["content_title"] = config.control_title
        await repo.add_variant(
            experiment,
            name=CONTROL_VARIANT_NAME,
            content_ref=experiment.control_content_ref,
            traffic_split=0.0,
            is_control=True,
            metadata=control_metadata,
        )
        return experiment

    async def create_experiment(
        self,
        config: ExperimentConfig,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Create an experiment in draft status with its control variant.

        Args:
            config: Experiment configuration.
            actor: Acting user reference.

        Returns:
            OperationResult carrying the new experiment, or every
            configuration error.
        """
        errors = self.validate_config(config)
        if errors:
            return OperationResult.fail(*errors)

        async with self._transaction("create_experiment") as repo:
            experiment = await self._create(repo, config, actor)
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "experiment_created",
            experiment_id=snapshot.id,
            name=snapshot.name,
            primary_goal=snapshot.primary_goal,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def add_variant(
        self,
        experiment_id: int,
        content_ref: str,
        name: str | None = None,
        traffic_split: float | None = None,
        actor: str | None = None,
        title: str | None = None,
    ) -> OperationResult[VariantSnapshot]:
        """Add a variant to a draft experiment.

        Without an explicit ``traffic_split`` traffic is spread evenly over
        all variants, the new one included.

        Args:
            experiment_id: Experiment ID.
            content_ref: Content artifact shown by the variant.
            name: Variant name; defaults to the next "Variant <letter>".
            traffic_split: Traffic percentage in (0, 100]; even when omitted.
            actor: Acting user reference.
            title: Optional content title kept in the variant metadata.

        Returns:
            OperationResult carrying the new variant.
        """
        async with self._transaction("add_variant", experiment_id) as repo:
            experiment = await repo.get_experiment(experiment_id, for_update=True)
            if experiment is None:
                return OperationResult.missing(experiment_id)

            name = (name or "").strip() or self._next_variant_name(experiment)
            treatments = [v for v in experiment.variants if not v.is_control]
            rebalance = traffic_split is None
            split = even_split(len(treatments) + 1) if rebalance else traffic_split
            errors = self._variant_errors(
                experiment, content_ref, name, split, rebalance=rebalance
            )
            if errors:
                return OperationResult.fail(*errors)

            if rebalance:
                for existing in treatments:
                    existing.traffic_split = split

            metadata: dict[str, Any] = {"creation_method": "manual", "added_by": actor}
            if title:
                metadata["content_title"] = title
            variant = await repo.add_variant(
                experiment,
                name=name,
                content_ref=content_ref,
                traffic_split=split,
                metadata=metadata,
            )
            snapshot = variant_snapshot(variant)

        logger.info(
            "variant_added",
            experiment_id=experiment_id,
            variant_id=snapshot.id,
            traffic_split=split,
            rebalanced=rebalance,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def remove_variant(
        self,
        experiment_id: int,
        variant_id: int,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Remove a non-control variant from a draft experiment.

        The remaining variants are rebalanced to an even split.
        """
        async with self._transaction("remove_variant", experiment_id) as repo:
            experiment = await repo.get_experiment(experiment_id, for_update=True)
            if experiment is None:
                return OperationResult.missing(experiment_id)

            variant = next((v for v in experiment.variants if v.id == variant_id), None)
            errors: list[str] = []
            if experiment.status != ExperimentStatus.DRAFT.value:
                errors.append(
                    "Variants can only be removed from draft experiments "
                    f"(status: {experiment.status})"
                )
            if variant is None:
                errors.append(
                    f"Variant {variant_id} does not belong to experiment "
                    f"{experiment_id}"
                )
            elif variant.is_control:
                errors.append("The control variant cannot be removed")
            if errors:
                return OperationResult.fail(*errors)

            await repo.remove_variant(experiment, variant)
            remaining = [v for v in experiment.variants if not v.is_control]
            if remaining:
                split = even_split(len(remaining))
                for other in remaining:
                    other.traffic_split = split
                await repo.flush()
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "variant_removed",
            experiment_id=experiment_id,
            variant_id=variant_id,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def bulk_create_from_content_list(
        self,
        candidates: Sequence[ContentCandidate | str],
        config: ExperimentConfig,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Turn a list of content artifacts into an experiment.

        The first candidate becomes the control; the rest become variants
        named Variant A, Variant B, ... with an equal traffic split.
        """
        items = [
            c if isinstance(c, ContentCandidate) else ContentCandidate(content_ref=c)
            for c in candidates
        ]
        if not items:
            return OperationResult.fail("Content list is empty")
        if len(items) < 2:
            return OperationResult.fail(
                "At least two content items are required (one control and one "
                "variant)"
            )

        control, *rest = items
        content_errors = [
            f"Candidate {index + 1}: variant content cannot be the control content"
            for index, candidate in enumerate(rest)
            if candidate.content_ref == control.content_ref
        ]
        config = config.model_copy(
            update={
                "control_content_ref": control.content_ref,
                "control_title": control.title or config.control_title,
            }
        )
        errors = self.validate_config(config) + content_errors
        if errors:
            return OperationResult.fail(*errors)

        split = even_split(len(rest))
        async with self._transaction("bulk_create_from_content_list") as repo:
            experiment = await self._create(
                repo, config, actor, metadata={"creation_method": "bulk_content_list"}
            )
            for index, candidate in enumerate(rest):
                metadata: dict[str, Any] = {"creation_method": "bulk_content_list"}
                if candidate.title:
                    metadata["content_title"] = candidate.title
                await repo.add_variant(
                    experiment,
                    name=variant_label(index),
                    content_ref=candidate.content_ref,
                    traffic_split=split,
                    metadata=metadata,
                )
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "experiment_created",
            experiment_id=snapshot.id,
            name=snapshot.name,
            variants=len(rest),
            traffic_split=split,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def setup_simple_experiment(
        self,
        control_content_ref: str,
        variant_content_ref: str,
        config: ExperimentConfig,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Create a control-versus-one-variant experiment at a 50% split."""
        config = config.model_copy(update={"control_content_ref": control_content_ref})
        errors = self.validate_config(config)
        if variant_content_ref == control_content_ref:
            errors.append("Variant content cannot be the control content")
        if not variant_content_ref:
            errors.append("Variant content is required")
        if errors:
            return OperationResult.fail(*errors)

        async with self._transaction("setup_simple_experiment") as repo:
            experiment = await self._create(repo, config, actor)
            await repo.add_variant(
                experiment,
                name=variant_label(0),
                content_ref=variant_content_ref,
                traffic_split=50.0,
                metadata={"creation_method": "simple_setup"},
            )
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "experiment_created", experiment_id=snapshot.id, variants=1, actor=actor
        )
        return OperationResult.ok(snapshot)

    async def clone_experiment(
        self,
        experiment_id: int,
        actor: str | None = None,
        name: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Copy an experiment's configuration and variants into a new draft."""
        async with self._transaction("clone_experiment") as repo:
            source = await repo.get_experiment(experiment_id)
            if source is None:
                return OperationResult.missing(experiment_id)

            control = next((v for v in source.variants if v.is_control), None)
            control_title = (
                control.variant_metadata.get("content_title") if control else None
            )
            config = ExperimentConfig(
                name=name or f"{source.name} (Clone)",
                description=source.description,
                campaign_ref=source.campaign_ref,
                control_content_ref=source.control_content_ref,
                control_title=control_title,
                primary_goal=source.primary_goal,
                secondary_goals=source.secondary_goals,
                confidence_level=source.confidence_level,
                minimum_sample_size=source.minimum_sample_size,
                duration_days=source.duration_days,
                traffic_allocation=source.traffic_allocation,
            )
            errors = self.validate_config(config)
            if errors:
                return OperationResult.fail(*errors)

            clone = await self._create(
                repo, config, actor, metadata={"cloned_from": experiment_id}
            )
            for variant in source.variants:
                if variant.is_control:
                    continue
                metadata = {
                    key: value
                    for key, value in variant.variant_metadata.items()
                    if key in ("content_title", "creation_method")
                }
                metadata["cloned_from_variant"] = variant.id
                await repo.add_variant(
                    clone,
                    name=variant.name,
                    content_ref=variant.content_ref,
                    traffic_split=variant.traffic_split,
                    metadata=metadata,
                )
            snapshot = experiment_snapshot(clone)

        logger.info(
            "experiment_cloned",
            experiment_id=snapshot.id,
            source_experiment_id=experiment_id,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def delete_experiment(
        self,
        experiment_id: int,
        actor: str | None = None,
    ) -> OperationResult[int]:
        """Delete an experiment, its variants and samples; refused while active."""
        async with self._transaction("delete_experiment", experiment_id) as repo:
            experiment = await repo.get_experiment(experiment_id, for_update=True)
            if experiment is None:
                return OperationResult.missing(experiment_id)
            if experiment.status == ExperimentStatus.ACTIVE.value:
                return OperationResult.fail(
                    "Cannot delete an active experiment; pause or stop it first"
                )
            await repo.delete_experiment(experiment_id)

        logger.info("experiment_deleted", experiment_id=experiment_id, actor=actor)
        return OperationResult.ok(experiment_id)

    # ==================== Lifecycle ====================

    @staticmethod
    def _apply_status(experiment: Experiment, status: ExperimentStatus) -> None:
        """Set the status on the experiment and every one of its variants."""
        experiment.status = status.value
        for variant in experiment.variants:
            variant.status = status.value

    async def _load_for_transition(
        self,
        repo: ExperimentRepository,
        experiment_id: int,
        action: Transition,
    ) -> tuple[Experiment | None, list[str]]:
        experiment = await repo.get_experiment(experiment_id, for_update=True)
        if experiment is None:
            return None, []
        if not can_transition(experiment.status, action):
            return experiment, [transition_error(experiment.status, action)]
        return experiment, []

    async def start(
        self,
        experiment_id: int,
        actor: str | None = None,
        start_date: datetime | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Start a draft experiment that has at least one variant.

        Sets ``end_date = start_date + duration_days`` and cascades ``active``
        to every variant. An explicit ``start_date`` may not lie before today.
        """
        async with self._transaction("start", experiment_id) as repo:
            experiment, errors = await self._load_for_transition(
                repo, experiment_id, Transition.START
            )
            if experiment is None:
                return OperationResult.missing(experiment_id)
            if not any(not v.is_control for v in experiment.variants):
                errors.append("Cannot start experiment without variants")
            if start_date is not None and start_date.date() < self._today():
                errors.append("Start date cannot be in the past")
            if errors:
                return OperationResult.fail(*errors)

            started = start_date or self._now()
            experiment.start_date = started
            experiment.end_date = started + timedelta(days=experiment.duration_days)
            self._apply_status(experiment, target_status(Transition.START))
            experiment.merge_metadata(started_by=actor, started_at=started.isoformat())
            await repo.flush()
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "experiment_started",
            experiment_id=experiment_id,
            variants=len(snapshot.treatments),
            end_date=snapshot.end_date.isoformat() if snapshot.end_date else None,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def pause(
        self,
        experiment_id: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Pause an active experiment; results are still accepted."""
        return await self._simple_transition(
            experiment_id, Transition.PAUSE, reason, actor
        )

    async def resume(
        self,
        experiment_id: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Resume a paused experiment."""
        return await self._simple_transition(
            experiment_id, Transition.RESUME, reason, actor
        )

    async def _simple_transition(
        self,
        experiment_id: int,
        action: Transition,
        reason: str | None,
        actor: str | None,
    ) -> OperationResult[ExperimentSnapshot]:
        past = {Transition.PAUSE: "paused", Transition.RESUME: "resumed"}[action]
        async with self._transaction(action.value, experiment_id) as repo:
            experiment, errors = await self._load_for_transition(
                repo, experiment_id, action
            )
            if experiment is None:
                return OperationResult.missing(experiment_id)
            if errors:
                return OperationResult.fail(*errors)

            self._apply_status(experiment, target_status(action))
            experiment.merge_metadata(
                **{
                    f"{action.value}_reason": reason,
                    f"{past}_at": self._now().isoformat(),
                    f"{past}_by": actor,
                }
            )
            await repo.flush()
            snapshot = experiment_snapshot(experiment)

        logger.info(
            f"experiment_{past}",
            experiment_id=experiment_id,
            reason=reason,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def stop(
        self,
        experiment_id: int,
        reason: str | None = None,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """End an active or paused experiment early.

        Fixes ``end_date`` to now, or to the start date when that is still
        ahead, and stores the final report in metadata.
        """
        async with self._transaction("stop", experiment_id) as repo:
            experiment, errors = await self._load_for_transition(
                repo, experiment_id, Transition.STOP
            )
            if experiment is None:
                return OperationResult.missing(experiment_id)
            if errors:
                return OperationResult.fail(*errors)

            now = self._now()
            experiment.end_date = max(now, experiment.start_date or now)
            self._apply_status(experiment, target_status(Transition.STOP))
            experiment.merge_metadata(
                stop_reason=reason,
                stopped_at=now.isoformat(),
                stopped_by=actor,
            )
            await self._store_final_report(repo, experiment, record_winner=False)
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "experiment_stopped",
            experiment_id=experiment_id,
            reason=reason,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def complete(
        self,
        experiment_id: int,
        actor: str | None = None,
    ) -> OperationResult[ExperimentSnapshot]:
        """Complete an experiment that reached its minimum sample size.

        Determines the winner and stores it with the final report.
        """
        async with self._transaction("complete", experiment_id) as repo:
            experiment, errors = await self._load_for_transition(
                repo, experiment_id, Transition.COMPLETE
            )
            if experiment is None:
                return OperationResult.missing(experiment_id)
            if not errors:
                total = await repo.total_sample_size(experiment_id)
                if total < experiment.minimum_sample_size:
                    errors.append(
                        f"Minimum sample size not reached "
                        f"({total} of {experiment.minimum_sample_size})"
                    )
            if errors:
                return OperationResult.fail(*errors)

            verdict = await self._complete(repo, experiment, actor)
            snapshot = experiment_snapshot(experiment)

        logger.info(
            "experiment_completed",
            experiment_id=experiment_id,
            winner_variant_id=verdict.winner_variant_id,
            confidence_achieved=verdict.confidence_achieved,
            actor=actor,
        )
        return OperationResult.ok(snapshot)

    async def _complete(
        self,
        repo: ExperimentRepository,
        experiment: Experiment,
        actor: str | None,
    ) -> WinnerVerdict:
        completed_at = self._now().isoformat()
        self._apply_status(experiment, target_status(Transition.COMPLETE))
        experiment.merge_metadata(completed_at=completed_at, completed_by=actor)
        for variant in experiment.variants:
            variant.merge_metadata(completed_at=completed_at)
        return await self._store_final_report(repo, experiment, record_winner=True)

    async def _store_final_report(
        self,
        repo: ExperimentRepository,
        experiment: Experiment,
        record_winner: bool,
    ) -> WinnerVerdict:
        await repo.flush()
        snapshot = await repo.load_snapshot(experiment.id)
        analyzer = self._analyzer(snapshot)
        verdict = analyzer.declare_winner()
        if record_winner:
            experiment.winner_variant_id = verdict.winner_variant_id
            experiment.statistical_significance = verdict.declared
            snapshot = snapshot.model_copy(
                update={
                    "winner_variant_id": verdict.winner_variant_id,
                    "statistical_significance": verdict.declared,
                }
            )
            analyzer = self._analyzer(snapshot)
        report = analyzer.performance_report()
        experiment.merge_metadata(final_report=report.model_dump(mode="json"))
        await repo.flush()
        return verdict

    # ==================== Results ====================

    async def record_results(
        self,
        experiment_id: int,
        batch: Sequence[ResultEntry | Mapping[str, Any]],
    ) -> OperationResult[int]:
        """Record a batch of metric samples.

        Entries addressed at a variant outside the experiment are dropped
        silently; entries with invalid values are dropped with a message in
        ``errors``. The whole batch is refused while the experiment is still a
        draft.

        Args:
            experiment_id: Experiment ID.
            batch: Result entries (or mappings with the same fields).

        Returns:
            OperationResult whose value is the number of samples recorded.
        """
        async with self._transaction("record_results", experiment_id) as repo:
            experiment = await repo.get_experiment(experiment_id, for_update=True)
            if experiment is None:
                return OperationResult.missing(experiment_id, value=0)
            if ExperimentStatus(experiment.status) not in RECORDING_STATUSES:
                return OperationResult.fail(
                    f"Cannot record results for experiment in status "
                    f"{experiment.status}",
                    value=0,
                )

            by_id = {v.id: v for v in experiment.variants}
            by_name = {v.name: v for v in experiment.variants}
            increments: dict[int, int] = {}
            errors: list[str] = []
            recorded = 0
            skipped = 0

            for index, raw in enumerate(batch):
                try:
                    entry = (
                        raw
                        if isinstance(raw, ResultEntry)
                        else ResultEntry.model_validate(raw)
                    )
                except ValidationError:
                    errors.append(f"Entry {index}: malformed result entry")
                    continue

                variant = self._resolve_variant(entry, by_id, by_name)
                if variant is None:
                    skipped += 1
                    continue

                metric_name = entry.metric_name.strip()
                if not metric_name:
                    errors.append(f"Entry {index}: metric name is required")
                    continue
                if entry.sample_size < 1:
                    errors.append(f"Entry {index}: sample size must be at least 1")
                    continue
                error = get_aggregator(metric_name).validate(metric_name, entry.value)
                if error is not None:
                    errors.append(f"Entry {index}: {error}")
                    continue

                await repo.add_sample(
                    experiment_id=experiment_id,
                    variant_id=variant.id,
                    metric_name=metric_name,
                    value=entry.value,
                    sample_size=entry.sample_size,
                    recorded_date=entry.date or self._today(),
                    data_source=(
                        entry.data_source or self._settings.default_data_source
                    ),
                    metadata=entry.metadata,
                )
                increments[variant.id] = (
                    increments.get(variant.id, 0) + entry.sample_size
                )
                recorded += 1

            for variant_id, amount in increments.items():
                await repo.increment_sample_size(variant_id, amount)

            auto_completed = False
            if recorded and self._settings.auto_complete_on_significance:
                auto_completed = await self._auto_complete(repo, experiment_id)

        logger.info(
            "results_recorded",
            experiment_id=experiment_id,
            recorded=recorded,
            skipped=skipped,
            rejected=len(errors),
        )
        if auto_completed:
            logger.info("experiment_auto_completed", experiment_id=experiment_id)
        return OperationResult.ok(recorded, errors=errors)

    @staticmethod
    def _resolve_variant(
        entry: ResultEntry,
        by_id: dict[int, Variant],
        by_name: dict[str, Variant],
    ) -> Variant | None:
        if entry.variant_id is not None:
            return by_id.get(entry.variant_id)
        if entry.variant_name is not None:
            return by_name.get(entry.variant_name)
        return None

    async def _auto_complete(
        self, repo: ExperimentRepository, experiment_id: int
    ) -> bool:
        """Complete an active experiment once a winner is significant."""
        experiment = await repo.get_experiment(experiment_id)
        if experiment is None or experiment.status != ExperimentStatus.ACTIVE.value:
            return False
        if await repo.total_sample_size(experiment_id) < experiment.minimum_sample_size:
            return False

        snapshot = await repo.load_snapshot(experiment_id)
        if not self._analyzer(snapshot).declare_winner().declared:
            return False

        await self._complete(repo, experiment, SYSTEM_ACTOR)
        return True

    # ==================== Reads ====================

    def _analyzer(self, snapshot: ExperimentSnapshot) -> ExperimentAnalyzer:
        return ExperimentAnalyzer(snapshot, self._settings, today=self._today())

    async def _snapshot(
        self,
        experiment_id: int,
        *,
        include_samples: bool = True,
        date_range: tuple[date | None, date | None] | None = None,
    ) -> ExperimentSnapshot:
        async with self._transaction("read") as repo:
            snapshot = await repo.load_snapshot(
                experiment_id, include_samples=include_samples, date_range=date_range
            )
        if snapshot is None:
            raise ExperimentNotFoundError(experiment_id)
        return snapshot

    async def get_experiment(
        self, experiment_id: int, include_samples: bool = False
    ) -> ExperimentSnapshot:
        """Get an experiment with its variants.

        Raises:
            ExperimentNotFoundError: If the experiment does not exist.
        """
        return await self._snapshot(experiment_id, include_samples=include_samples)

    async def list_experiments(
        self,
        status: str | None = None,
        campaign_ref: str | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExperimentSnapshot]:
        """List experiments, newest first."""
        async with self._transaction("list_experiments") as repo:
            experiments = await repo.list_experiments(
                status=status,
                campaign_ref=campaign_ref,
                search=search,
                limit=limit,
                offset=offset,
            )
            return [experiment_snapshot(e) for e in experiments]

    async def analytics_summary(self) -> dict[str, Any]:
        """Totals across all experiments."""
        async with self._transaction("analytics_summary") as repo:
            return await repo.analytics_summary()

    async def sample_size_totals(self, experiment_id: int) -> dict[int, int]:
        """Sample size per variant as summed from the ledger."""
        async with self._transaction("sample_size_totals") as repo:
            return await repo.sample_size_totals(experiment_id)

    def _variant(
        self, snapshot: ExperimentSnapshot, variant_id: int
    ) -> VariantSnapshot:
        variant = snapshot.get_variant(variant_id)
        if variant is None:
            raise VariantNotFoundError(snapshot.id, variant_id)
        return variant

    async def performance_metrics(
        self, experiment_id: int, variant_id: int
    ) -> dict[str, MetricStats]:
        """Per-metric aggregates of one variant."""
        snapshot = await self._snapshot(experiment_id)
        variant = self._variant(snapshot, variant_id)
        return self._analyzer(snapshot).performance_metrics(variant)

    async def compare_with_control(
        self, experiment_id: int, variant_id: int
    ) -> dict[str, MetricComparison]:
        """Compare one variant with the control on every shared metric."""
        snapshot = await self._snapshot(experiment_id)
        variant = self._variant(snapshot, variant_id)
        return self._analyzer(snapshot).compare_with_control(variant)

    async def current_results(self, experiment_id: int) -> dict[str, Any]:
        """Control and variant aggregates with the statistical section."""
        snapshot = await self._snapshot(experiment_id)
        return self._analyzer(snapshot).current_results()

    async def declare_winner(self, experiment_id: int) -> WinnerVerdict:
        """Current winner verdict on the primary goal."""
        snapshot = await self._snapshot(experiment_id)
        return self._analyzer(snapshot).declare_winner()

    async def generate_performance_report(
        self,
        experiment_id: int,
        date_range: tuple[date | None, date | None] | None = None,
    ) -> PerformanceReport:
        """Render the full performance report.

        Draft experiments yield an empty report.

        Args:
            experiment_id: Experiment ID.
            date_range: Optional inclusive (start, end) recorded-date filter.

        Raises:
            ExperimentNotFoundError: If the experiment does not exist.
        """
        snapshot = await self._snapshot(experiment_id, date_range=date_range)
        report = self._analyzer(snapshot).performance_report()
        logger.debug(
            "performance_report_generated",
            experiment_id=experiment_id,
            recommendations=len(report.recommendations),
        )
        return report

