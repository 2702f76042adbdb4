"""Tests for ExperimentService against a temporary SQLite store."""

import asyncio
from collections.abc import Callable
from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from cee.core.exceptions import (
    ExperimentNotFoundError,
    StorageError,
    VariantNotFoundError,
)
from cee.core.logging import add_bound_context
from cee.core.settings import ExperimentSettings
from cee.experiments import (
    ContentCandidate,
    ExperimentConfig,
    ExperimentDatabase,
    ExperimentService,
    ExperimentSnapshot,
    RecommendationType,
    ResultEntry,
)
from cee.experiments.service import (
    default_secondary_goals,
    even_split,
    variant_label,
)

MakeConfig = Callable[..., ExperimentConfig]


def _assert_cascaded(snapshot: ExperimentSnapshot) -> None:
    assert all(v.status == snapshot.status for v in snapshot.variants)


def _entries(
    variant_id: int,
    values: list[float],
    sample_size: int = 50,
    metric: str = "click_rate",
    first_day: date = date(2024, 3, 1),
) -> list[dict]:
    return [
        {
            "variant_id": variant_id,
            "metric_name": metric,
            "value": value,
            "sample_size": sample_size,
            "date": (first_day + timedelta(days=day)).isoformat(),
        }
        for day, value in enumerate(values)
    ]


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize(
        "index,label",
        [(0, "Variant A"), (1, "Variant B"), (25, "Variant Z"), (26, "Variant AA")],
    )
    def test_variant_label(self, index: int, label: str) -> None:
        assert variant_label(index) == label

    @pytest.mark.parametrize(
        "count,split",
        [(1, 100.0), (2, 50.0), (3, 33.3), (4, 25.0), (6, 16.6), (7, 14.2)],
    )
    def test_even_split(self, count: int, split: float) -> None:
        assert even_split(count) == split
        assert even_split(count) * count <= 100

    def test_default_secondary_goals(self) -> None:
        assert default_secondary_goals("conversion_rate") == [
            "click_rate",
            "engagement_rate",
        ]
        assert default_secondary_goals("revenue") == []


class TestCreateExperiment:
    """Tests for experiment creation."""

    @pytest.mark.anyio
    async def test_creates_draft_with_control(
        self, service: ExperimentService, make_config: MakeConfig
    ) -> None:
        result = await service.create_experiment(
            make_config(campaign_ref="spring-2024"), actor="user-7"
        )

        assert result.success
        assert result.errors == []
        experiment = result.value
        assert experiment.status == "draft"
        assert experiment.created_by == "user-7"
        assert experiment.campaign_ref == "spring-2024"
        assert experiment.secondary_goals == ["engagement_rate", "time_on_page"]
        assert len(experiment.variants) == 1
        control = experiment.control
        assert control is not None
        assert control.name == "Control"
        assert control.content_ref == "content-control"
        assert control.traffic_split == 0.0
        assert control.status == "draft"
        assert experiment.treatments == []

    @pytest.mark.anyio
    async def test_collects_every_error(
        self, service: ExperimentService, make_config: MakeConfig
    ) -> None:
        config = make_config(
            name="  ",
            control_content_ref=None,
            confidence_level=80,
            minimum_sample_size=0,
            duration_days=0,
            traffic_allocation=0,
        )
        result = await service.create_experiment(config)

        assert not result.success
        assert result.value is None
        assert result.errors == [
            "Experiment name is required",
            "Control content is required",
            "Confidence level must be one of 90, 95, 99",
            "Minimum sample size must be greater than 0",
            "Duration must be greater than 0 days",
            "Traffic allocation must be between 0 and 100",
        ]
        assert await service.list_experiments() == []

    @pytest.mark.anyio
    async def test_duration_limit(
        self, service: ExperimentService, make_config: MakeConfig
    ) -> None:
        result = await service.create_experiment(make_config(duration_days=400))
        assert result.errors == ["Duration cannot exceed 365 days"]

    @pytest.mark.anyio
    async def test_explicit_secondary_goals(
        self, service: ExperimentService, make_config: MakeConfig
    ) -> None:
        result = await service.create_experiment(
            make_config(secondary_goals=["revenue"])
        )
        assert result.value.secondary_goals == ["revenue"]

    @pytest.mark.anyio
    async def test_custom_confidence_levels(
        self, database: ExperimentDatabase, make_config: MakeConfig
    ) -> None:
        settings = ExperimentSettings(allowed_confidence_levels=(80, 90))
        service = ExperimentService(database, settings)

        assert (await service.create_experiment(make_config(confidence_level=80)))
        refused = await service.create_experiment(make_config(confidence_level=95))
        assert refused.errors == ["Confidence level must be one of 80, 90"]


class TestAddVariant:
    """Tests for adding and removing variants."""

    @pytest.mark.anyio
    async def test_default_names(self, service: ExperimentService, experiment_factory):
        experiment = await experiment_factory(variants=0)

        first = await service.add_variant(experiment.id, "post-1", traffic_split=30)
        second = await service.add_variant(
            experiment.id, "post-2", traffic_split=30, title="Bold headline"
        )

        assert first.value.name == "Variant A"
        assert second.value.name == "Variant B"
        assert second.value.content_title == "Bold headline"
        assert second.value.status == "draft"
        assert not second.value.is_control

    @pytest.mark.anyio
    async def test_split_exceeded(self, service: ExperimentService, experiment_factory):
        experiment = await experiment_factory(variants=0)

        first = await service.add_variant(experiment.id, "post-1", traffic_split=60)
        second = await service.add_variant(experiment.id, "post-2", traffic_split=50)

        assert first.success
        assert not second.success
        assert second.errors[0].startswith("Traffic split exceeded")
        snapshot = await service.get_experiment(experiment.id)
        assert len(snapshot.treatments) == 1
        assert sum(v.traffic_split for v in snapshot.treatments) <= 100

    @pytest.mark.anyio
    async def test_exact_hundred_is_allowed(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=0)
        for ref in ("a", "b", "c"):
            assert await service.add_variant(experiment.id, ref, traffic_split=33.3)
        last = await service.add_variant(experiment.id, "d", traffic_split=0.1)
        assert last.success

    @pytest.mark.anyio
    async def test_omitted_split_spreads_traffic_evenly(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=0)

        for ref in ("post-1", "post-2", "post-3"):
            added = await service.add_variant(experiment.id, ref)
            assert added.success, added.errors

        assert added.value.traffic_split == pytest.approx(33.3)
        snapshot = await service.get_experiment(experiment.id)
        assert [v.traffic_split for v in snapshot.treatments] == pytest.approx(
            [33.3, 33.3, 33.3]
        )

    @pytest.mark.anyio
    async def test_omitted_split_ignores_earlier_allocation(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=1, split=90)

        result = await service.add_variant(experiment.id, "post-2")

        assert result.success
        snapshot = await service.get_experiment(experiment.id)
        assert [v.traffic_split for v in snapshot.treatments] == [50.0, 50.0]

    @pytest.mark.anyio
    @pytest.mark.parametrize("split", [0.0, -5.0, 100.5])
    async def test_split_out_of_range(
        self, service: ExperimentService, experiment_factory, split: float
    ):
        experiment = await experiment_factory(variants=0)
        result = await service.add_variant(experiment.id, "post-1", traffic_split=split)
        assert result.errors == ["Traffic split must be between 0 and 100"]

    @pytest.mark.anyio
    async def test_control_content_refused(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=0)
        result = await service.add_variant(experiment.id, "content-control")
        assert result.errors == ["Variant content cannot be the control content"]

    @pytest.mark.anyio
    async def test_duplicate_name_refused(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=0)
        await service.add_variant(experiment.id, "a", name="Short", traffic_split=10)
        result = await service.add_variant(
            experiment.id, "b", name="Short", traffic_split=10
        )
        assert result.errors == [
            "Variant name 'Short' is already used in this experiment"
        ]

    @pytest.mark.anyio
    async def test_only_in_draft(self, service: ExperimentService, experiment_factory):
        experiment = await experiment_factory(start=True)
        result = await service.add_variant(experiment.id, "late", traffic_split=10)
        assert result.errors == [
            "Variants can only be added to draft experiments (status: active)"
        ]

    @pytest.mark.anyio
    async def test_unknown_experiment(self, service: ExperimentService):
        result = await service.add_variant(424242, "post-1")
        assert not result.success
        assert result.not_found
        assert result.errors == ["Experiment 424242 not found"]

    @pytest.mark.anyio
    async def test_remove_variant(self, service: ExperimentService, experiment_factory):
        experiment = await experiment_factory(variants=2, split=40)
        variant = experiment.treatments[0]

        result = await service.remove_variant(experiment.id, variant.id)

        assert result.success
        assert [v.name for v in result.value.treatments] == ["Variant B"]

    @pytest.mark.anyio
    async def test_remove_variant_rebalances(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=3, split=20)
        middle = experiment.treatments[1]

        result = await service.remove_variant(experiment.id, middle.id)

        assert [v.traffic_split for v in result.value.treatments] == [50.0, 50.0]
        snapshot = await service.get_experiment(experiment.id)
        assert [v.traffic_split for v in snapshot.treatments] == [50.0, 50.0]

    @pytest.mark.anyio
    async def test_control_cannot_be_removed(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory()
        result = await service.remove_variant(experiment.id, experiment.control.id)
        assert result.errors == ["The control variant cannot be removed"]

    @pytest.mark.anyio
    async def test_foreign_variant_cannot_be_removed(
        self, service: ExperimentService, experiment_factory
    ):
        first = await experiment_factory()
        second = await experiment_factory(name="Other")
        result = await service.remove_variant(first.id, second.treatments[0].id)
        assert result.errors == [
            f"Variant {second.treatments[0].id} does not belong to experiment "
            f"{first.id}"
        ]


class TestBulkAndSimpleCreation:
    """Tests for the creation shortcuts."""

    @pytest.mark.anyio
    async def test_bulk_even_split(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        candidates = [
            ContentCandidate(content_ref="post-0", title="Original"),
            "post-1",
            "post-2",
            "post-3",
        ]
        result = await service.bulk_create_from_content_list(candidates, make_config())

        assert result.success
        experiment = result.value
        assert experiment.control_content_ref == "post-0"
        assert experiment.control.content_title == "Original"
        assert [v.name for v in experiment.treatments] == [
            "Variant A",
            "Variant B",
            "Variant C",
        ]
        assert all(v.traffic_split == 33.3 for v in experiment.treatments)
        assert experiment.metadata["creation_method"] == "bulk_content_list"

    @pytest.mark.anyio
    async def test_bulk_split_never_exceeds_hundred(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        refs = [f"post-{i}" for i in range(7)]
        result = await service.bulk_create_from_content_list(refs, make_config())

        assert result.success
        total = sum(v.traffic_split for v in result.value.treatments)
        assert total <= 100

    @pytest.mark.anyio
    async def test_bulk_empty_list(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        result = await service.bulk_create_from_content_list([], make_config())
        assert result.errors == ["Content list is empty"]

    @pytest.mark.anyio
    async def test_bulk_needs_a_variant(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        result = await service.bulk_create_from_content_list(["only"], make_config())
        assert not result.success
        assert result.errors[0].startswith("At least two content items")

    @pytest.mark.anyio
    async def test_bulk_refuses_control_duplicates(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        result = await service.bulk_create_from_content_list(
            ["post-0", "post-1", "post-0"], make_config(name="")
        )
        assert result.errors == [
            "Experiment name is required",
            "Candidate 2: variant content cannot be the control content",
        ]
        assert await service.list_experiments() == []

    @pytest.mark.anyio
    async def test_simple_setup(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        result = await service.setup_simple_experiment(
            "post-0", "post-1", make_config()
        )

        assert result.success
        assert result.value.control_content_ref == "post-0"
        [variant] = result.value.treatments
        assert variant.content_ref == "post-1"
        assert variant.traffic_split == 50.0

    @pytest.mark.anyio
    async def test_simple_setup_same_content(
        self, service: ExperimentService, make_config: MakeConfig
    ):
        result = await service.setup_simple_experiment(
            "post-0", "post-0", make_config()
        )
        assert result.errors == ["Variant content cannot be the control content"]


class TestCloneAndDelete:
    """Tests for cloning and deleting experiments."""

    @pytest.mark.anyio
    async def test_clone(self, service: ExperimentService, experiment_factory):
        source = await experiment_factory(variants=2, split=25, start=True)

        result = await service.clone_experiment(source.id, actor="user-2")

        assert result.success
        clone = result.value
        assert clone.id != source.id
        assert clone.name == "Spring subject lines (Clone)"
        assert clone.status == "draft"
        assert clone.metadata["cloned_from"] == source.id
        assert [(v.name, v.content_ref, v.traffic_split) for v in clone.treatments] == [
            (v.name, v.content_ref, v.traffic_split) for v in source.treatments
        ]
        assert all(v.sample_size == 0 for v in clone.variants)

    @pytest.mark.anyio
    async def test_clone_with_name(
        self, service: ExperimentService, experiment_factory
    ):
        source = await experiment_factory()
        result = await service.clone_experiment(source.id, name="Round two")
        assert result.value.name == "Round two"

    @pytest.mark.anyio
    async def test_delete_refused_while_active(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        result = await service.delete_experiment(experiment.id)

        assert not result.success
        assert (await service.get_experiment(experiment.id)).status == "active"

    @pytest.mark.anyio
    async def test_delete_cascades(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        variant = experiment.treatments[0]
        await service.record_results(experiment.id, _entries(variant.id, [2.0]))
        await service.stop(experiment.id)

        result = await service.delete_experiment(experiment.id)

        assert result.success
        assert result.value == experiment.id
        with pytest.raises(ExperimentNotFoundError):
            await service.get_experiment(experiment.id)
        assert await service.sample_size_totals(experiment.id) == {}

    @pytest.mark.anyio
    async def test_delete_unknown(self, service: ExperimentService):
        result = await service.delete_experiment(5)
        assert result.not_found


class TestLifecycle:
    """Tests for status transitions and their cascades."""

    @pytest.mark.anyio
    async def test_start_without_variants_fails(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=0)

        result = await service.start(experiment.id)

        assert not result.success
        assert result.errors == ["Cannot start experiment without variants"]
        snapshot = await service.get_experiment(experiment.id)
        assert snapshot.status == "draft"
        assert snapshot.start_date is None

    @pytest.mark.anyio
    async def test_start_sets_window_and_cascades(
        self, service: ExperimentService, experiment_factory, clock
    ):
        experiment = await experiment_factory(variants=2, split=30)

        result = await service.start(experiment.id, actor="user-1")

        assert result.success
        started = result.value
        assert started.status == "active"
        assert started.start_date == clock.now
        assert started.end_date - started.start_date == timedelta(days=14)
        assert started.metadata["started_by"] == "user-1"
        _assert_cascaded(started)

    @pytest.mark.anyio
    async def test_start_with_explicit_date(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(duration_days=7)
        start = datetime(2024, 5, 1, 12, 30)

        result = await service.start(experiment.id, start_date=start)

        assert result.value.start_date == start
        assert result.value.end_date == datetime(2024, 5, 8, 12, 30)

    @pytest.mark.anyio
    async def test_start_in_the_past_fails(
        self, service: ExperimentService, experiment_factory, clock
    ):
        experiment = await experiment_factory()

        result = await service.start(
            experiment.id, start_date=clock.now - timedelta(days=1)
        )

        assert not result.success
        assert result.errors == ["Start date cannot be in the past"]
        snapshot = await service.get_experiment(experiment.id)
        assert snapshot.status == "draft"
        assert snapshot.start_date is None

    @pytest.mark.anyio
    async def test_stop_before_scheduled_start(
        self, service: ExperimentService, experiment_factory, clock
    ):
        experiment = await experiment_factory()
        start = clock.now + timedelta(days=5)
        await service.start(experiment.id, start_date=start)

        result = await service.stop(experiment.id)

        assert result.success
        assert result.value.start_date == start
        assert result.value.end_date == start

    @pytest.mark.anyio
    async def test_start_twice_fails(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        result = await service.start(experiment.id)
        assert result.errors == [
            "Cannot start experiment in status active (must be draft)"
        ]

    @pytest.mark.anyio
    async def test_pause_and_resume(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)

        paused = await service.pause(experiment.id, reason="Budget review", actor="ops")
        assert paused.value.status == "paused"
        assert paused.value.metadata["pause_reason"] == "Budget review"
        assert paused.value.metadata["paused_by"] == "ops"
        _assert_cascaded(paused.value)

        resumed = await service.resume(experiment.id, reason="Approved")
        assert resumed.value.status == "active"
        assert resumed.value.metadata["resume_reason"] == "Approved"
        _assert_cascaded(resumed.value)

    @pytest.mark.anyio
    async def test_pause_draft_fails(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory()
        result = await service.pause(experiment.id)

        assert not result.success
        assert (await service.get_experiment(experiment.id)).status == "draft"

    @pytest.mark.anyio
    async def test_stop(self, service: ExperimentService, experiment_factory, clock):
        experiment = await experiment_factory(start=True)
        clock.advance(days=3)

        result = await service.stop(experiment.id, reason="Brand issue", actor="ops")

        assert result.success
        stopped = result.value
        assert stopped.status == "stopped"
        assert stopped.end_date == clock.now
        assert stopped.metadata["stop_reason"] == "Brand issue"
        assert "final_report" in stopped.metadata
        assert stopped.winner_variant_id is None
        _assert_cascaded(stopped)

    @pytest.mark.anyio
    async def test_config_metadata_cannot_preset_lifecycle_keys(
        self, service: ExperimentService, experiment_factory, clock
    ):
        experiment = await experiment_factory(
            start=True,
            metadata={"completed_at": "next quarter", "channel": "email"},
        )
        assert "completed_at" not in experiment.metadata
        assert experiment.metadata["channel"] == "email"
        clock.advance(days=2)

        result = await service.stop(experiment.id)

        assert result.success
        report = await service.generate_performance_report(experiment.id)
        assert report.test_summary["days_running"] == 2

    @pytest.mark.anyio
    async def test_terminal_statuses(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        await service.stop(experiment.id)

        for operation in (service.pause, service.resume, service.stop):
            assert not (await operation(experiment.id)).success
        assert not (await service.complete(experiment.id)).success
        assert (await service.get_experiment(experiment.id)).status == "stopped"

    @pytest.mark.anyio
    async def test_complete_below_minimum_fails(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        variant = experiment.treatments[0]
        await service.record_results(experiment.id, _entries(variant.id, [2.0]))

        result = await service.complete(experiment.id)

        assert not result.success
        assert result.errors == ["Minimum sample size not reached (50 of 100)"]
        assert (await service.get_experiment(experiment.id)).status == "active"

    @pytest.mark.anyio
    async def test_complete_after_enough_samples(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(minimum_sample_size=100, start=True)
        assert experiment.status == "active"
        assert experiment.end_date is not None
        variant = experiment.treatments[0]

        recorded = await service.record_results(
            experiment.id, _entries(variant.id, [2.0, 2.5, 3.0, 2.5, 2.0])
        )
        assert recorded.value == 5

        result = await service.complete(experiment.id, actor="user-9")

        assert result.success
        completed = result.value
        assert completed.status == "completed"
        assert completed.get_variant(variant.id).status == "completed"
        assert completed.metadata["completed_by"] == "user-9"
        assert "completed_at" in completed.metadata
        assert "completed_at" in completed.get_variant(variant.id).metadata
        assert completed.end_date == experiment.end_date
        _assert_cascaded(completed)

    @pytest.mark.anyio
    async def test_complete_declares_winner(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        control = experiment.control
        variant = experiment.treatments[0]
        await service.record_results(
            experiment.id,
            _entries(control.id, [2.0] * 5, 1000)
            + _entries(variant.id, [4.0] * 5, 1000),
        )

        result = await service.complete(experiment.id)

        assert result.value.winner_variant_id == variant.id
        assert result.value.statistical_significance
        report = result.value.metadata["final_report"]
        assert report["statistical_analysis"]["winner_variant_id"] == variant.id
        assert report["test_summary"]["statistical_significance"]
        types = [r["type"] for r in report["recommendations"]]
        assert "implementation" in types

    @pytest.mark.anyio
    async def test_complete_paused_experiment(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(minimum_sample_size=10, start=True)
        await service.record_results(
            experiment.id, _entries(experiment.treatments[0].id, [1.0])
        )
        await service.pause(experiment.id)

        result = await service.complete(experiment.id)

        assert result.value.status == "completed"
        assert result.value.winner_variant_id is None
        assert not result.value.statistical_significance

    @pytest.mark.anyio
    @pytest.mark.parametrize("action", ["start", "pause", "resume", "stop", "complete"])
    async def test_unknown_experiment(self, service: ExperimentService, action: str):
        result = await getattr(service, action)(31337)
        assert result.not_found
        assert result.errors == ["Experiment 31337 not found"]


class TestRecordResults:
    """Tests for result ingestion."""

    @pytest.mark.anyio
    async def test_unknown_variant_is_dropped(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)

        result = await service.record_results(
            experiment.id,
            [
                {
                    "variant_id": 999999,
                    "metric_name": "click_rate",
                    "value": 2.5,
                    "sample_size": 100,
                }
            ],
        )

        assert result.success
        assert result.value == 0
        assert result.errors == []
        assert await service.sample_size_totals(experiment.id) == {}

    @pytest.mark.anyio
    async def test_other_experiments_variant_is_dropped(
        self, service: ExperimentService, experiment_factory
    ):
        first = await experiment_factory(start=True)
        second = await experiment_factory(name="Other", start=True)

        result = await service.record_results(
            first.id, _entries(second.treatments[0].id, [2.0])
        )

        assert result.value == 0

    @pytest.mark.anyio
    async def test_records_by_id_and_name(
        self, service: ExperimentService, experiment_factory, clock
    ):
        experiment = await experiment_factory(start=True)
        variant = experiment.treatments[0]

        result = await service.record_results(
            experiment.id,
            [
                ResultEntry(variant_id=variant.id, metric_name="click_rate", value=3.0),
                {"variant_name": "Control", "metric_name": "click_rate", "value": 2.0},
                {"variant_name": "Nobody", "metric_name": "click_rate", "value": 2.0},
            ],
        )

        assert result.value == 2
        snapshot = await service.get_experiment(experiment.id, include_samples=True)
        [control_sample] = snapshot.control.samples
        assert control_sample.recorded_date == clock.now.date()
        assert control_sample.data_source == "manual"
        assert control_sample.sample_size == 1
        assert snapshot.get_variant(variant.id).sample_size == 1

    @pytest.mark.anyio
    async def test_invalid_values_are_reported(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        variant_id = experiment.treatments[0].id

        result = await service.record_results(
            experiment.id,
            [
                {"variant_id": variant_id, "metric_name": "click_rate", "value": 150},
                {"variant_id": variant_id, "metric_name": "click_rate", "value": 4},
                {"variant_id": variant_id, "metric_name": "impressions", "value": -1},
                {"variant_id": variant_id, "value": 4},
                {
                    "variant_id": variant_id,
                    "metric_name": "clicks",
                    "value": 4,
                    "sample_size": 0,
                },
            ],
        )

        assert result.success
        assert result.value == 1
        assert result.errors == [
            "Entry 0: Value 150 for click_rate must be between 0 and 100",
            "Entry 2: Value -1 for impressions must be >= 0",
            "Entry 3: malformed result entry",
            "Entry 4: sample size must be at least 1",
        ]

    @pytest.mark.anyio
    async def test_blank_metric_name_is_reported(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)

        result = await service.record_results(
            experiment.id,
            _entries(experiment.treatments[0].id, [2.0], metric="   "),
        )

        assert result.success
        assert result.value == 0
        assert result.errors == ["Entry 0: metric name is required"]
        assert await service.sample_size_totals(experiment.id) == {}

    @pytest.mark.anyio
    async def test_draft_refuses_batch(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory()

        result = await service.record_results(
            experiment.id, _entries(experiment.treatments[0].id, [2.0])
        )

        assert not result.success
        assert result.value == 0
        assert result.errors == ["Cannot record results for experiment in status draft"]

    @pytest.mark.anyio
    async def test_stopped_accepts_batch(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        await service.stop(experiment.id)

        result = await service.record_results(
            experiment.id, _entries(experiment.treatments[0].id, [2.0])
        )

        assert result.success
        assert result.value == 1

    @pytest.mark.anyio
    async def test_paused_accepts_batch(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        await service.pause(experiment.id)

        result = await service.record_results(
            experiment.id, _entries(experiment.treatments[0].id, [2.0])
        )

        assert result.value == 1

    @pytest.mark.anyio
    async def test_unknown_experiment(self, service: ExperimentService):
        result = await service.record_results(77, _entries(1, [2.0]))
        assert result.not_found
        assert result.value == 0

    @pytest.mark.anyio
    async def test_sample_size_matches_ledger(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=2, split=40, start=True)
        a, b = experiment.treatments

        await service.record_results(
            experiment.id,
            _entries(a.id, [1.0, 2.0], 30)
            + _entries(b.id, [1.0], 70)
            + _entries(a.id, [5.0], 11, metric="clicks"),
        )

        snapshot = await service.get_experiment(experiment.id)
        totals = await service.sample_size_totals(experiment.id)
        assert totals == {a.id: 71, b.id: 70}
        for variant in snapshot.variants:
            assert variant.sample_size == totals.get(variant.id, 0)

    @pytest.mark.anyio
    async def test_concurrent_batches_keep_sample_size(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=2, split=40, start=True)
        a, b = experiment.treatments

        batches = [
            _entries(a.id, [2.0], 10 + i) + _entries(b.id, [3.0], 5) for i in range(12)
        ]
        results = await asyncio.gather(
            *(service.record_results(experiment.id, batch) for batch in batches)
        )

        assert [r.value for r in results] == [2] * 12
        snapshot = await service.get_experiment(experiment.id)
        totals = await service.sample_size_totals(experiment.id)
        expected_a = sum(10 + i for i in range(12))
        assert totals == {a.id: expected_a, b.id: 60}
        assert snapshot.get_variant(a.id).sample_size == expected_a
        assert snapshot.get_variant(b.id).sample_size == 60

    @pytest.mark.anyio
    async def test_concurrent_record_and_complete(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(minimum_sample_size=50, start=True)
        variant_id = experiment.treatments[0].id
        await service.record_results(experiment.id, _entries(variant_id, [2.0], 50))

        record, complete = await asyncio.gather(
            service.record_results(experiment.id, _entries(variant_id, [3.0], 5)),
            service.complete(experiment.id),
        )

        assert record.success and complete.success
        snapshot = await service.get_experiment(experiment.id)
        assert snapshot.status == "completed"
        _assert_cascaded(snapshot)
        totals = await service.sample_size_totals(experiment.id)
        assert snapshot.get_variant(variant_id).sample_size == totals[variant_id]

    @pytest.mark.anyio
    async def test_auto_complete_on_significance(
        self, database: ExperimentDatabase, make_config: MakeConfig, clock
    ):
        settings = ExperimentSettings(auto_complete_on_significance=True)
        service = ExperimentService(database, settings, clock=clock)
        created = await service.setup_simple_experiment(
            "post-0", "post-1", make_config()
        )
        experiment = created.value
        await service.start(experiment.id)

        await service.record_results(
            experiment.id, _entries(experiment.control.id, [2.0] * 5, 1000)
        )
        assert (await service.get_experiment(experiment.id)).status == "active"

        await service.record_results(
            experiment.id, _entries(experiment.treatments[0].id, [4.0] * 5, 1000)
        )

        snapshot = await service.get_experiment(experiment.id)
        assert snapshot.status == "completed"
        assert snapshot.metadata["completed_by"] == "system"
        assert snapshot.winner_variant_id == experiment.treatments[0].id
        _assert_cascaded(snapshot)

    @pytest.mark.anyio
    async def test_no_auto_complete_by_default(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        await service.record_results(
            experiment.id,
            _entries(experiment.control.id, [2.0] * 5, 1000)
            + _entries(experiment.treatments[0].id, [4.0] * 5, 1000),
        )
        assert (await service.get_experiment(experiment.id)).status == "active"


class TestReads:
    """Tests for the read façades and reports."""

    @pytest.mark.anyio
    async def test_get_unknown_experiment(self, service: ExperimentService):
        with pytest.raises(ExperimentNotFoundError) as exc_info:
            await service.get_experiment(404)
        assert exc_info.value.experiment_id == 404

    @pytest.mark.anyio
    async def test_unknown_variant(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory()
        with pytest.raises(VariantNotFoundError):
            await service.performance_metrics(experiment.id, 987654)

    @pytest.mark.anyio
    async def test_performance_metrics_is_idempotent(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        variant_id = experiment.treatments[0].id
        await service.record_results(
            experiment.id, _entries(variant_id, [2.0, 3.0, 4.0])
        )

        first = await service.performance_metrics(experiment.id, variant_id)
        second = await service.performance_metrics(experiment.id, variant_id)

        assert first == second
        assert first["click_rate"].average == pytest.approx(3.0)
        assert first["click_rate"].count == 3

    @pytest.mark.anyio
    async def test_leader_without_significance_below_minimum(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(minimum_sample_size=1000, start=True)
        control = experiment.control
        variant = experiment.treatments[0]
        await service.record_results(
            experiment.id,
            _entries(control.id, [2.0, 2.2, 1.8, 2.1, 2.0], 10)
            + _entries(variant.id, [3.0, 3.2, 2.9, 3.1, 3.3], 10),
        )

        comparison = await service.compare_with_control(experiment.id, variant.id)
        assert comparison["click_rate"].is_better

        verdict = await service.declare_winner(experiment.id)
        assert not verdict.declared
        assert verdict.leading_variant_id == variant.id

        report = await service.generate_performance_report(experiment.id)
        types = [r.type for r in report.recommendations]
        assert RecommendationType.LEADING_VARIANT in types
        assert RecommendationType.WINNER not in types
        assert not report.statistical_analysis["winner_declared"]
        assert report.statistical_analysis["leading_variant_name"] == "Variant A"

    @pytest.mark.anyio
    async def test_draft_report_is_empty(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory()
        report = await service.generate_performance_report(experiment.id)

        assert report.is_empty
        assert report.recommendations == []

    @pytest.mark.anyio
    async def test_report_date_range(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(start=True)
        variant_id = experiment.treatments[0].id
        await service.record_results(
            experiment.id, _entries(variant_id, [1.0, 2.0, 3.0, 4.0])
        )

        report = await service.generate_performance_report(
            experiment.id, date_range=(date(2024, 3, 2), date(2024, 3, 3))
        )

        trend = report.performance_trends["Variant A"]["click_rate"]
        assert trend == {"2024-03-02": 2.0, "2024-03-03": 3.0}

        exported = report.export_data
        assert exported["test_details"]["id"] == experiment.id
        assert [
            (row["variant_name"], row["recorded_date"], row["value"])
            for row in exported["results"]
        ] == [("Variant A", "2024-03-02", 2.0), ("Variant A", "2024-03-03", 3.0)]
        [treatment] = [v for v in exported["variants"] if not v["is_control"]]
        assert treatment["sample_count"] == 2
        assert treatment["metrics"]["click_rate"]["sample_size"] == 100
        assert exported["summary_metrics"] == report.current_results

    @pytest.mark.anyio
    async def test_current_results(
        self, service: ExperimentService, experiment_factory
    ):
        experiment = await experiment_factory(variants=2, split=30, start=True)
        results = await service.current_results(experiment.id)

        assert results["control"]["traffic_split"] == pytest.approx(40.0)
        assert len(results["variants"]) == 2

    @pytest.mark.anyio
    async def test_list_experiments(
        self, service: ExperimentService, experiment_factory
    ):
        first = await experiment_factory(name="Email subject", campaign_ref="c-1")
        second = await experiment_factory(name="Banner colour", start=True)

        assert [e.id for e in await service.list_experiments()] == [
            second.id,
            first.id,
        ]
        assert [e.id for e in await service.list_experiments(status="active")] == [
            second.id
        ]
        assert [e.id for e in await service.list_experiments(search="EMAIL")] == [
            first.id
        ]
        assert [e.id for e in await service.list_experiments(campaign_ref="c-1")] == [
            first.id
        ]

    @pytest.mark.anyio
    async def test_analytics_summary(
        self, service: ExperimentService, experiment_factory
    ):
        await experiment_factory(name="Draft one")
        done = await experiment_factory(name="Done", minimum_sample_size=10, start=True)
        await service.record_results(done.id, _entries(done.treatments[0].id, [2.0]))
        await service.complete(done.id)

        summary = await service.analytics_summary()

        assert summary["total_experiments"] == 2
        assert summary["by_status"] == {"draft": 1, "completed": 1}
        assert summary["by_goal"] == {"click_rate": 2}
        assert summary["total_sample_size"] == 50
        assert summary["average_completed_duration_days"] == 14.0


class TestStorageFailures:
    """Tests for storage errors raised through the service."""

    @pytest.mark.anyio
    async def test_storage_error_carries_operation_context(
        self, service: ExperimentService, database: ExperimentDatabase
    ):
        logged: list[dict] = []

        def _capture(event: str, **fields) -> None:
            logged.append(add_bound_context(None, "error", {"event": event, **fields}))

        failure = OperationalError("SELECT 1", {}, Exception("disk I/O error"))
        with (
            patch.object(database, "session", side_effect=failure),
            patch("cee.experiments.service.logger") as mock_logger,
        ):
            mock_logger.error.side_effect = _capture
            with pytest.raises(StorageError) as exc_info:
                await service.record_results(7, [])

        assert exc_info.value.operation == "record_results"
        [event] = logged
        assert event["event"] == "storage_error"
        assert event["operation"] == "record_results"
        assert event["experiment_id"] == 7
