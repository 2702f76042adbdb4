"""Shared pytest fixtures for CEE tests."""

from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from cee.core.logging import reset_logging
from cee.core.settings import ExperimentSettings
from cee.experiments import (
    ExperimentConfig,
    ExperimentDatabase,
    ExperimentService,
    ExperimentSnapshot,
)

ExperimentFactory = Callable[..., Awaitable[ExperimentSnapshot]]


class FrozenClock:
    """Controllable replacement for ``datetime.now``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def anyio_backend() -> str:
    """Run async tests on asyncio only (aiosqlite needs it)."""
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    reset_logging()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """URL of a throwaway SQLite database."""
    return f"sqlite+aiosqlite:///{tmp_path / 'experiments.db'}"


@pytest.fixture
async def database(database_url: str) -> AsyncGenerator[ExperimentDatabase, None]:
    """Experiment database with tables created."""
    db = ExperimentDatabase(database_url)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def experiment_settings() -> ExperimentSettings:
    return ExperimentSettings()


@pytest.fixture
def service(
    database: ExperimentDatabase,
    experiment_settings: ExperimentSettings,
    clock: FrozenClock,
) -> ExperimentService:
    """Experiment service over the throwaway database with a frozen clock."""
    return ExperimentService(database, experiment_settings, clock=clock)


@pytest.fixture
def make_config() -> Callable[..., ExperimentConfig]:
    """Build a valid experiment configuration with optional overrides."""

    def factory(**overrides: Any) -> ExperimentConfig:
        values: dict[str, Any] = {
            "name": "Spring subject lines",
            "control_content_ref": "content-control",
            "primary_goal": "click_rate",
            "confidence_level": 95,
            "minimum_sample_size": 100,
            "duration_days": 14,
        }
        values.update(overrides)
        return ExperimentConfig(**values)

    return factory


@pytest.fixture
def experiment_factory(
    service: ExperimentService,
    make_config: Callable[..., ExperimentConfig],
) -> ExperimentFactory:
    """Create experiments with variants, optionally started."""

    async def factory(
        *,
        variants: int = 1,
        split: float = 50.0,
        start: bool = False,
        **config: Any,
    ) -> ExperimentSnapshot:
        created = await service.create_experiment(make_config(**config))
        assert created.success, created.errors
        experiment_id = created.value.id
        for index in range(variants):
            added = await service.add_variant(
                experiment_id, f"content-{index + 1}", traffic_split=split
            )
            assert added.success, added.errors
        if start:
            started = await service.start(experiment_id)
            assert started.success, started.errors
        return await service.get_experiment(experiment_id)

    return factory
