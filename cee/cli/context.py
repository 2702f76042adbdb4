"""Shared state of CLI invocations."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click

from cee.core.exceptions import ConfigurationError
from cee.core.settings import CEESettings, get_settings
from cee.experiments.database import ExperimentDatabase
from cee.experiments.service import ExperimentService


class CLIContext:
    """Context object holding the settings of one CLI invocation."""

    def __init__(self) -> None:
        self.config_file: Path | None = None
        self._settings: CEESettings | None = None

    def load(
        self,
        config_file: Path | None = None,
        database_url: str | None = None,
    ) -> None:
        """Load settings, letting explicit options win over the config file.

        Raises:
            click.ClickException: If the configuration cannot be loaded.
        """
        overrides = {}
        if database_url:
            overrides["database"] = {"url": database_url}
        try:
            self._settings = get_settings(config_file, **overrides)
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e
        self.config_file = config_file

    @property
    def settings(self) -> CEESettings:
        if self._settings is None:
            self.load()
        assert self._settings is not None
        return self._settings


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@asynccontextmanager
async def open_service(settings: CEESettings) -> AsyncIterator[ExperimentService]:
    """Open the configured store and yield a service bound to it.

    Tables are created if missing; the connection is closed on exit.
    """
    database = ExperimentDatabase.from_settings(settings.database)
    try:
        await database.create_tables()
        yield ExperimentService(database, settings.experiments)
    finally:
        await database.close()
