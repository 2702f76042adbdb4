"""Main CLI entry point for CEE."""

import asyncio
import sys
from pathlib import Path

import click

from cee import __version__
from cee.cli.commands.experiment import experiment_command
from cee.cli.context import CLIContext, pass_context
from cee.core.logging import configure_logging_from_settings, redact_credentials
from cee.experiments.database import ExperimentDatabase

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ERROR = 2


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to cee.config.yaml configuration file",
)
@click.option(
    "--database-url",
    type=str,
    help="Database URL (overrides the configuration file)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (overrides the configuration file)",
)
@click.version_option(version=__version__, prog_name="cee")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    database_url: str | None,
    log_level: str | None,
) -> None:
    """CEE - Content Experimentation Engine CLI.

    Run A/B tests of marketing content: manage experiment lifecycles,
    record performance results and read winner reports.

    Examples:

      # Create the experiment store
      cee db init

      # List running experiments
      cee experiment list --status=active

      # Show the performance report of an experiment
      cee experiment report 3

      # Serve the HTTP API
      cee serve --port=8080
    """
    ctx.ensure_object(CLIContext)
    cli_ctx: CLIContext = ctx.obj
    cli_ctx.load(config_file, database_url)

    settings = cli_ctx.settings
    if log_level:
        settings.logging.level = log_level.upper()
    configure_logging_from_settings(settings)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command(name="version")
def version_cmd() -> None:
    """Show CEE version information."""
    click.echo(f"CEE - Content Experimentation Engine v{__version__}")
    click.echo(f"Python: {sys.version.split()[0]}")
    click.echo(f"Platform: {sys.platform}")


@cli.group(name="db")
def db_group() -> None:
    """Manage the experiment store."""


@db_group.command(name="init")
@pass_context
def db_init(cli_ctx: CLIContext) -> None:
    """Create the experiment tables if they do not exist.

    Exit Codes:

      0 - Tables created
      2 - Error occurred
    """
    database = ExperimentDatabase.from_settings(cli_ctx.settings.database)

    async def _init() -> None:
        try:
            await database.create_tables()
        finally:
            await database.close()

    try:
        asyncio.run(_init())
    except Exception as e:
        click.echo(f"Error initializing database: {e}", err=True)
        sys.exit(EXIT_ERROR)

    click.echo(f"Experiment store ready at {redact_credentials(database.url)}")
    sys.exit(EXIT_SUCCESS)


@cli.command(name="serve")
@click.option("--host", type=str, default=None, help="Host to bind to")
@click.option("--port", type=int, default=None, help="Port to bind to")
@pass_context
def serve_cmd(
    cli_ctx: CLIContext, host: str | None, port: int | None
) -> None:  # pragma: no cover
    """Serve the experiments HTTP API.

    Examples:

      # Serve on the configured address
      cee serve

      # Serve on a custom port
      cee serve --port=3000
    """
    import uvicorn

    from cee.api import create_app

    settings = cli_ctx.settings
    host = host or settings.api.host
    port = port or settings.api.port

    click.echo(f"Starting CEE API at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop")
    uvicorn.run(create_app(settings), host=host, port=port)


cli.add_command(experiment_command)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
