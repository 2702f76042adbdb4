"""CLI commands for managing content experiments."""

import asyncio
import json
import sys
from datetime import date
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cee.cli.context import CLIContext, open_service, pass_context
from cee.core.exceptions import ExperimentNotFoundError
from cee.core.settings import CEESettings
from cee.experiments.schemas import (
    ContentCandidate,
    ExperimentConfig,
    OperationResult,
    PerformanceReport,
    ResultEntry,
)
from cee.experiments.status import ExperimentStatus

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ERROR = 2

STATUS_CHOICES = [s.value for s in ExperimentStatus]

LIFECYCLE_MESSAGES = {
    "start": "started",
    "pause": "paused",
    "resume": "resumed",
    "stop": "stopped",
    "complete": "completed",
}


def _create_experiments_table(title: str = "Experiments") -> Table:
    """Create a Rich table for experiment display.

    Args:
        title: Table title.

    Returns:
        Configured Rich Table instance.
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="green", no_wrap=True)
    table.add_column("Campaign", style="blue")
    table.add_column("Status", style="magenta")
    table.add_column("Goal", style="dim")
    table.add_column("Variants", justify="right")
    table.add_column("Samples", justify="right")
    table.add_column("Winner", style="yellow")
    return table


def _create_variants_table(title: str = "Variants") -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="green")
    table.add_column("Content", style="blue")
    table.add_column("Traffic %", justify="right")
    table.add_column("Samples", justify="right")
    return table


def _format_status(status: str) -> str:
    """Format experiment status with color.

    Args:
        status: Status string.

    Returns:
        Formatted status with Rich markup.
    """
    status_colors = {
        "draft": "[dim]DRAFT[/dim]",
        "active": "[green]ACTIVE[/green]",
        "paused": "[yellow]PAUSED[/yellow]",
        "completed": "[blue]COMPLETED[/blue]",
        "stopped": "[bold red]STOPPED[/bold red]",
    }
    return status_colors.get(status, status.upper())


def _print_errors(errors: list[str]) -> None:
    for error in errors:
        click.echo(f"Error: {error}", err=True)


def _result_dict(result: OperationResult[Any]) -> dict[str, Any]:
    value = result.value
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return {
        "success": result.success,
        "not_found": result.not_found,
        "errors": result.errors,
        "data": value,
    }


def _experiment_row(snapshot: Any) -> dict[str, Any]:
    winner = None
    if snapshot.winner_variant_id is not None:
        variant = snapshot.get_variant(snapshot.winner_variant_id)
        winner = variant.name if variant else None
    return {
        "id": snapshot.id,
        "name": snapshot.name,
        "campaign_ref": snapshot.campaign_ref,
        "status": snapshot.status,
        "primary_goal": snapshot.primary_goal,
        "variants": len(snapshot.treatments),
        "sample_size": snapshot.total_sample_size,
        "winner": winner,
        "created_at": snapshot.created_at.isoformat() if snapshot.created_at else None,
    }


@click.group(name="experiment")
def experiment_command() -> None:
    """Manage content A/B experiments.

    Compare content variants against a control, record their performance
    and declare a winner with statistical confidence.

    Examples:

      # List all experiments
      cee experiment list

      # Create an experiment from a control and two variants
      cee experiment create --name=subject-lines --control=post-1 \\
          --variant=post-2 --variant=post-3

      # Start an experiment
      cee experiment start 1

      # Record results from a JSON file
      cee experiment record 1 --file=results.json

      # Show the performance report
      cee experiment report 1
    """
    pass


# ==================== list / show / summary ====================


@experiment_command.command(name="list")
@click.option(
    "--status",
    "-s",
    type=click.Choice(STATUS_CHOICES),
    help="Filter by experiment status",
)
@click.option("--campaign", type=str, help="Filter by campaign reference")
@click.option("--search", type=str, help="Filter by name or description")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_context
def list_experiments(
    cli_ctx: CLIContext,
    status: str | None,
    campaign: str | None,
    search: str | None,
    output: str,
) -> None:
    """List content experiments, newest first.

    Examples:

      # List only active experiments
      cee experiment list --status=active

      # Output as JSON
      cee experiment list --output=json

    Exit Codes:

      0 - Success
      2 - Error occurred
    """
    console = Console()

    try:
        result = asyncio.run(
            _list_experiments_async(
                cli_ctx.settings, status=status, campaign=campaign, search=search
            )
        )
    except Exception as e:
        click.echo(f"Error listing experiments: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if output == "json":
        click.echo(json.dumps(result, indent=2, default=str))
    else:
        _output_experiments_console(result, console)
    sys.exit(EXIT_SUCCESS)


async def _list_experiments_async(
    settings: CEESettings,
    status: str | None = None,
    campaign: str | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    async with open_service(settings) as service:
        experiments = await service.list_experiments(
            status=status, campaign_ref=campaign, search=search
        )
    return [_experiment_row(e) for e in experiments]


def _output_experiments_console(
    experiments: list[dict[str, Any]],
    console: Console,
) -> None:
    if not experiments:
        console.print("No experiments found.")
        return

    table = _create_experiments_table()
    for exp in experiments:
        table.add_row(
            str(exp["id"]),
            exp["name"],
            exp["campaign_ref"] or "-",
            _format_status(exp["status"]),
            exp["primary_goal"],
            str(exp["variants"]),
            str(exp["sample_size"]),
            exp["winner"] or "[dim]-[/dim]",
        )

    console.print(table)
    console.print(f"\nTotal: {len(experiments)} experiment(s)")


@experiment_command.command(name="show")
@click.argument("experiment_id", type=int)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_context
def show_experiment(cli_ctx: CLIContext, experiment_id: int, output: str) -> None:
    """Show an experiment with its variants.

    Exit Codes:

      0 - Success
      1 - Experiment not found
      2 - Error occurred
    """
    console = Console()

    try:
        experiment = asyncio.run(
            _show_experiment_async(cli_ctx.settings, experiment_id)
        )
    except ExperimentNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        click.echo(f"Error getting experiment: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if output == "json":
        click.echo(json.dumps(experiment, indent=2, default=str))
        sys.exit(EXIT_SUCCESS)

    console.print(f"[bold]Experiment {experiment['id']}: {experiment['name']}[/bold]")
    console.print(f"  Status: {_format_status(experiment['status'])}")
    console.print(f"  Primary goal: {experiment['primary_goal']}")
    console.print(f"  Confidence level: {experiment['confidence_level']}%")
    console.print(f"  Minimum sample size: {experiment['minimum_sample_size']}")
    console.print(f"  Duration: {experiment['duration_days']} days")
    if experiment["start_date"]:
        console.print(f"  Started: {experiment['start_date']}")
    if experiment["end_date"]:
        console.print(f"  Ends: {experiment['end_date']}")

    table = _create_variants_table()
    for variant in experiment["variants"]:
        name = variant["name"]
        if variant["is_control"]:
            name = f"{name} [dim](control)[/dim]"
        table.add_row(
            str(variant["id"]),
            name,
            variant["content_ref"],
            f"{variant['traffic_split']:g}",
            str(variant["sample_size"]),
        )
    console.print(table)
    sys.exit(EXIT_SUCCESS)


async def _show_experiment_async(
    settings: CEESettings, experiment_id: int
) -> dict[str, Any]:
    async with open_service(settings) as service:
        snapshot = await service.get_experiment(experiment_id)
    return snapshot.model_dump(mode="json")


@experiment_command.command(name="summary")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_context
def summary(cli_ctx: CLIContext, output: str) -> None:
    """Show totals across all experiments."""
    console = Console()

    try:
        totals = asyncio.run(_summary_async(cli_ctx.settings))
    except Exception as e:
        click.echo(f"Error summarizing experiments: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if output == "json":
        click.echo(json.dumps(totals, indent=2, default=str))
        sys.exit(EXIT_SUCCESS)

    console.print(f"Experiments: {totals['total_experiments']}")
    for status, count in sorted(totals["by_status"].items()):
        console.print(f"  {_format_status(status)}: {count}")
    console.print(f"Total sample size: {totals['total_sample_size']}")
    average = totals["average_completed_duration_days"]
    if average is not None:
        console.print(f"Average completed duration: {average:.1f} days")
    sys.exit(EXIT_SUCCESS)


async def _summary_async(settings: CEESettings) -> dict[str, Any]:
    async with open_service(settings) as service:
        return await service.analytics_summary()


# ==================== create / add-variant ====================


@experiment_command.command(name="create")
@click.option("--name", "-n", type=str, required=True, help="Experiment name")
@click.option(
    "--control", "-c", type=str, required=True, help="Control content reference"
)
@click.option(
    "--variant",
    "-v",
    "variants",
    type=str,
    multiple=True,
    help="Variant content reference (repeatable, split evenly)",
)
@click.option("--goal", type=str, default="click_rate", help="Primary goal metric")
@click.option(
    "--confidence",
    type=int,
    default=95,
    help="Target confidence level in percent (default: 95)",
)
@click.option(
    "--min-samples",
    type=int,
    default=100,
    help="Minimum aggregate sample size (default: 100)",
)
@click.option(
    "--duration", type=int, default=14, help="Duration in days (default: 14)"
)
@click.option("--campaign", type=str, help="Campaign reference")
@click.option("--description", "-d", type=str, help="Experiment description")
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def create_experiment(
    cli_ctx: CLIContext,
    name: str,
    control: str,
    variants: tuple[str, ...],
    goal: str,
    confidence: int,
    min_samples: int,
    duration: int,
    campaign: str | None,
    description: str | None,
    actor: str | None,
) -> None:
    """Create a draft experiment.

    With --variant options the variants are created at once with an even
    traffic split; otherwise add them later with 'add-variant'.

    Exit Codes:

      0 - Experiment created
      1 - Configuration refused
      2 - Error occurred
    """
    console = Console()
    config = ExperimentConfig(
        name=name,
        description=description,
        campaign_ref=campaign,
        control_content_ref=control,
        primary_goal=goal,
        confidence_level=confidence,
        minimum_sample_size=min_samples,
        duration_days=duration,
    )

    try:
        result = asyncio.run(
            _create_experiment_async(cli_ctx.settings, config, list(variants), actor)
        )
    except Exception as e:
        click.echo(f"Error creating experiment: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if not result["success"]:
        _print_errors(result["errors"])
        sys.exit(EXIT_FAILURE)

    experiment = result["data"]
    console.print(f"[green]Experiment '{name}' created.[/green]")
    console.print(f"  ID: {experiment['id']}")
    for variant in experiment["variants"]:
        if not variant["is_control"]:
            console.print(
                f"  {variant['name']}: {variant['content_ref']} "
                f"({variant['traffic_split']:g}%)"
            )
    console.print(
        f"\nUse 'cee experiment start {experiment['id']}' to begin the experiment."
    )
    sys.exit(EXIT_SUCCESS)


async def _create_experiment_async(
    settings: CEESettings,
    config: ExperimentConfig,
    variants: list[str],
    actor: str | None,
) -> dict[str, Any]:
    async with open_service(settings) as service:
        if variants:
            refs = [config.control_content_ref or "", *variants]
            candidates = [ContentCandidate(content_ref=ref) for ref in refs]
            result = await service.bulk_create_from_content_list(
                candidates, config, actor=actor
            )
        else:
            result = await service.create_experiment(config, actor=actor)
    return _result_dict(result)


@experiment_command.command(name="add-variant")
@click.argument("experiment_id", type=int)
@click.argument("content_ref", type=str)
@click.option("--name", "-n", type=str, help="Variant name (default: next letter)")
@click.option(
    "--split",
    type=float,
    default=None,
    help="Traffic split in percent (default: spread evenly)",
)
@click.option("--title", type=str, help="Content title")
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def add_variant(
    cli_ctx: CLIContext,
    experiment_id: int,
    content_ref: str,
    name: str | None,
    split: float | None,
    title: str | None,
    actor: str | None,
) -> None:
    """Add a variant to a draft experiment.

    Without --split the treatments are rebalanced to an even split.

    Exit Codes:

      0 - Variant added
      1 - Refused
      2 - Error occurred
    """
    try:
        result = asyncio.run(
            _add_variant_async(
                cli_ctx.settings,
                experiment_id,
                content_ref,
                name=name,
                split=split,
                title=title,
                actor=actor,
            )
        )
    except Exception as e:
        click.echo(f"Error adding variant: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if not result["success"]:
        _print_errors(result["errors"])
        sys.exit(EXIT_FAILURE)

    variant = result["data"]
    click.echo(
        f"Variant '{variant['name']}' added to experiment {experiment_id} "
        f"({variant['traffic_split']:g}%)"
    )
    sys.exit(EXIT_SUCCESS)


async def _add_variant_async(
    settings: CEESettings,
    experiment_id: int,
    content_ref: str,
    name: str | None,
    split: float | None,
    title: str | None,
    actor: str | None,
) -> dict[str, Any]:
    async with open_service(settings) as service:
        result = await service.add_variant(
            experiment_id,
            content_ref,
            name=name,
            traffic_split=split,
            actor=actor,
            title=title,
        )
    return _result_dict(result)


# ==================== lifecycle ====================


async def _lifecycle_async(
    settings: CEESettings,
    action: str,
    experiment_id: int,
    reason: str | None = None,
    actor: str | None = None,
) -> dict[str, Any]:
    """Run one lifecycle action and return its outcome as a dict."""
    async with open_service(settings) as service:
        if action == "start":
            result = await service.start(experiment_id, actor=actor)
        elif action == "complete":
            result = await service.complete(experiment_id, actor=actor)
        else:
            operation = getattr(service, action)
            result = await operation(experiment_id, reason=reason, actor=actor)
    return _result_dict(result)


def _run_lifecycle(
    settings: CEESettings,
    action: str,
    experiment_id: int,
    reason: str | None = None,
    actor: str | None = None,
) -> None:
    try:
        result = asyncio.run(
            _lifecycle_async(settings, action, experiment_id, reason, actor)
        )
    except Exception as e:
        click.echo(f"Error running {action}: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if not result["success"]:
        _print_errors(result["errors"])
        sys.exit(EXIT_FAILURE)

    console = Console()
    console.print(
        f"[green]Experiment {experiment_id} {LIFECYCLE_MESSAGES[action]}.[/green]"
    )
    experiment = result["data"]
    if action == "start" and experiment.get("end_date"):
        console.print(f"  Scheduled end: {experiment['end_date']}")
    if action == "complete":
        winner_id = experiment.get("winner_variant_id")
        winner = next(
            (v["name"] for v in experiment["variants"] if v["id"] == winner_id),
            None,
        )
        console.print(f"  Winner: {winner or 'none (inconclusive)'}")
    sys.exit(EXIT_SUCCESS)


@experiment_command.command(name="start")
@click.argument("experiment_id", type=int)
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def start_experiment(
    cli_ctx: CLIContext, experiment_id: int, actor: str | None
) -> None:
    """Start a draft experiment.

    Exit Codes:

      0 - Experiment started
      1 - Refused (wrong status, no variants, not found)
      2 - Error occurred
    """
    _run_lifecycle(cli_ctx.settings, "start", experiment_id, actor=actor)


@experiment_command.command(name="pause")
@click.argument("experiment_id", type=int)
@click.option("--reason", "-r", type=str, help="Reason for pausing")
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def pause_experiment(
    cli_ctx: CLIContext, experiment_id: int, reason: str | None, actor: str | None
) -> None:
    """Pause an active experiment."""
    _run_lifecycle(cli_ctx.settings, "pause", experiment_id, reason, actor)


@experiment_command.command(name="resume")
@click.argument("experiment_id", type=int)
@click.option("--reason", "-r", type=str, help="Reason for resuming")
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def resume_experiment(
    cli_ctx: CLIContext, experiment_id: int, reason: str | None, actor: str | None
) -> None:
    """Resume a paused experiment."""
    _run_lifecycle(cli_ctx.settings, "resume", experiment_id, reason, actor)


@experiment_command.command(name="stop")
@click.argument("experiment_id", type=int)
@click.option("--reason", "-r", type=str, help="Reason for stopping")
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def stop_experiment(
    cli_ctx: CLIContext, experiment_id: int, reason: str | None, actor: str | None
) -> None:
    """Stop an active or paused experiment early."""
    _run_lifecycle(cli_ctx.settings, "stop", experiment_id, reason, actor)


@experiment_command.command(name="complete")
@click.argument("experiment_id", type=int)
@click.option("--actor", type=str, help="Acting user reference")
@pass_context
def complete_experiment(
    cli_ctx: CLIContext, experiment_id: int, actor: str | None
) -> None:
    """Complete an experiment and declare its winner.

    Exit Codes:

      0 - Experiment completed
      1 - Refused (wrong status, minimum sample size not reached)
      2 - Error occurred
    """
    _run_lifecycle(cli_ctx.settings, "complete", experiment_id, actor=actor)


# ==================== record / report ====================


def _load_entries(file: Path) -> list[dict[str, Any]]:
    """Read result entries from a JSON file (a list or {"entries": [...]})."""
    with open(file) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("entries", [])
    if not isinstance(data, list):
        raise click.ClickException("Results file must contain a list of entries")
    return data


@experiment_command.command(name="record")
@click.argument("experiment_id", type=int)
@click.option(
    "--file",
    "-f",
    "file",
    type=click.Path(exists=True, path_type=Path),
    help="JSON file with a list of result entries",
)
@click.option("--variant", type=str, help="Variant name")
@click.option("--metric", type=str, help="Metric name")
@click.option("--value", type=float, help="Metric value")
@click.option("--sample-size", type=int, default=1, help="Observations behind value")
@click.option(
    "--date",
    "recorded_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Date the value was observed (default: today)",
)
@pass_context
def record_results(
    cli_ctx: CLIContext,
    experiment_id: int,
    file: Path | None,
    variant: str | None,
    metric: str | None,
    value: float | None,
    sample_size: int,
    recorded_date: Any,
) -> None:
    """Record metric results for an experiment.

    Examples:

      # Record a batch from a file
      cee experiment record 1 --file=results.json

      # Record one value
      cee experiment record 1 --variant="Variant A" --metric=click_rate \\
          --value=4.2 --sample-size=500

    Exit Codes:

      0 - Results recorded
      1 - Refused or some entries rejected
      2 - Error occurred
    """
    if file is not None:
        try:
            entries = _load_entries(file)
        except (json.JSONDecodeError, OSError) as e:
            click.echo(f"Error reading results file: {e}", err=True)
            sys.exit(EXIT_ERROR)
    elif variant and metric and value is not None:
        entries = [
            ResultEntry(
                variant_name=variant,
                metric_name=metric,
                value=value,
                sample_size=sample_size,
                date=recorded_date.date() if recorded_date else None,
            ).model_dump()
        ]
    else:
        click.echo(
            "Error: provide --file or all of --variant, --metric and --value",
            err=True,
        )
        sys.exit(EXIT_ERROR)

    try:
        result = asyncio.run(_record_async(cli_ctx.settings, experiment_id, entries))
    except Exception as e:
        click.echo(f"Error recording results: {e}", err=True)
        sys.exit(EXIT_ERROR)

    _print_errors(result["errors"])
    if not result["success"]:
        sys.exit(EXIT_FAILURE)

    click.echo(f"Recorded {result['data']} of {len(entries)} result(s)")
    sys.exit(EXIT_FAILURE if result["errors"] else EXIT_SUCCESS)


async def _record_async(
    settings: CEESettings,
    experiment_id: int,
    entries: list[dict[str, Any]],
) -> dict[str, Any]:
    async with open_service(settings) as service:
        result = await service.record_results(experiment_id, entries)
    return _result_dict(result)


@experiment_command.command(name="report")
@click.argument("experiment_id", type=int)
@click.option(
    "--start-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="First recorded date to include",
)
@click.option(
    "--end-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Last recorded date to include",
)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["console", "json"]),
    default="console",
    help="Output format",
)
@pass_context
def report(
    cli_ctx: CLIContext,
    experiment_id: int,
    start_date: Any,
    end_date: Any,
    output: str,
) -> None:
    """Show the performance report of an experiment.

    Exit Codes:

      0 - Success
      1 - Experiment not found
      2 - Error occurred
    """
    date_range = None
    if start_date or end_date:
        date_range = (
            start_date.date() if start_date else None,
            end_date.date() if end_date else None,
        )

    try:
        result = asyncio.run(
            _report_async(cli_ctx.settings, experiment_id, date_range)
        )
    except ExperimentNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        click.echo(f"Error generating report: {e}", err=True)
        sys.exit(EXIT_ERROR)

    if output == "json":
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        _output_report_console(result, Console())
    sys.exit(EXIT_SUCCESS)


async def _report_async(
    settings: CEESettings,
    experiment_id: int,
    date_range: tuple[date | None, date | None] | None,
) -> PerformanceReport:
    async with open_service(settings) as service:
        return await service.generate_performance_report(
            experiment_id, date_range=date_range
        )


def _output_report_console(report: PerformanceReport, console: Console) -> None:
    if report.is_empty:
        console.print("No results yet: the experiment has not started.")
        return

    summary = report.test_summary
    status = _format_status(summary["status"])
    console.print(f"[bold]{summary['name']}[/bold] ({status})")
    console.print(f"  Primary goal: {summary['primary_goal']}")
    console.print(f"  Total sample size: {summary['total_sample_size']}")

    analysis = report.statistical_analysis
    table = Table(title="Significance", show_header=True, header_style="bold cyan")
    table.add_column("Variant", style="green")
    table.add_column("Improvement %", justify="right")
    table.add_column("p-value", justify="right")
    table.add_column("Confidence %", justify="right")
    table.add_column("Significant", justify="center")
    for row in analysis.get("results", []):
        improvement = row.get("relative_improvement")
        table.add_row(
            row["variant_name"],
            f"{improvement:+.2f}" if improvement is not None else "-",
            f"{row['adjusted_p_value']:.4f}",
            f"{row['confidence_achieved']:.1f}",
            "[green]yes[/green]" if row["is_significant"] else "[dim]no[/dim]",
        )
    console.print(table)

    if report.recommendations:
        console.print("\n[bold]Recommendations[/bold]")
        for rec in report.recommendations:
            console.print(f"  {escape(f'[{rec.priority.value}]')} {rec.message}")
    if report.key_insights:
        console.print("\n[bold]Insights[/bold]")
        for insight in report.key_insights:
            console.print(f"  - {insight}")
