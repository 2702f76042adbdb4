"""CLI command groups."""

from cee.cli.commands.experiment import experiment_command

__all__ = ["experiment_command"]
