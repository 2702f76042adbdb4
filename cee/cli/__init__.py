"""CEE command line interface."""

from cee.cli.main import cli

__all__ = ["cli"]
