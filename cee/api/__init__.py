"""HTTP API for the Content Experimentation Engine."""

from cee.api.app import create_app

__all__ = ["create_app"]
