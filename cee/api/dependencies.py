"""FastAPI dependency injection for the experiments API."""

from typing import Annotated

from fastapi import Depends, Header, Request

from cee.experiments.service import ExperimentService


def get_service(request: Request) -> ExperimentService:
    """Get the experiment service attached to the application.

    Example:
        @router.get("/items")
        async def get_items(service: Service):
            ...
    """
    return request.app.state.service


def get_actor(
    x_actor_id: Annotated[str | None, Header(alias="X-Actor-Id")] = None,
) -> str | None:
    """Acting user reference; identification only, not authentication."""
    return x_actor_id


# Type aliases for cleaner route signatures
Service = Annotated[ExperimentService, Depends(get_service)]
Actor = Annotated[str | None, Depends(get_actor)]
