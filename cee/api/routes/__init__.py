"""API routes package."""

from fastapi import APIRouter

from cee.api.routes.experiments import router as experiments_router

# Main API router that aggregates all sub-routers
router = APIRouter()
router.include_router(experiments_router)

__all__ = ["router", "experiments_router"]
