"""
API endpoints for the TrainKeeper submission and audit surface.
"""

from fastapi import APIRouter
from .endpoints import router

# Create main router
api_router = APIRouter()

# Include all endpoints
api_router.include_router(router, prefix="/api/v1", tags=["jobs"])

__all__ = ["api_router"]
