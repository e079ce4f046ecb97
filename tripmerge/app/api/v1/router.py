"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from tripmerge.app.api.v1.endpoints import config, trip_merge

router = APIRouter()

# Merge workflow
router.include_router(trip_merge.router)
router.include_router(trip_merge.scheduler_router)

# Runtime configuration
router.include_router(config.router)
