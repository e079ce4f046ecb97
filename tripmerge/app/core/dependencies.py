"""
Shared FastAPI dependencies.

Process-wide collaborators (route optimizer client, configuration cache,
automated merge scheduler) are created in the application lifespan and
kept on app.state; these dependencies hand them to endpoints.
"""

from typing import Optional
from fastapi import Header, Request

from tripmerge.app.core.exceptions import AppException
from tripmerge.app.services.cache import TTLCache


def get_optimizer(request: Request):
    """Route optimizer client, or None when the app runs without one."""
    return getattr(request.app.state, "optimizer", None)


def get_config_cache(request: Request) -> Optional[TTLCache]:
    return getattr(request.app.state, "config_cache", None)


def get_scheduler(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise AppException(
            message="Automated merge scheduler is not running",
            error_code="ERR_SCHEDULER_001",
            status_code=503
        )
    return scheduler


def get_actor(x_actor: Optional[str] = Header(None)) -> Optional[str]:
    """Operator name for audit fields, taken from the X-Actor header."""
    return x_actor
