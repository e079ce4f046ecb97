"""
Configuration API Endpoints.

Operators read and tune merge thresholds at runtime. Unknown keys are
rejected; values are coerced to the key's type.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.core.dependencies import get_config_cache
from tripmerge.app.db.session import get_db
from tripmerge.app.schemas.config import ConfigEntry, ConfigUpdate
from tripmerge.app.schemas.envelope import ApiResponse
from tripmerge.app.services.cache import TTLCache
from tripmerge.app.services.config_service import (
    DEFAULT_CONFIG,
    DESCRIPTIONS,
    MergeConfigKey,
    commit_config,
    get_all_config,
    get_config_value,
    parse_config_key,
    set_config_value,
)

router = APIRouter(prefix="/config/trip-merge", tags=["Trip Merge - Configuration"])


def _entry(key: MergeConfigKey, value) -> ConfigEntry:
    default = DEFAULT_CONFIG[key]
    return ConfigEntry(
        key=key.value,
        value=value,
        default=default,
        data_type=type(default).__name__,
        description=DESCRIPTIONS[key]
    )


@router.get("", response_model=ApiResponse[List[ConfigEntry]])
async def list_config(db: AsyncSession = Depends(get_db)):
    """All merge thresholds with stored overrides applied."""
    values = await get_all_config(db)
    return ApiResponse(
        message=f"{len(values)} configuration entries",
        data=[_entry(key, value) for key, value in values.items()]
    )


@router.get("/{key}", response_model=ApiResponse[ConfigEntry])
async def get_config(
    key: str = Path(..., description="Configuration key, e.g. TRIP_MERGE_PICKUP_DISTANCE_KM"),
    db: AsyncSession = Depends(get_db)
):
    config_key = parse_config_key(key)
    value = await get_config_value(db, config_key)
    return ApiResponse(message=f"Configuration {config_key.value}", data=_entry(config_key, value))


@router.put("/{key}", response_model=ApiResponse[ConfigEntry])
async def update_config(
    payload: ConfigUpdate,
    key: str = Path(..., description="Configuration key"),
    db: AsyncSession = Depends(get_db),
    cache: Optional[TTLCache] = Depends(get_config_cache)
):
    """Store a new value; the cached merge configuration is invalidated."""
    config_key = parse_config_key(key)
    value = await set_config_value(db, config_key, payload.value)
    await commit_config(db, cache)
    return ApiResponse(message=f"Configuration {config_key.value} updated", data=_entry(config_key, value))
