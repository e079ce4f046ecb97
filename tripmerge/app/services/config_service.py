"""
Merge configuration service.

Every tunable threshold is a member of the closed MergeConfigKey
enumeration with a typed default. Stored values override defaults and
are coerced to the default's type on read.
"""

import enum
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.core.exceptions import ValidationError
from tripmerge.app.models.system_config import SystemConfig
from tripmerge.app.services.cache import TTLCache

logger = logging.getLogger("tripmerge.config")

ConfigValue = Union[bool, int, float]

CONFIG_GROUP = "trip_merging"
MERGE_CONFIG_CACHE_KEY = "merge_config"


class MergeConfigKey(str, enum.Enum):
    """Configuration keys understood by the merge engine."""
    AUTO_ENABLED = "TRIP_MERGE_AUTO_ENABLED"
    AUTO_CHECK_INTERVAL_SECONDS = "TRIP_MERGE_AUTO_CHECK_INTERVAL_SECONDS"
    PICKUP_DISTANCE_KM = "TRIP_MERGE_PICKUP_DISTANCE_KM"
    DROPOFF_DISTANCE_KM = "TRIP_MERGE_DROPOFF_DISTANCE_KM"
    SAME_ZONE_REQUIRED = "TRIP_MERGE_SAME_ZONE_REQUIRED"
    PICKUP_TIME_WINDOW_MINUTES = "TRIP_MERGE_PICKUP_TIME_WINDOW_MINUTES"
    DROPOFF_TIME_WINDOW_MINUTES = "TRIP_MERGE_DROPOFF_TIME_WINDOW_MINUTES"
    MAX_PICKUP_GAP_MINUTES = "TRIP_MERGE_MAX_PICKUP_GAP_MINUTES"
    MAX_TRIP_DURATION_MINUTES = "TRIP_MERGE_MAX_TRIP_DURATION_MINUTES"
    SAME_VEHICLE_TYPE_REQUIRED = "TRIP_MERGE_SAME_VEHICLE_TYPE_REQUIRED"
    SAME_BOOKING_TYPE_REQUIRED = "TRIP_MERGE_SAME_BOOKING_TYPE_REQUIRED"
    SAME_PRIORITY_REQUIRED = "TRIP_MERGE_SAME_PRIORITY_REQUIRED"
    ROUTE_DEVIATION_TOLERANCE_KM = "TRIP_MERGE_ROUTE_DEVIATION_TOLERANCE_KM"


DEFAULT_CONFIG: Dict[MergeConfigKey, ConfigValue] = {
    MergeConfigKey.AUTO_ENABLED: True,
    MergeConfigKey.AUTO_CHECK_INTERVAL_SECONDS: 60,
    MergeConfigKey.PICKUP_DISTANCE_KM: 7.0,
    MergeConfigKey.DROPOFF_DISTANCE_KM: 7.0,
    MergeConfigKey.SAME_ZONE_REQUIRED: True,
    MergeConfigKey.PICKUP_TIME_WINDOW_MINUTES: 15,
    MergeConfigKey.DROPOFF_TIME_WINDOW_MINUTES: 15,
    MergeConfigKey.MAX_PICKUP_GAP_MINUTES: 15,
    MergeConfigKey.MAX_TRIP_DURATION_MINUTES: 120,
    MergeConfigKey.SAME_VEHICLE_TYPE_REQUIRED: True,
    MergeConfigKey.SAME_BOOKING_TYPE_REQUIRED: True,
    MergeConfigKey.SAME_PRIORITY_REQUIRED: True,
    MergeConfigKey.ROUTE_DEVIATION_TOLERANCE_KM: 3.0,
}

DESCRIPTIONS: Dict[MergeConfigKey, str] = {
    MergeConfigKey.AUTO_ENABLED: "Whether automated trip merging is enabled",
    MergeConfigKey.AUTO_CHECK_INTERVAL_SECONDS: "Seconds between automated merge checks",
    MergeConfigKey.PICKUP_DISTANCE_KM: "Maximum distance between pickup locations (km)",
    MergeConfigKey.DROPOFF_DISTANCE_KM: "Maximum distance between dropoff locations (km)",
    MergeConfigKey.SAME_ZONE_REQUIRED: "Pickup/dropoff must be in the same zone",
    MergeConfigKey.PICKUP_TIME_WINDOW_MINUTES: "Maximum difference between pickup times (min)",
    MergeConfigKey.DROPOFF_TIME_WINDOW_MINUTES: "Maximum difference between dropoff times (min)",
    MergeConfigKey.MAX_PICKUP_GAP_MINUTES: "Maximum gap between consecutive pickups (min)",
    MergeConfigKey.MAX_TRIP_DURATION_MINUTES: "Maximum total merged trip duration (min)",
    MergeConfigKey.SAME_VEHICLE_TYPE_REQUIRED: "Bookings must require the same vehicle type",
    MergeConfigKey.SAME_BOOKING_TYPE_REQUIRED: "Bookings must be of the same type",
    MergeConfigKey.SAME_PRIORITY_REQUIRED: "Bookings must have the same priority",
    MergeConfigKey.ROUTE_DEVIATION_TOLERANCE_KM: "Maximum detour per passenger (km)",
}

# Smallest accepted value for each numeric key
MIN_VALUES: Dict[MergeConfigKey, float] = {
    MergeConfigKey.AUTO_CHECK_INTERVAL_SECONDS: 1,
    MergeConfigKey.PICKUP_DISTANCE_KM: 0,
    MergeConfigKey.DROPOFF_DISTANCE_KM: 0,
    MergeConfigKey.PICKUP_TIME_WINDOW_MINUTES: 0,
    MergeConfigKey.DROPOFF_TIME_WINDOW_MINUTES: 0,
    MergeConfigKey.MAX_PICKUP_GAP_MINUTES: 0,
    MergeConfigKey.MAX_TRIP_DURATION_MINUTES: 0,
    MergeConfigKey.ROUTE_DEVIATION_TOLERANCE_KM: 0,
}


@dataclass(frozen=True)
class MergeConfig:
    """Snapshot of every merge threshold, read once per operation."""
    auto_enabled: bool
    auto_check_interval_seconds: int
    pickup_distance_km: float
    dropoff_distance_km: float
    same_zone_required: bool
    pickup_time_window_minutes: int
    dropoff_time_window_minutes: int
    max_pickup_gap_minutes: int
    max_trip_duration_minutes: int
    same_vehicle_type_required: bool
    same_booking_type_required: bool
    same_priority_required: bool
    route_deviation_tolerance_km: float

    @classmethod
    def from_values(cls, values: Dict[MergeConfigKey, ConfigValue]) -> "MergeConfig":
        return cls(
            auto_enabled=values[MergeConfigKey.AUTO_ENABLED],
            auto_check_interval_seconds=values[MergeConfigKey.AUTO_CHECK_INTERVAL_SECONDS],
            pickup_distance_km=values[MergeConfigKey.PICKUP_DISTANCE_KM],
            dropoff_distance_km=values[MergeConfigKey.DROPOFF_DISTANCE_KM],
            same_zone_required=values[MergeConfigKey.SAME_ZONE_REQUIRED],
            pickup_time_window_minutes=values[MergeConfigKey.PICKUP_TIME_WINDOW_MINUTES],
            dropoff_time_window_minutes=values[MergeConfigKey.DROPOFF_TIME_WINDOW_MINUTES],
            max_pickup_gap_minutes=values[MergeConfigKey.MAX_PICKUP_GAP_MINUTES],
            max_trip_duration_minutes=values[MergeConfigKey.MAX_TRIP_DURATION_MINUTES],
            same_vehicle_type_required=values[MergeConfigKey.SAME_VEHICLE_TYPE_REQUIRED],
            same_booking_type_required=values[MergeConfigKey.SAME_BOOKING_TYPE_REQUIRED],
            same_priority_required=values[MergeConfigKey.SAME_PRIORITY_REQUIRED],
            route_deviation_tolerance_km=values[MergeConfigKey.ROUTE_DEVIATION_TOLERANCE_KM],
        )

    @classmethod
    def defaults(cls) -> "MergeConfig":
        return cls.from_values(DEFAULT_CONFIG)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_config_key(raw: str) -> MergeConfigKey:
    """Resolve an external key name, rejecting anything outside the enumeration."""
    try:
        return MergeConfigKey(raw)
    except ValueError:
        raise ValidationError(f"Unknown configuration key: {raw}", details={"key": raw})


def coerce_value(key: MergeConfigKey, raw: Any) -> ConfigValue:
    """
    Coerce a stored or submitted value to the type of the key's default.

    Raises:
        ValidationError: If the value cannot represent that type or is
            below the key's minimum
    """
    typed = _coerce_type(key, raw)
    minimum = MIN_VALUES.get(key)
    if minimum is not None and typed < minimum:
        raise ValidationError(
            f"Invalid value for {key.value}: must be at least {minimum}",
            details={"key": key.value, "value": raw, "minimum": minimum}
        )
    return typed


def _coerce_type(key: MergeConfigKey, raw: Any) -> ConfigValue:
    default = DEFAULT_CONFIG[key]
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in ("true", "1", "yes"):
                return True
            if text in ("false", "0", "no"):
                return False
            raise ValueError(raw)
        if isinstance(raw, bool):
            raise ValueError(raw)
        if isinstance(default, int):
            number = float(raw)
            if not number.is_integer():
                raise ValueError(raw)
            return int(number)
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid value for {key.value}: expected {type(default).__name__}",
            details={"key": key.value, "value": raw}
        )


def _serialize(value: ConfigValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


async def get_config_value(db: AsyncSession, key: MergeConfigKey) -> ConfigValue:
    """
    Get a configuration value, falling back to its default.

    Args:
        db: Database session
        key: Configuration key

    Returns:
        Typed value
    """
    result = await db.execute(select(SystemConfig).where(SystemConfig.key == key.value))
    entry = result.scalar_one_or_none()
    if entry is None:
        return DEFAULT_CONFIG[key]
    try:
        return coerce_value(key, entry.value)
    except ValidationError:
        logger.warning("Stored value %r for %s is invalid, using default", entry.value, key.value)
        return DEFAULT_CONFIG[key]


async def get_all_config(db: AsyncSession) -> Dict[MergeConfigKey, ConfigValue]:
    """All keys with stored overrides applied on top of defaults."""
    values: Dict[MergeConfigKey, ConfigValue] = dict(DEFAULT_CONFIG)

    result = await db.execute(select(SystemConfig))
    for entry in result.scalars().all():
        try:
            key = MergeConfigKey(entry.key)
        except ValueError:
            continue  # Keys owned by other subsystems
        try:
            values[key] = coerce_value(key, entry.value)
        except ValidationError:
            logger.warning("Stored value %r for %s is invalid, using default", entry.value, key.value)

    return values


async def set_config_value(db: AsyncSession, key: MergeConfigKey, value: Any) -> ConfigValue:
    """
    Persist a configuration value (caller commits, see commit_config).

    Returns:
        The coerced value that was stored
    """
    typed = coerce_value(key, value)

    entry = await db.get(SystemConfig, key.value)
    if entry is None:
        entry = SystemConfig(
            key=key.value,
            group=CONFIG_GROUP,
            data_type=type(DEFAULT_CONFIG[key]).__name__,
            description=DESCRIPTIONS[key],
            value=_serialize(typed),
        )
        db.add(entry)
    else:
        entry.value = _serialize(typed)

    await db.flush()

    logger.info("Configuration %s set to %s", key.value, _serialize(typed))
    return typed


async def commit_config(db: AsyncSession, cache: Optional[TTLCache] = None):
    """Commit pending configuration writes, then drop the cached snapshot."""
    await db.commit()
    if cache is not None:
        cache.invalidate(MERGE_CONFIG_CACHE_KEY)


async def initialize_config(db: AsyncSession) -> int:
    """
    Ensure every key has a stored row so operators can edit it.

    Returns:
        Number of rows created
    """
    result = await db.execute(select(SystemConfig.key))
    existing = set(result.scalars().all())

    created = 0
    for key, default in DEFAULT_CONFIG.items():
        if key.value in existing:
            continue
        db.add(SystemConfig(
            key=key.value,
            value=_serialize(default),
            group=CONFIG_GROUP,
            data_type=type(default).__name__,
            description=DESCRIPTIONS[key],
        ))
        created += 1

    await db.commit()
    if created:
        logger.info("Initialized %d configuration entries", created)
    return created


async def load_merge_config(db: AsyncSession, cache: Optional[TTLCache] = None) -> MergeConfig:
    """
    Read a full MergeConfig snapshot.

    When a cache is supplied the snapshot is reused until its TTL lapses
    or a change is committed through commit_config.
    """
    if cache is not None:
        cached = cache.get(MERGE_CONFIG_CACHE_KEY)
        if cached is not None:
            return cached

    merge_config = MergeConfig.from_values(await get_all_config(db))

    if cache is not None:
        cache.set(MERGE_CONFIG_CACHE_KEY, merge_config)
    return merge_config
