"""
Merge recommendations for newly approved bookings.

Scores how well an approved booking would fit into each active trip.
Read-only: nothing is written, and merged routes are estimated locally
rather than through the route optimizer.
"""

import logging
from dataclasses import dataclass, asdict
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.core.exceptions import NotFoundError
from tripmerge.app.domain.merging.eligibility import location_failure
from tripmerge.app.domain.merging.sequencer import build_waypoints, local_sequence
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.booking_enums import BookingStatus
from tripmerge.app.services import booking_repository as repo
from tripmerge.app.services.cache import TTLCache
from tripmerge.app.services.config_service import MergeConfig, load_merge_config
from tripmerge.app.services.geo import coordinates_of, distance, estimate_duration_minutes

logger = logging.getLogger("tripmerge.recommendations")

# Recommendations scoring below this are dropped
MIN_COMPATIBILITY_SCORE = 50

PICKUP_WEIGHT = 0.4
DROPOFF_WEIGHT = 0.4
TYPE_WEIGHT = 0.2


@dataclass
class Recommendation:
    parent_booking_id: int
    trip_id: Optional[str]
    trip_reference: Optional[str]
    compatibility_score: int
    pickup_distance_km: float
    dropoff_distance_km: float
    route_details: dict
    savings: dict

    def to_dict(self) -> dict:
        return asdict(self)


def proximity_score(distance_km: float, max_km: float) -> float:
    """100 at zero distance, falling linearly to 0 at the threshold."""
    if max_km <= 0:
        return 0.0
    return max(0.0, 100 - distance_km / max_km * 100)


def compatibility_score(pickup_km: float, dropoff_km: float, type_compatible: bool, config: MergeConfig) -> int:
    pickup_score = proximity_score(pickup_km, config.pickup_distance_km)
    dropoff_score = proximity_score(dropoff_km, config.dropoff_distance_km)
    type_score = 100 if type_compatible else 0
    return round(pickup_score * PICKUP_WEIGHT + dropoff_score * DROPOFF_WEIGHT + type_score * TYPE_WEIGHT)


def _types_compatible(booking: Booking, members: List[Booking], config: MergeConfig) -> bool:
    if not config.same_booking_type_required:
        return True
    return all(member.booking_type == booking.booking_type for member in members)


def _standalone_estimate(booking: Booking):
    if booking.estimated_distance_km is not None:
        km = booking.estimated_distance_km
    else:
        km = distance(coordinates_of(booking.pickup_location), coordinates_of(booking.dropoff_location))
    minutes = booking.estimated_duration_min
    if minutes is None:
        minutes = estimate_duration_minutes(km)
    return km, minutes


def _current_trip_estimate(trip: Booking, members: List[Booking]):
    route = trip.optimized_route or {}
    if route.get("total_distance_km") is not None and route.get("total_duration_min") is not None:
        return route["total_distance_km"], route["total_duration_min"]
    current = local_sequence(build_waypoints(members), coordinates_of(trip.pickup_location))
    return current.total_distance_km, current.total_duration_min


def _score_trip(booking: Booking, trip: Booking, children: List[Booking], config: MergeConfig) -> Optional[Recommendation]:
    members = [trip] + children

    if location_failure(trip.pickup_location, booking.pickup_location, config.pickup_distance_km,
                        config.same_zone_required, "pickup", booking.id):
        return None
    if location_failure(trip.dropoff_location, booking.dropoff_location, config.dropoff_distance_km,
                        config.same_zone_required, "dropoff", booking.id):
        return None

    type_compatible = _types_compatible(booking, members, config)
    if not type_compatible:
        return None

    merged = local_sequence(build_waypoints(members + [booking]), coordinates_of(trip.pickup_location))
    if merged.total_duration_min > config.max_trip_duration_minutes:
        return None

    pickup_km = distance(coordinates_of(booking.pickup_location), coordinates_of(trip.pickup_location))
    dropoff_km = distance(coordinates_of(booking.dropoff_location), coordinates_of(trip.dropoff_location))
    score = compatibility_score(pickup_km, dropoff_km, type_compatible, config)
    if score < MIN_COMPATIBILITY_SCORE:
        return None

    trip_km, trip_min = _current_trip_estimate(trip, members)
    alone_km, alone_min = _standalone_estimate(booking)

    return Recommendation(
        parent_booking_id=trip.id,
        trip_id=trip.trip_id,
        trip_reference=trip.reference_no,
        compatibility_score=score,
        pickup_distance_km=round(pickup_km, 3),
        dropoff_distance_km=round(dropoff_km, 3),
        route_details={
            "total_distance_km": round(merged.total_distance_km, 3),
            "total_duration_min": round(merged.total_duration_min, 2),
        },
        savings={
            "distance_km": round(alone_km - (merged.total_distance_km - trip_km), 3),
            "time_min": round(alone_min - (merged.total_duration_min - trip_min), 2),
        }
    )


async def get_merge_recommendations(
    db: AsyncSession,
    booking_id: int,
    cache: Optional[TTLCache] = None
) -> List[Recommendation]:
    """
    Active trips an approved booking could join, best match first.

    Bookings in any other status get an empty list.

    Raises:
        NotFoundError: Booking does not exist
    """
    booking = await repo.get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking", booking_id)

    if booking.status != BookingStatus.APPROVED:
        return []

    config = await load_merge_config(db, cache)

    recommendations = []
    for trip in await repo.get_active_trips(db):
        if trip.id == booking.id:
            continue
        try:
            children = await repo.get_child_bookings(db, trip.id)
            recommendation = _score_trip(booking, trip, children, config)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping trip %s for booking %s recommendation: %s", trip.id, booking_id, e)
            continue
        if recommendation is not None:
            recommendations.append(recommendation)

    recommendations.sort(key=lambda rec: rec.compatibility_score, reverse=True)
    return recommendations
