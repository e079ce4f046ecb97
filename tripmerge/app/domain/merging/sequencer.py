"""
Route sequencing for merged trips.

Turns the pickup and dropoff waypoints of a trip into a visiting order
where every booking is picked up before it is dropped off.

Tiers:
1. External optimizer order, when it respects precedence.
2. Local repair: pickups by distance from the start, then the matching
   dropoffs in the same relative order.
3. Optimizer unavailable: sequence() returns None and the caller falls
   back to fallback_sequences().
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from tripmerge.app.models.booking_enums import StopKind
from tripmerge.app.services.geo import LatLng, coordinates_of, distance, estimate_duration_minutes, path_distance

logger = logging.getLogger("tripmerge.sequencer")

SOURCE_OPTIMIZER = "optimizer"
SOURCE_HEURISTIC = "heuristic"


@dataclass(frozen=True)
class Waypoint:
    """One stop of a trip."""
    booking_id: int
    stop_kind: StopKind
    location: LatLng
    address: Optional[str] = None
    sequence: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "booking_id": self.booking_id,
            "stop_kind": self.stop_kind.value,
            "location": {"lat": self.location[0], "lng": self.location[1]},
            "address": self.address,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class StopSequence:
    pickup_sequence: int
    dropoff_sequence: int


@dataclass
class SequenceResult:
    waypoints: List[Waypoint]
    sequences: Dict[int, StopSequence]
    total_distance_km: float
    total_duration_min: float
    polyline: str
    source: str
    leg_durations_min: List[float] = field(default_factory=list)

    def to_payload(self) -> dict:
        """Route document stored on the trip parent."""
        return {
            "waypoints": [waypoint.to_dict() for waypoint in self.waypoints],
            "total_distance_km": round(self.total_distance_km, 3),
            "total_duration_min": round(self.total_duration_min, 2),
            "polyline": self.polyline,
            "source": self.source,
        }


def build_waypoints(bookings: Sequence) -> List[Waypoint]:
    """All pickups, then all dropoffs, in booking order."""
    pickups = [
        Waypoint(booking.id, StopKind.PICKUP, coordinates_of(booking.pickup_location),
                 booking.pickup_location.get("address"))
        for booking in bookings
    ]
    dropoffs = [
        Waypoint(booking.id, StopKind.DROPOFF, coordinates_of(booking.dropoff_location),
                 booking.dropoff_location.get("address"))
        for booking in bookings
    ]
    return pickups + dropoffs


def stop_positions(order: Sequence[Waypoint]) -> Dict[int, Dict[StopKind, int]]:
    """Index of each booking's pickup and dropoff within `order`."""
    positions: Dict[int, Dict[StopKind, int]] = {}
    for index, waypoint in enumerate(order):
        slots = positions.setdefault(waypoint.booking_id, {})
        if waypoint.stop_kind is StopKind.PICKUP:
            slots[StopKind.PICKUP] = index
        elif waypoint.stop_kind is StopKind.DROPOFF:
            slots[StopKind.DROPOFF] = index
        else:
            raise ValueError(f"Unknown stop kind: {waypoint.stop_kind!r}")
    return positions


def precedence_violations(order: Sequence[Waypoint]) -> List[int]:
    """Booking ids whose pickup does not come strictly before their dropoff."""
    violations = []
    for booking_id, slots in stop_positions(order).items():
        pickup = slots.get(StopKind.PICKUP)
        dropoff = slots.get(StopKind.DROPOFF)
        if pickup is None or dropoff is None or pickup >= dropoff:
            violations.append(booking_id)
    return violations


def heuristic_order(waypoints: Sequence[Waypoint], start: LatLng) -> List[Waypoint]:
    """
    Pickups nearest-to-start first, then dropoffs in the same booking order.

    Every pickup precedes every dropoff, so precedence always holds.
    """
    pickups = [wp for wp in waypoints if wp.stop_kind is StopKind.PICKUP]
    pickups.sort(key=lambda wp: distance(start, wp.location))

    dropoffs = {wp.booking_id: wp for wp in waypoints if wp.stop_kind is StopKind.DROPOFF}
    ordered = list(pickups)
    for pickup in pickups:
        dropoff = dropoffs.get(pickup.booking_id)
        if dropoff is not None:
            ordered.append(dropoff)
    return ordered


def fallback_sequences(booking_ids: Sequence[int]) -> Dict[int, StopSequence]:
    """
    Numbering used when no route could be computed.

    Member i of N gets pickup i and dropoff 2N - i - 1: pickups fill the
    first half of the indices, so precedence holds for every member.
    """
    count = len(booking_ids)
    return {
        booking_id: StopSequence(pickup_sequence=i, dropoff_sequence=count * 2 - i - 1)
        for i, booking_id in enumerate(booking_ids)
    }


def _finalize(order: List[Waypoint], total_km: float, total_min: float,
              polyline: str, source: str, legs_min: List[float]) -> SequenceResult:
    numbered = [replace(waypoint, sequence=index) for index, waypoint in enumerate(order)]
    sequences = {
        booking_id: StopSequence(slots[StopKind.PICKUP], slots[StopKind.DROPOFF])
        for booking_id, slots in stop_positions(numbered).items()
    }
    return SequenceResult(
        waypoints=numbered,
        sequences=sequences,
        total_distance_km=total_km,
        total_duration_min=total_min,
        polyline=polyline,
        source=source,
        leg_durations_min=legs_min,
    )


def local_sequence(waypoints: Sequence[Waypoint], start: LatLng) -> SequenceResult:
    """Heuristic order with legs measured locally (great-circle, average speed)."""
    order = heuristic_order(waypoints, start)
    points = [start] + [waypoint.location for waypoint in order]
    legs_min = [estimate_duration_minutes(distance(points[i - 1], points[i])) for i in range(1, len(points))]
    total_km = path_distance(points)
    return _finalize(order, total_km, estimate_duration_minutes(total_km), "", SOURCE_HEURISTIC, legs_min)


class RouteSequencer:
    """
    Precedence-safe sequencing on top of an external optimizer.

    `optimizer` is any object with
    `async optimize(origin, intermediates, destination) -> OptimizerResponse`.
    """

    def __init__(self, optimizer):
        self.optimizer = optimizer

    async def sequence(self, waypoints: Sequence[Waypoint], start: LatLng) -> Optional[SequenceResult]:
        """
        Order `waypoints` (pickups first, then dropoffs) starting at `start`.

        Returns:
            SequenceResult, or None when the optimizer could not answer
        """
        if len(waypoints) < 1:
            return None

        waypoints = list(waypoints)
        intermediates = waypoints[:-1]
        destination = waypoints[-1]

        response = await self.optimizer.optimize(
            start,
            [waypoint.location for waypoint in intermediates],
            destination.location
        )
        if not response.ok:
            logger.info("Optimizer unavailable (%s), caller falls back", response.error_message)
            return None

        permutation = list(response.permutation)
        if sorted(permutation) != list(range(len(intermediates))):
            logger.warning("Optimizer returned an invalid permutation %s, repairing locally", permutation)
            return local_sequence(waypoints, start)

        order = [intermediates[index] for index in permutation] + [destination]
        violations = precedence_violations(order)
        if violations:
            logger.info("Optimizer order breaks pickup-before-dropoff for bookings %s, repairing", violations)
            return local_sequence(waypoints, start)

        return _finalize(
            order,
            sum(response.leg_distances_m) / 1000,
            sum(response.leg_durations_s) / 60,
            response.polyline or "",
            SOURCE_OPTIMIZER,
            [seconds / 60 for seconds in response.leg_durations_s],
        )
