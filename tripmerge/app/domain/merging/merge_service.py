"""
Merge Service (Domain Logic).

Combines bookings into one trip headed by a parent booking, re-sequences
existing trips and produces route plans.

Every mutating operation is a single transaction:
1. Validate the request and read the bookings involved
2. Compute the visiting order (optimizer, local repair or fallback numbering)
3. Lock the rows, re-validate merge state, write, commit

Any failure rolls the whole transaction back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.core.exceptions import (
    AppException,
    NotFoundError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)
from tripmerge.app.domain.merging.eligibility import (
    BatchEvaluation,
    Checkpoint,
    batch_evaluate,
    estimated_dropoff_time,
    evaluate,
)
from tripmerge.app.domain.merging.sequencer import (
    RouteSequencer,
    SequenceResult,
    StopSequence,
    build_waypoints,
    fallback_sequences,
    local_sequence,
)
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.booking_enums import BookingStatus, StopKind
from tripmerge.app.services import booking_repository as repo
from tripmerge.app.services.cache import TTLCache
from tripmerge.app.services.config_service import load_merge_config
from tripmerge.app.services.geo import LatLng, coordinates_of

logger = logging.getLogger("tripmerge.merge")

SYSTEM_ACTOR = "system"


@dataclass
class TripSummary:
    trip_id: str
    route: Optional[dict]
    sequence: List[dict]


@dataclass
class MergeResult:
    parent: Booking
    children: List[Booking]
    trip: TripSummary


@dataclass
class ChildEligibility:
    id: int
    eligible: bool
    reason: str = ""
    failed_at: Optional[Checkpoint] = None


@dataclass
class EligibilityReport:
    parent_id: int
    results: List[ChildEligibility] = field(default_factory=list)
    checkpoints_run: int = 0

    @property
    def eligible_ids(self) -> List[int]:
        return [result.id for result in self.results if result.eligible]

    @property
    def ineligible_ids(self) -> List[int]:
        return [result.id for result in self.results if not result.eligible]

    @property
    def can_merge(self) -> bool:
        return bool(self.eligible_ids)

    @property
    def reasons(self) -> List[str]:
        return [result.reason for result in self.results if not result.eligible]


@dataclass
class MergeCandidates:
    booking: Booking
    evaluation: BatchEvaluation


def generate_trip_id(now: Optional[datetime] = None) -> str:
    """TRIP_<YYYYMMDD>_<HHMMSS + microseconds>."""
    now = now or datetime.now(timezone.utc)
    return f"TRIP_{now:%Y%m%d}_{now:%H%M%S%f}"


def _validate_request(parent_id: int, child_ids: Sequence[int]) -> List[int]:
    child_ids = list(child_ids or [])
    if not child_ids:
        raise ValidationError("child_booking_ids must contain at least one booking id")
    if len(set(child_ids)) != len(child_ids):
        raise ValidationError("child_booking_ids contains duplicates", details={"child_booking_ids": child_ids})
    if parent_id in child_ids:
        raise ValidationError(
            "Parent booking cannot also be a child",
            details={"parent_booking_id": parent_id}
        )
    return child_ids


def _ensure_can_head_trip(parent: Booking):
    if parent.is_merged:
        raise StateConflictError("Cannot use a merged booking as a parent", booking_id=parent.id)


def _ensure_can_join_trip(child: Booking):
    if child.is_merged:
        raise StateConflictError(f"Child booking with id {child.id} is already merged", booking_id=child.id)
    if child.has_merged_trips:
        raise StateConflictError(
            f"Child booking with id {child.id} already heads trip {child.trip_id}",
            booking_id=child.id
        )


async def trip_start_location(db: AsyncSession, parent: Booking) -> LatLng:
    """Parent's vehicle last known position, else the parent's pickup point."""
    vehicle = await repo.get_vehicle(db, parent.vehicle_id)
    if vehicle is not None and vehicle.current_lat is not None and vehicle.current_lng is not None:
        return vehicle.current_lat, vehicle.current_lng
    return coordinates_of(parent.pickup_location)


async def compute_sequence(
    db: AsyncSession,
    parent: Booking,
    members: Sequence[Booking],
    optimizer
) -> Optional[SequenceResult]:
    """Optimizer-backed order for `members`, or None when it is unavailable."""
    if optimizer is None:
        return None
    start = await trip_start_location(db, parent)
    return await RouteSequencer(optimizer).sequence(build_waypoints(members), start)


def sequence_view(members: Sequence[Booking]) -> List[dict]:
    """Trip stops ordered by the sequences stored on each member."""
    stops = []
    for booking in members:
        stops.append({
            "sequence": booking.pickup_sequence,
            "stop_kind": StopKind.PICKUP.value,
            "booking_id": booking.id,
            "location": booking.pickup_location.get("coordinates"),
        })
        stops.append({
            "sequence": booking.dropoff_sequence,
            "stop_kind": StopKind.DROPOFF.value,
            "booking_id": booking.id,
            "location": booking.dropoff_location.get("coordinates"),
        })
    return sorted(stops, key=lambda stop: stop["sequence"])


def apply_sequencing(parent: Booking, members: Sequence[Booking], result: Optional[SequenceResult]):
    """
    Write per-member sequences and the parent's route payload.

    Without a result every member gets fallback numbering and the route
    payload is cleared.
    """
    if result is not None:
        sequences: Dict[int, StopSequence] = result.sequences
        parent.optimized_route = result.to_payload()
    else:
        sequences = fallback_sequences([booking.id for booking in members])
        parent.optimized_route = None

    for booking in members:
        stop = sequences[booking.id]
        booking.pickup_sequence = stop.pickup_sequence
        booking.dropoff_sequence = stop.dropoff_sequence


async def _lock(db: AsyncSession, bookings: Sequence[Booking]):
    for booking in bookings:
        await db.refresh(booking, with_for_update=True)


async def _commit(db: AsyncSession, action: str):
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("%s failed, transaction rolled back: %s", action, e)
        raise PersistenceError(f"{action} failed and was rolled back")


async def merge_bookings(
    db: AsyncSession,
    parent_id: int,
    child_ids: Sequence[int],
    optimizer=None,
    actor: Optional[str] = None
) -> MergeResult:
    """
    Merge child bookings into the trip headed by a parent booking.

    A parent that already heads a trip keeps its trip id and existing
    children; the new children join that trip.

    Args:
        db: Database session
        parent_id: Booking that will head the trip
        child_ids: Bookings that will ride as children
        optimizer: Route optimizer client (None skips straight to fallback numbering)
        actor: Name recorded in the audit fields

    Returns:
        MergeResult with the updated parent, all children and the trip summary

    Raises:
        ValidationError: Malformed child id list
        NotFoundError: Parent or a child does not exist
        StateConflictError: A booking's merge state forbids the merge
        PersistenceError: The transaction could not be committed
    """
    child_ids = _validate_request(parent_id, child_ids)

    try:
        parent = await repo.get_booking(db, parent_id)
        if parent is None:
            raise NotFoundError("Parent booking", parent_id)
        _ensure_can_head_trip(parent)

        found = await repo.get_bookings(db, child_ids)
        new_children = []
        for child_id in child_ids:
            child = found.get(child_id)
            if child is None:
                raise NotFoundError("Child booking", child_id)
            _ensure_can_join_trip(child)
            new_children.append(child)

        existing_children = await repo.get_child_bookings(db, parent.id) if parent.has_merged_trips else []
        members = [parent] + existing_children + new_children

        result = await compute_sequence(db, parent, members, optimizer)

        # Merge state may have changed while the optimizer was working
        await _lock(db, members)
        _ensure_can_head_trip(parent)
        for child in new_children:
            _ensure_can_join_trip(child)
        for child in existing_children:
            if not child.is_merged or child.parent_booking_id != parent.id:
                raise StateConflictError(
                    f"Trip membership of booking {parent.id} changed during merge",
                    booking_id=child.id
                )
        if parent.has_merged_trips and await repo.count_child_bookings(db, parent.id) != len(existing_children):
            raise StateConflictError(f"Trip membership of booking {parent.id} changed during merge", booking_id=parent.id)

        trip_id = parent.trip_id if parent.has_merged_trips and parent.trip_id else generate_trip_id()
        actor = actor or SYSTEM_ACTOR

        apply_sequencing(parent, members, result)

        parent.has_merged_trips = True
        parent.merged_booking_ids = [child.id for child in existing_children + new_children]
        parent.status = BookingStatus.CONFIRMED
        parent.trip_id = trip_id
        parent.last_modified_by = actor
        parent.modification_notes = f"Heads trip {trip_id} with {len(parent.merged_booking_ids)} merged booking(s)"

        for child in new_children:
            child.pre_merge_status = child.status
            child.status = BookingStatus.MERGED
            child.is_merged = True
            child.parent_booking_id = parent.id
            child.trip_id = trip_id
            child.merge_eligible = False
            child.last_modified_by = actor
            child.modification_notes = f"Merged into trip {trip_id} with parent booking ID {parent.id}"

        await _commit(db, "Merge")
    except AppException:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Merge of %s into %s failed: %s", child_ids, parent_id, e)
        raise PersistenceError("Merge failed and was rolled back")

    if result is None:
        logger.info("Merged %s into booking %s as %s (fallback sequencing)", child_ids, parent.id, trip_id)
    else:
        logger.info("Merged %s into booking %s as %s (%s route)", child_ids, parent.id, trip_id, result.source)

    children = existing_children + new_children
    return MergeResult(
        parent=parent,
        children=children,
        trip=TripSummary(trip_id=trip_id, route=parent.optimized_route, sequence=sequence_view(members))
    )


async def _load_trip(db: AsyncSession, parent_id: int):
    parent = await repo.get_booking(db, parent_id)
    if parent is None:
        raise NotFoundError("Booking", parent_id)
    if not parent.has_merged_trips:
        raise StateConflictError(f"Booking with ID {parent_id} does not head a merged trip", booking_id=parent_id)
    children = await repo.get_child_bookings(db, parent.id)
    return parent, children


async def optimize_sequence(db: AsyncSession, parent_id: int, optimizer=None) -> TripSummary:
    """
    Recompute the visiting order of an existing trip.

    Raises:
        NotFoundError: Booking does not exist
        StateConflictError: Booking does not head a trip
    """
    try:
        parent, children = await _load_trip(db, parent_id)
        members = [parent] + children

        result = await compute_sequence(db, parent, members, optimizer)

        await _lock(db, members)
        if not parent.has_merged_trips:
            raise StateConflictError(f"Booking with ID {parent_id} no longer heads a merged trip", booking_id=parent_id)

        apply_sequencing(parent, members, result)
        await _commit(db, "Re-sequencing")
    except AppException:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Re-sequencing trip of booking %s failed: %s", parent_id, e)
        raise PersistenceError("Re-sequencing failed and was rolled back")

    logger.info("Re-sequenced trip %s (%s)", parent.trip_id, result.source if result else "fallback")
    return TripSummary(trip_id=parent.trip_id, route=parent.optimized_route, sequence=sequence_view(members))


def _eta_offsets(result: SequenceResult) -> List[float]:
    legs = result.leg_durations_min
    if len(legs) != len(result.waypoints):
        # Spread the total evenly when the optimizer did not return one leg per stop
        share = result.total_duration_min / len(result.waypoints) if result.waypoints else 0
        legs = [share] * len(result.waypoints)

    offsets = []
    elapsed = 0.0
    for leg in legs:
        elapsed += leg
        offsets.append(round(elapsed, 2))
    return offsets


def _route_stops(result: SequenceResult, bookings: Dict[int, Booking]) -> List[dict]:
    stops = []
    for waypoint, eta in zip(result.waypoints, _eta_offsets(result)):
        booking = bookings[waypoint.booking_id]
        if waypoint.stop_kind is StopKind.PICKUP:
            scheduled = booking.pickup_time
        else:
            scheduled = estimated_dropoff_time(booking)
        stops.append({
            "sequence_number": waypoint.sequence + 1,
            "stop_kind": waypoint.stop_kind.value,
            "booking_id": booking.id,
            "reference_no": booking.reference_no,
            "address": waypoint.address,
            "location": {"lat": waypoint.location[0], "lng": waypoint.location[1]},
            "passenger_count": booking.passenger_count or 1,
            "priority": booking.priority,
            "scheduled_time": scheduled.isoformat() if scheduled else None,
            "eta_offset_min": eta,
        })
    return stops


async def generate_route_plan(db: AsyncSession, parent_id: int, optimizer=None) -> dict:
    """
    Build and store a stop-by-stop route plan for an existing trip.

    Uses the optimizer order when available and the local heuristic
    otherwise, so a plan is always produced.

    Returns:
        Route plan document (also stored as the parent's route payload)
    """
    try:
        parent, children = await _load_trip(db, parent_id)
        members = [parent] + children

        result = await compute_sequence(db, parent, members, optimizer)
        if result is None:
            start = await trip_start_location(db, parent)
            result = local_sequence(build_waypoints(members), start)

        plan = result.to_payload()
        plan["parent_booking_id"] = parent.id
        plan["trip_id"] = parent.trip_id
        plan["stops"] = _route_stops(result, {booking.id: booking for booking in members})

        await _lock(db, members)
        if not parent.has_merged_trips:
            raise StateConflictError(f"Booking with ID {parent_id} no longer heads a merged trip", booking_id=parent_id)

        apply_sequencing(parent, members, result)
        parent.optimized_route = plan
        await _commit(db, "Route plan")
    except AppException:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Route plan for booking %s failed: %s", parent_id, e)
        raise PersistenceError("Route plan generation failed and was rolled back")

    logger.info("Generated %s route plan for trip %s with %d stops", result.source, parent.trip_id, len(plan["stops"]))
    return plan


async def check_merge_eligibility(
    db: AsyncSession,
    parent_id: int,
    child_ids: Sequence[int],
    cache: Optional[TTLCache] = None
) -> EligibilityReport:
    """
    Evaluate each requested child against the parent without writing.

    Missing children are reported as ineligible rather than raised.
    """
    child_ids = _validate_request(parent_id, child_ids)

    parent = await repo.get_booking(db, parent_id)
    if parent is None:
        raise NotFoundError("Parent booking", parent_id)
    _ensure_can_head_trip(parent)

    config = await load_merge_config(db, cache)
    vehicle = await repo.get_vehicle(db, parent.vehicle_id)
    found = await repo.get_bookings(db, child_ids)

    report = EligibilityReport(parent_id=parent.id)
    for child_id in child_ids:
        child = found.get(child_id)
        if child is None:
            report.results.append(ChildEligibility(id=child_id, eligible=False, reason=f"Booking #{child_id} not found"))
            continue

        outcome = evaluate(parent, child, config, vehicle)
        report.checkpoints_run += outcome.checkpoints_run
        report.results.append(ChildEligibility(
            id=child.id,
            eligible=outcome.eligible,
            reason=outcome.reason,
            failed_at=outcome.failed_at
        ))

    logger.info(
        "Eligibility for parent %s: %d of %d eligible after %d checkpoints",
        parent.id, len(report.eligible_ids), len(child_ids), report.checkpoints_run
    )
    return report


async def find_merge_candidates(
    db: AsyncSession,
    booking_id: int,
    cache: Optional[TTLCache] = None
) -> MergeCandidates:
    """Active standalone bookings that pass the operator merge checks against `booking_id`."""
    booking = await repo.get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError("Booking", booking_id)

    config = await load_merge_config(db, cache)
    vehicle = await repo.get_vehicle(db, booking.vehicle_id)

    candidates = [
        candidate for candidate in await repo.get_active_bookings(db)
        if not candidate.is_merged and candidate.id != booking.id
    ]
    evaluation = batch_evaluate(
        booking,
        candidates,
        config,
        vehicles={vehicle.id: vehicle} if vehicle else None,
        manual=True
    )
    return MergeCandidates(booking=booking, evaluation=evaluation)
