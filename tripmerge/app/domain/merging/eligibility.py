"""
Merge eligibility checks.

Evaluates whether a candidate booking can ride on the same trip as a
base booking. Checks run in a fixed order and stop at the first failure,
cheapest and most decisive first:

    1. self            candidate is the base booking (silently skipped)
    2. already merged  candidate is a child or heads a trip
    3. pickup          pickup points within distance (and same zone)
    4. dropoff         dropoff points within distance (and same zone)
    5. booking type    same type, if required
    6. priority        same priority, if required
    7. time            pickup and dropoff times within their windows
    8. vehicle         required type and combined passenger capacity

Every call owns its own result, including the count of checkpoints it
ran; batch callers add those counts up themselves.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from tripmerge.app.services.config_service import MergeConfig
from tripmerge.app.services.geo import coordinates_of, distance, zone_of

# Dropoff estimate when a booking has none
DEFAULT_TRIP_DURATION = timedelta(hours=1)


class Checkpoint(str, enum.Enum):
    """Named compatibility tests, in evaluation order."""
    SELF = "self"
    ALREADY_MERGED = "already_merged"
    PICKUP = "pickup"
    DROPOFF = "dropoff"
    BOOKING_TYPE = "booking_type"
    PRIORITY = "priority"
    TIME = "time"
    VEHICLE = "vehicle"
    CAPACITY = "capacity"

    @property
    def number(self) -> int:
        return list(Checkpoint).index(self) + 1


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    failed_at: Optional[Checkpoint] = None
    reason: str = ""
    checkpoints_run: int = 0


@dataclass(frozen=True)
class IneligibleCandidate:
    id: int
    reason: str
    failed_at: Optional[Checkpoint]


@dataclass
class BatchEvaluation:
    eligible: list = field(default_factory=list)
    ineligible: List[IneligibleCandidate] = field(default_factory=list)
    checkpoints_run: int = 0


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def estimated_dropoff_time(booking) -> datetime:
    if booking.dropoff_time is not None:
        return as_utc(booking.dropoff_time)
    return as_utc(booking.pickup_time) + DEFAULT_TRIP_DURATION


def _minutes_apart(a: datetime, b: datetime) -> float:
    return abs((as_utc(a) - as_utc(b)).total_seconds()) / 60


def _fail(checkpoint: Checkpoint, reason: str, checkpoints_run: int) -> EligibilityResult:
    return EligibilityResult(
        eligible=False,
        failed_at=checkpoint,
        reason=f"Checkpoint #{checkpoint.number}: {reason}",
        checkpoints_run=checkpoints_run
    )


def location_failure(base_location: dict, candidate_location: dict, max_km: float,
                      same_zone_required: bool, label: str, candidate_id: int) -> Optional[str]:
    gap_km = distance(coordinates_of(base_location), coordinates_of(candidate_location))
    if gap_km > max_km:
        return f"Booking #{candidate_id} {label} location is too far from base booking ({gap_km:.2f} km)"
    if same_zone_required and zone_of(base_location) != zone_of(candidate_location):
        return (
            f"Booking #{candidate_id} {label} zone ({zone_of(candidate_location)}) "
            f"differs from base booking ({zone_of(base_location)})"
        )
    return None


def passenger_total(bookings: Sequence) -> int:
    return sum(booking.passenger_count or 1 for booking in bookings)


def vehicle_failure(vehicle, bookings: Sequence, config: MergeConfig) -> Optional[str]:
    """Reason the vehicle cannot carry all bookings together, or None."""
    if config.same_vehicle_type_required:
        required = {booking.vehicle_type for booking in bookings}
        if len(required) > 1:
            return f"required vehicle types differ ({', '.join(sorted(str(t) for t in required))})"

    for booking in bookings:
        if booking.vehicle_type and vehicle.vehicle_type != booking.vehicle_type:
            return (
                f"vehicle type {vehicle.vehicle_type} does not match "
                f"booking #{booking.id} requirement {booking.vehicle_type}"
            )

    total = passenger_total(bookings)
    if total > vehicle.capacity:
        return f"combined passengers ({total}) exceed vehicle capacity ({vehicle.capacity})"
    return None


def vehicle_for(base, candidate, vehicles: Optional[Dict[int, object]]):
    """Vehicle already known for either side (candidate first), if any."""
    if not vehicles:
        return None
    return vehicles.get(candidate.vehicle_id) or vehicles.get(base.vehicle_id)


def evaluate(base, candidate, config: MergeConfig, vehicle=None) -> EligibilityResult:
    """
    Decide whether `candidate` can join `base` on one trip.

    Args:
        base: Booking the trip is built around
        candidate: Booking being considered
        config: Merge thresholds
        vehicle: Vehicle already known for either booking, if any

    Returns:
        EligibilityResult naming the first failed checkpoint
    """
    run = 1
    if candidate.id == base.id:
        return EligibilityResult(eligible=False, checkpoints_run=run)

    run += 1
    if candidate.is_merged:
        return _fail(Checkpoint.ALREADY_MERGED, f"Booking #{candidate.id} is already merged with another booking", run)
    if candidate.has_merged_trips:
        return _fail(Checkpoint.ALREADY_MERGED, f"Booking #{candidate.id} already heads a merged trip", run)

    run += 1
    reason = location_failure(base.pickup_location, candidate.pickup_location,
                               config.pickup_distance_km, config.same_zone_required, "pickup", candidate.id)
    if reason:
        return _fail(Checkpoint.PICKUP, reason, run)

    run += 1
    reason = location_failure(base.dropoff_location, candidate.dropoff_location,
                               config.dropoff_distance_km, config.same_zone_required, "dropoff", candidate.id)
    if reason:
        return _fail(Checkpoint.DROPOFF, reason, run)

    run += 1
    if config.same_booking_type_required and base.booking_type != candidate.booking_type:
        return _fail(
            Checkpoint.BOOKING_TYPE,
            f"Booking #{candidate.id} type ({candidate.booking_type}) doesn't match base booking type ({base.booking_type})",
            run
        )

    run += 1
    if config.same_priority_required and base.priority != candidate.priority:
        return _fail(
            Checkpoint.PRIORITY,
            f"Booking #{candidate.id} priority ({candidate.priority}) doesn't match base booking priority ({base.priority})",
            run
        )

    run += 1
    pickup_gap = _minutes_apart(base.pickup_time, candidate.pickup_time)
    if pickup_gap > config.pickup_time_window_minutes:
        return _fail(
            Checkpoint.TIME,
            f"Booking #{candidate.id} pickup time is too far from base booking ({pickup_gap:.0f} min)",
            run
        )
    dropoff_gap = _minutes_apart(estimated_dropoff_time(base), estimated_dropoff_time(candidate))
    if dropoff_gap > config.dropoff_time_window_minutes:
        return _fail(
            Checkpoint.TIME,
            f"Booking #{candidate.id} dropoff time is too far from base booking ({dropoff_gap:.0f} min)",
            run
        )

    if vehicle is not None:
        run += 1
        reason = vehicle_failure(vehicle, [base, candidate], config)
        if reason:
            return _fail(Checkpoint.VEHICLE, f"Booking #{candidate.id}: {reason}", run)

    return EligibilityResult(eligible=True, checkpoints_run=run)


def evaluate_manual(base, candidate, config: MergeConfig, vehicle=None) -> EligibilityResult:
    """
    Relaxed evaluation for operator-driven merges.

    Keeps self, merge state, pickup, dropoff and booking type checks and
    replaces priority, time and vehicle type checks with a plain capacity
    check against `vehicle` (the base booking's vehicle).
    """
    run = 1
    if candidate.id == base.id:
        return EligibilityResult(eligible=False, checkpoints_run=run)

    run += 1
    if candidate.is_merged:
        return _fail(Checkpoint.ALREADY_MERGED, f"Booking #{candidate.id} is already merged with another booking", run)
    if candidate.has_merged_trips:
        return _fail(Checkpoint.ALREADY_MERGED, f"Booking #{candidate.id} already heads a merged trip", run)

    run += 1
    reason = location_failure(base.pickup_location, candidate.pickup_location,
                               config.pickup_distance_km, config.same_zone_required, "pickup", candidate.id)
    if reason:
        return _fail(Checkpoint.PICKUP, reason, run)

    run += 1
    reason = location_failure(base.dropoff_location, candidate.dropoff_location,
                               config.dropoff_distance_km, config.same_zone_required, "dropoff", candidate.id)
    if reason:
        return _fail(Checkpoint.DROPOFF, reason, run)

    run += 1
    if config.same_booking_type_required and base.booking_type != candidate.booking_type:
        return _fail(
            Checkpoint.BOOKING_TYPE,
            f"Booking #{candidate.id} type ({candidate.booking_type}) doesn't match base booking type ({base.booking_type})",
            run
        )

    if vehicle is not None:
        run += 1
        total = passenger_total([base, candidate])
        if total > vehicle.capacity:
            return _fail(
                Checkpoint.CAPACITY,
                f"Booking #{candidate.id}: combined passengers ({total}) exceed vehicle capacity ({vehicle.capacity})",
                run
            )

    return EligibilityResult(eligible=True, checkpoints_run=run)


def batch_evaluate(
    base,
    candidates: Sequence,
    config: MergeConfig,
    vehicles: Optional[Dict[int, object]] = None,
    manual: bool = False
) -> BatchEvaluation:
    """
    Evaluate many candidates against one base booking.

    Order-preserving over `candidates`; the base booking itself is skipped
    without being reported as ineligible.
    """
    batch = BatchEvaluation()
    for candidate in candidates:
        if manual:
            result = evaluate_manual(base, candidate, config, vehicles.get(base.vehicle_id) if vehicles else None)
        else:
            result = evaluate(base, candidate, config, vehicle_for(base, candidate, vehicles))
        batch.checkpoints_run += result.checkpoints_run

        if result.eligible:
            batch.eligible.append(candidate)
        elif result.failed_at is not None:
            batch.ineligible.append(IneligibleCandidate(
                id=candidate.id,
                reason=result.reason,
                failed_at=result.failed_at
            ))
    return batch
