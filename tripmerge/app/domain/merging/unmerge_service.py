"""
Unmerge Service (Domain Logic).

Takes one child booking out of its trip and keeps the remaining trip
consistent in the same transaction. The remaining trip is sequenced before
any row is locked; locks are taken just before writing, after merge state
has been checked again.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.core.exceptions import AppException, NotFoundError, PersistenceError, StateConflictError
from tripmerge.app.domain.merging.merge_service import (
    SYSTEM_ACTOR,
    _commit,
    _lock,
    apply_sequencing,
    compute_sequence,
)
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.booking_enums import BookingStatus
from tripmerge.app.services import booking_repository as repo

logger = logging.getLogger("tripmerge.unmerge")


@dataclass
class UnmergeResult:
    booking: Booking
    parent: Optional[Booking]
    remaining_children: List[Booking]
    trip_dissolved: bool


def restored_status(booking: Booking) -> BookingStatus:
    """
    Status a booking returns to when it leaves a trip.

    assigned goes back to approved; merged (set by the merge itself) goes
    back to the status recorded before the merge, approved when unknown.
    """
    if booking.status == BookingStatus.ASSIGNED:
        return BookingStatus.APPROVED
    if booking.status == BookingStatus.MERGED:
        return booking.pre_merge_status or BookingStatus.APPROVED
    return booking.status


def _ensure_in_trip(booking: Booking):
    if not booking.is_merged or booking.parent_booking_id is None:
        raise StateConflictError(f"Booking with ID {booking.id} is not part of a merged trip", booking_id=booking.id)


def _dissolve_trip(parent: Booking, actor: str):
    parent.has_merged_trips = False
    parent.merged_booking_ids = None
    parent.trip_id = None
    parent.optimized_route = None
    parent.pickup_sequence = None
    parent.dropoff_sequence = None
    parent.last_modified_by = actor
    parent.modification_notes = "All child bookings have been unmerged"


async def unmerge_booking(
    db: AsyncSession,
    booking_id: int,
    optimizer=None,
    actor: Optional[str] = None
) -> UnmergeResult:
    """
    Remove a child booking from its trip.

    When it was the last child the parent stops heading a trip; otherwise
    the remaining trip is re-sequenced (optimizer when given, fallback
    numbering otherwise).

    Args:
        db: Database session
        booking_id: Child booking to take out
        optimizer: Route optimizer client used to re-sequence the remaining trip
        actor: Name recorded in the audit fields

    Raises:
        NotFoundError: Booking does not exist
        StateConflictError: Booking is not a child of a merged trip
        PersistenceError: The transaction could not be committed
    """
    actor = actor or SYSTEM_ACTOR

    try:
        booking = await repo.get_booking(db, booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        _ensure_in_trip(booking)

        parent_id = booking.parent_booking_id
        parent = await repo.get_booking(db, parent_id)
        remaining = [child for child in await repo.get_child_bookings(db, parent_id) if child.id != booking.id]

        result = None
        if parent is not None and remaining:
            result = await compute_sequence(db, parent, [parent] + remaining, optimizer)

        # Merge state may have changed while the optimizer was working
        members = sorted([booking] + remaining, key=lambda child: child.id)
        await _lock(db, ([parent] if parent is not None else []) + members)
        _ensure_in_trip(booking)
        if booking.parent_booking_id != parent_id:
            raise StateConflictError(
                f"Booking with ID {booking_id} moved to another trip during unmerge",
                booking_id=booking_id
            )
        for child in remaining:
            if not child.is_merged or child.parent_booking_id != parent_id:
                raise StateConflictError(
                    f"Trip membership of booking {parent_id} changed during unmerge",
                    booking_id=child.id
                )
        if await repo.count_child_bookings(db, parent_id) != len(members):
            raise StateConflictError(f"Trip membership of booking {parent_id} changed during unmerge", booking_id=parent_id)

        booking.status = restored_status(booking)
        booking.pre_merge_status = None
        booking.is_merged = False
        booking.parent_booking_id = None
        booking.trip_id = None
        booking.pickup_sequence = None
        booking.dropoff_sequence = None
        booking.last_modified_by = actor
        booking.modification_notes = f"Unmerged from trip with parent booking ID {parent_id}"

        if parent is None:
            logger.warning("Parent booking %s of %s no longer exists", parent_id, booking_id)
        elif not remaining:
            _dissolve_trip(parent, actor)
        else:
            apply_sequencing(parent, [parent] + remaining, result)
            parent.merged_booking_ids = [child.id for child in remaining]
            parent.last_modified_by = actor
            parent.modification_notes = f"Booking {booking_id} unmerged, {len(remaining)} merged booking(s) remain"

        await _commit(db, "Unmerge")
    except AppException:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Unmerge of booking %s failed: %s", booking_id, e)
        raise PersistenceError("Unmerge failed and was rolled back")

    logger.info(
        "Unmerged booking %s from parent %s (%d children remain)",
        booking_id, parent_id, len(remaining)
    )
    return UnmergeResult(
        booking=booking,
        parent=parent,
        remaining_children=remaining,
        trip_dissolved=parent is not None and not remaining
    )
