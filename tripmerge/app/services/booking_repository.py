"""
Booking storage queries.

Thin async query helpers shared by the merge, unmerge, recommendation
and scheduler workflows. None of them commit.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.models.booking import Booking
from tripmerge.app.models.booking_enums import BookingStatus, MERGEABLE_STATUSES, CLOSED_STATUSES
from tripmerge.app.models.vehicle import Vehicle


async def get_booking(
    db: AsyncSession,
    booking_id: int,
    for_update: bool = False
) -> Optional[Booking]:
    """
    Fetch one booking.

    Args:
        db: Database session
        booking_id: Booking to load
        for_update: Take a row lock for the rest of the transaction

    Returns:
        Booking or None
    """
    query = select(Booking).where(Booking.id == booking_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_bookings(
    db: AsyncSession,
    booking_ids: Iterable[int],
    for_update: bool = False
) -> Dict[int, Booking]:
    """Fetch several bookings keyed by id (missing ids are simply absent)."""
    ids = list(booking_ids)
    if not ids:
        return {}
    query = select(Booking).where(Booking.id.in_(ids)).order_by(Booking.id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return {booking.id: booking for booking in result.scalars().all()}


async def get_child_bookings(
    db: AsyncSession,
    parent_id: int,
    for_update: bool = False
) -> List[Booking]:
    """Current children of a trip parent, in id order."""
    query = select(Booking).where(
        Booking.parent_booking_id == parent_id,
        Booking.is_merged == True
    ).order_by(Booking.id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_child_bookings(db: AsyncSession, parent_id: int) -> int:
    result = await db.execute(
        select(func.count(Booking.id)).where(
            Booking.parent_booking_id == parent_id,
            Booking.is_merged == True
        )
    )
    return result.scalar() or 0


async def get_mergeable_bookings(db: AsyncSession) -> List[Booking]:
    """
    Standalone bookings that could still be combined into a new trip.

    Ordered by pickup time so greedy grouping is deterministic.
    """
    result = await db.execute(
        select(Booking).where(
            Booking.status.in_(MERGEABLE_STATUSES),
            Booking.is_merged == False,
            Booking.has_merged_trips == False,
            Booking.trip_id.is_(None)
        ).order_by(Booking.pickup_time, Booking.id)
    )
    return list(result.scalars().all())


async def get_active_bookings(db: AsyncSession) -> List[Booking]:
    """Bookings not yet completed or cancelled."""
    result = await db.execute(
        select(Booking).where(
            Booking.status.notin_(CLOSED_STATUSES)
        ).order_by(Booking.pickup_time, Booking.id)
    )
    return list(result.scalars().all())


async def get_active_trips(db: AsyncSession) -> List[Booking]:
    """Trip parents whose trip is not finished."""
    result = await db.execute(
        select(Booking).where(
            Booking.has_merged_trips == True,
            Booking.status.notin_(CLOSED_STATUSES)
        ).order_by(Booking.id)
    )
    return list(result.scalars().all())


async def get_recently_approved_bookings(
    db: AsyncSession,
    window_minutes: int,
    now: Optional[datetime] = None
) -> List[Booking]:
    """
    Approved standalone bookings not yet marked merge-eligible.

    A booking counts as recent when it was approved within the window.
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(minutes=window_minutes)
    result = await db.execute(
        select(Booking).where(
            and_(
                Booking.status == BookingStatus.APPROVED,
                Booking.is_merged == False,
                Booking.merge_eligible == False,
                Booking.approved_at.is_not(None),
                Booking.approved_at >= since
            )
        ).order_by(Booking.approved_at, Booking.id)
    )
    return list(result.scalars().all())


async def get_vehicle(db: AsyncSession, vehicle_id: Optional[int]) -> Optional[Vehicle]:
    if vehicle_id is None:
        return None
    return await db.get(Vehicle, vehicle_id)


async def get_vehicles(db: AsyncSession, vehicle_ids: Iterable[Optional[int]]) -> Dict[int, Vehicle]:
    ids = {vehicle_id for vehicle_id in vehicle_ids if vehicle_id is not None}
    if not ids:
        return {}
    result = await db.execute(select(Vehicle).where(Vehicle.id.in_(ids)))
    return {vehicle.id: vehicle for vehicle in result.scalars().all()}
