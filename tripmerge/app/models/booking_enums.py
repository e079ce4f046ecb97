"""
Booking-related enumerations.
"""

import enum


class BookingStatus(str, enum.Enum):
    """Booking status enumeration."""
    PENDING = "pending"  # Submitted, awaiting review
    CONFIRMED = "confirmed"  # Confirmed (trip parents are moved here on merge)
    APPROVED = "approved"  # Approved, eligible for merging
    ASSIGNED = "assigned"  # Vehicle/driver dispatched
    MERGED = "merged"  # Riding as a child of another booking's trip
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StopKind(str, enum.Enum):
    """Waypoint stop kind."""
    PICKUP = "pickup"
    DROPOFF = "dropoff"


# Bookings in these states can still be combined into a new trip.
MERGEABLE_STATUSES = (
    BookingStatus.APPROVED,
    BookingStatus.CONFIRMED,
    BookingStatus.ASSIGNED,
)

# Bookings (and trips) in these states are finished.
CLOSED_STATUSES = (
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
)
