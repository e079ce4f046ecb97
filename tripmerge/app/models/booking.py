"""
Booking database model.

A booking is one transport request. A trip is not stored separately:
the booking acting as parent carries the trip id, member list and route.
"""

from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Enum, Boolean, JSON, Text
from sqlalchemy.sql import func
from tripmerge.app.db.session import Base
from tripmerge.app.models.booking_enums import BookingStatus


class Booking(Base):
    """
    Booking model.

    Locations are stored as JSON documents of the shape
    {"address": str, "coordinates": {"lat": float, "lng": float}, "zone": str}.

    Merge state:
    - standalone: parent_booking_id is NULL, is_merged False, has_merged_trips False
    - parent: has_merged_trips True, trip_id set, merged_booking_ids lists children
    - child: is_merged True, parent_booking_id and trip_id set
    """
    __tablename__ = "bookings"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reference_no = Column(String(50), unique=True, nullable=True, index=True)

    # Status
    status = Column(Enum(BookingStatus), default=BookingStatus.PENDING, nullable=False, index=True)

    # Route endpoints
    pickup_location = Column(JSON, nullable=False)
    dropoff_location = Column(JSON, nullable=False)
    pickup_time = Column(DateTime(timezone=True), nullable=False, index=True)
    dropoff_time = Column(DateTime(timezone=True), nullable=True)  # Estimated

    # Compatibility attributes
    booking_type = Column(String(50), nullable=True)
    priority = Column(String(20), nullable=True)
    passenger_count = Column(Integer, default=1, nullable=False)
    vehicle_type = Column(String(50), nullable=True)  # Required vehicle type
    vehicle_id = Column(Integer, ForeignKey('vehicles.id'), nullable=True, index=True)

    # Standalone estimates (used for savings)
    estimated_distance_km = Column(Float, nullable=True)
    estimated_duration_min = Column(Float, nullable=True)

    # Child side of a merge
    is_merged = Column(Boolean, default=False, nullable=False, index=True)
    parent_booking_id = Column(Integer, ForeignKey('bookings.id'), nullable=True, index=True)
    pre_merge_status = Column(Enum(BookingStatus), nullable=True)

    # Parent side of a merge
    has_merged_trips = Column(Boolean, default=False, nullable=False, index=True)
    merged_booking_ids = Column(JSON, nullable=True)
    optimized_route = Column(JSON, nullable=True)

    # Shared by parent and children
    trip_id = Column(String(50), nullable=True, index=True)
    pickup_sequence = Column(Integer, nullable=True)
    dropoff_sequence = Column(Integer, nullable=True)

    # Scheduler marker (advisory only)
    merge_eligible = Column(Boolean, default=False, nullable=False)

    # Audit trail
    approved_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_modified_by = Column(String(100), nullable=True)
    modification_notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Booking(id={self.id}, status='{self.status.value if self.status else None}', trip_id={self.trip_id})>"
