"""
Booking schemas.
"""

from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from tripmerge.app.models.booking_enums import BookingStatus


class BookingResponse(BaseModel):
    """Booking as seen by merge operators."""
    id: int
    reference_no: Optional[str]
    status: BookingStatus
    pickup_location: dict
    dropoff_location: dict
    pickup_time: datetime
    dropoff_time: Optional[datetime]
    booking_type: Optional[str]
    priority: Optional[str]
    passenger_count: int
    vehicle_type: Optional[str]
    vehicle_id: Optional[int]

    # Merge state
    is_merged: bool
    parent_booking_id: Optional[int]
    pre_merge_status: Optional[BookingStatus]
    has_merged_trips: bool
    merged_booking_ids: Optional[List[int]]
    trip_id: Optional[str]
    pickup_sequence: Optional[int]
    dropoff_sequence: Optional[int]
    optimized_route: Optional[dict]
    merge_eligible: bool

    last_modified_by: Optional[str]
    modification_notes: Optional[str]

    class Config:
        from_attributes = True
