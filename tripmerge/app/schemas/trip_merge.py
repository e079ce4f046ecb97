"""
Trip merge schemas.

Request bodies and response payloads for merging, unmerging,
eligibility checks, candidates, recommendations and route plans.
"""

from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from tripmerge.app.domain.merging.eligibility import Checkpoint
from tripmerge.app.schemas.booking import BookingResponse


class MergeRequest(BaseModel):
    """Parent plus the bookings that will ride with it."""
    parent_booking_id: int
    child_booking_ids: List[int]


class TripStop(BaseModel):
    sequence: int
    stop_kind: str  # pickup or dropoff
    booking_id: int
    location: Optional[Dict[str, float]]


class TripSummaryResponse(BaseModel):
    trip_id: Optional[str]
    route: Optional[Dict[str, Any]]
    sequence: List[TripStop]

    class Config:
        from_attributes = True


class MergeResponse(BaseModel):
    parent: BookingResponse
    children: List[BookingResponse]
    trip: TripSummaryResponse

    class Config:
        from_attributes = True


class ChildEligibilityResponse(BaseModel):
    id: int
    eligible: bool
    reason: str
    failed_at: Optional[Checkpoint]

    class Config:
        from_attributes = True


class EligibilityResponse(BaseModel):
    """Per-child eligibility report."""
    parent_id: int
    can_merge: bool
    eligible_ids: List[int]
    ineligible_ids: List[int]
    reasons: List[str]
    results: List[ChildEligibilityResponse]
    checkpoints_run: int

    class Config:
        from_attributes = True


class IneligibleCandidateResponse(BaseModel):
    id: int
    reason: str
    failed_at: Optional[Checkpoint]

    class Config:
        from_attributes = True


class MergeCandidatesResponse(BaseModel):
    booking: BookingResponse
    candidates: List[BookingResponse]
    rejected: List[IneligibleCandidateResponse]
    checkpoints_run: int


class RecommendationResponse(BaseModel):
    parent_booking_id: int
    trip_id: Optional[str]
    trip_reference: Optional[str]
    compatibility_score: int
    pickup_distance_km: float
    dropoff_distance_km: float
    route_details: Dict[str, float]
    savings: Dict[str, float]

    class Config:
        from_attributes = True


class UnmergeResponse(BaseModel):
    booking: BookingResponse
    parent: Optional[BookingResponse]
    remaining_child_ids: List[int]
    trip_dissolved: bool
