"""
Trip Merge API Endpoints.

Operator-facing merge workflow: eligibility checks, merging, unmerging,
sequencing, route plans, candidates and recommendations. Every response
uses the {success, message, data} envelope.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from tripmerge.app.core.dependencies import get_actor, get_config_cache, get_optimizer, get_scheduler
from tripmerge.app.db.session import get_db
from tripmerge.app.domain.merging.merge_service import (
    check_merge_eligibility,
    find_merge_candidates,
    generate_route_plan,
    merge_bookings,
    optimize_sequence,
)
from tripmerge.app.domain.merging.recommendations import get_merge_recommendations
from tripmerge.app.domain.merging.unmerge_service import unmerge_booking
from tripmerge.app.schemas.booking import BookingResponse
from tripmerge.app.schemas.config import SchedulerTickResponse
from tripmerge.app.schemas.envelope import ApiResponse
from tripmerge.app.schemas.trip_merge import (
    EligibilityResponse,
    IneligibleCandidateResponse,
    MergeCandidatesResponse,
    MergeRequest,
    MergeResponse,
    RecommendationResponse,
    TripSummaryResponse,
    UnmergeResponse,
)
from tripmerge.app.services.cache import TTLCache

router = APIRouter(prefix="/bookings", tags=["Trip Merge"])
scheduler_router = APIRouter(prefix="/trip-merge", tags=["Trip Merge - Automation"])


@router.post("/check-merge-eligibility", response_model=ApiResponse[EligibilityResponse])
async def check_eligibility(
    payload: MergeRequest,
    db: AsyncSession = Depends(get_db),
    cache: Optional[TTLCache] = Depends(get_config_cache)
):
    """
    Check which children could be merged into the parent.

    Read-only; each child is reported with the checkpoint it failed at.
    """
    report = await check_merge_eligibility(db, payload.parent_booking_id, payload.child_booking_ids, cache)
    if report.can_merge:
        message = f"{len(report.eligible_ids)} booking(s) can be merged with parent booking"
    else:
        message = "No eligible bookings found for merging"
    return ApiResponse(message=message, data=EligibilityResponse.model_validate(report, from_attributes=True))


@router.post("/merge", response_model=ApiResponse[MergeResponse])
async def merge(
    payload: MergeRequest,
    db: AsyncSession = Depends(get_db),
    optimizer=Depends(get_optimizer),
    actor: Optional[str] = Depends(get_actor)
):
    """
    Merge child bookings into the parent's trip.

    Validates:
    - child list is non-empty, without duplicates, without the parent
    - parent and children exist
    - no booking is already a child, no child heads a trip
    """
    result = await merge_bookings(db, payload.parent_booking_id, payload.child_booking_ids, optimizer, actor)
    return ApiResponse(
        message="Bookings merged successfully",
        data=MergeResponse.model_validate(result, from_attributes=True)
    )


@router.post("/{booking_id}/optimize-sequence", response_model=ApiResponse[TripSummaryResponse])
async def optimize_trip_sequence(
    booking_id: int = Path(..., description="Trip parent booking ID"),
    db: AsyncSession = Depends(get_db),
    optimizer=Depends(get_optimizer)
):
    """Recompute pickup/dropoff sequences of an existing trip."""
    summary = await optimize_sequence(db, booking_id, optimizer)
    return ApiResponse(
        message="Trip sequence optimized" if summary.route else "Trip sequence reset to fallback order",
        data=TripSummaryResponse.model_validate(summary, from_attributes=True)
    )


@router.get("/{booking_id}/merge-candidates", response_model=ApiResponse[MergeCandidatesResponse])
async def merge_candidates(
    booking_id: int = Path(..., description="Booking ID"),
    db: AsyncSession = Depends(get_db),
    cache: Optional[TTLCache] = Depends(get_config_cache)
):
    """Active bookings that pass the operator merge checks against this booking."""
    found = await find_merge_candidates(db, booking_id, cache)
    evaluation = found.evaluation
    data = MergeCandidatesResponse(
        booking=BookingResponse.model_validate(found.booking),
        candidates=[BookingResponse.model_validate(candidate) for candidate in evaluation.eligible],
        rejected=[IneligibleCandidateResponse.model_validate(item) for item in evaluation.ineligible],
        checkpoints_run=evaluation.checkpoints_run
    )
    return ApiResponse(message=f"Found {len(data.candidates)} merge candidate(s)", data=data)


@router.get("/{booking_id}/merge-recommendations", response_model=ApiResponse[List[RecommendationResponse]])
async def merge_recommendations(
    booking_id: int = Path(..., description="Approved booking ID"),
    db: AsyncSession = Depends(get_db),
    cache: Optional[TTLCache] = Depends(get_config_cache)
):
    """Active trips this booking could join, best match first."""
    recommendations = await get_merge_recommendations(db, booking_id, cache)
    return ApiResponse(
        message=f"Found {len(recommendations)} recommendation(s)",
        data=[RecommendationResponse.model_validate(rec) for rec in recommendations]
    )


@router.post("/{booking_id}/optimize-route", response_model=ApiResponse[dict])
async def optimize_route(
    booking_id: int = Path(..., description="Trip parent booking ID"),
    db: AsyncSession = Depends(get_db),
    optimizer=Depends(get_optimizer)
):
    """Generate and store a stop-by-stop route plan for the trip."""
    plan = await generate_route_plan(db, booking_id, optimizer)
    return ApiResponse(message="Route plan generated", data=plan)


@router.post("/{booking_id}/unmerge", response_model=ApiResponse[UnmergeResponse])
async def unmerge(
    booking_id: int = Path(..., description="Child booking ID"),
    db: AsyncSession = Depends(get_db),
    optimizer=Depends(get_optimizer),
    actor: Optional[str] = Depends(get_actor)
):
    """Take a child booking out of its trip."""
    result = await unmerge_booking(db, booking_id, optimizer, actor)
    data = UnmergeResponse(
        booking=BookingResponse.model_validate(result.booking),
        parent=BookingResponse.model_validate(result.parent) if result.parent else None,
        remaining_child_ids=[child.id for child in result.remaining_children],
        trip_dissolved=result.trip_dissolved
    )
    return ApiResponse(message=f"Booking with ID {booking_id} successfully unmerged from trip", data=data)


@scheduler_router.post("/scheduler/run", response_model=ApiResponse[SchedulerTickResponse])
async def run_scheduler_now(scheduler=Depends(get_scheduler)):
    """Run one automated merge pass immediately."""
    report = await scheduler.run_tick()
    if not report.enabled:
        message = "Automated trip merging is disabled"
    else:
        message = f"Merged {len(report.merged_trips)} trip(s)"
    return ApiResponse(message=message, data=SchedulerTickResponse.model_validate(report))
