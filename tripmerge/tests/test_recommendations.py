"""
Merge recommendation tests.
"""

from datetime import timedelta

import pytest

from tripmerge.app.core.exceptions import NotFoundError
from tripmerge.app.domain.merging.merge_service import merge_bookings
from tripmerge.app.domain.merging.recommendations import (
    compatibility_score,
    get_merge_recommendations,
    proximity_score,
)
from tripmerge.app.models.booking_enums import BookingStatus
from tripmerge.app.services.config_service import MergeConfig, MergeConfigKey, set_config_value

from factories import BASE_TIME, KM_LAT, location


@pytest.fixture
async def trip(db_session, create_booking):
    parent = await create_booking(reference_no="TRIP-HEAD", status=BookingStatus.CONFIRMED)
    child = await create_booking(pickup_time=BASE_TIME + timedelta(minutes=5))
    await merge_bookings(db_session, parent.id, [child.id])
    return parent


def test_proximity_score():
    assert proximity_score(0, 7) == 100
    assert proximity_score(3.5, 7) == pytest.approx(50)
    assert proximity_score(10, 7) == 0
    assert proximity_score(1, 0) == 0


def test_compatibility_score_weights():
    config = MergeConfig.defaults()
    assert compatibility_score(0, 0, True, config) == 100
    assert compatibility_score(0, 0, False, config) == 80
    assert compatibility_score(3.5, 7, True, config) == 40


@pytest.mark.asyncio
async def test_recommends_trip_for_identical_route(db_session, create_booking, trip):
    booking = await create_booking()

    recommendations = await get_merge_recommendations(db_session, booking.id)

    assert len(recommendations) == 1
    best = recommendations[0]
    assert best.parent_booking_id == trip.id
    assert best.trip_id == trip.trip_id
    assert best.trip_reference == "TRIP-HEAD"
    assert best.compatibility_score == 100
    assert best.pickup_distance_km == 0
    assert best.route_details["total_distance_km"] > 0
    # Same endpoints as the trip: joining costs (almost) nothing extra
    assert best.savings["distance_km"] > 0
    assert best.savings["time_min"] > 0


@pytest.mark.asyncio
async def test_recommendations_sorted_by_score(db_session, create_booking, trip):
    other_head = await create_booking(
        status=BookingStatus.CONFIRMED,
        pickup_location=location(25.10 + 3 * KM_LAT, 55.20),
    )
    other_child = await create_booking(pickup_location=location(25.10 + 3 * KM_LAT, 55.20))
    await merge_bookings(db_session, other_head.id, [other_child.id])
    booking = await create_booking()

    recommendations = await get_merge_recommendations(db_session, booking.id)

    assert [rec.parent_booking_id for rec in recommendations] == [trip.id, other_head.id]
    assert recommendations[0].compatibility_score > recommendations[1].compatibility_score


@pytest.mark.asyncio
async def test_low_scores_are_dropped(db_session, create_booking, trip):
    booking = await create_booking(
        pickup_location=location(25.10 + 6.5 * KM_LAT, 55.20),
        dropoff_location=location(25.30 + 6.5 * KM_LAT, 55.10),
    )
    assert await get_merge_recommendations(db_session, booking.id) == []


@pytest.mark.asyncio
async def test_incompatible_type_is_skipped(db_session, create_booking, trip):
    booking = await create_booking(booking_type="airport")
    assert await get_merge_recommendations(db_session, booking.id) == []


@pytest.mark.asyncio
async def test_trip_duration_limit(db_session, create_booking, trip):
    await set_config_value(db_session, MergeConfigKey.MAX_TRIP_DURATION_MINUTES, 10)
    await db_session.commit()
    booking = await create_booking()

    assert await get_merge_recommendations(db_session, booking.id) == []


@pytest.mark.asyncio
async def test_only_approved_bookings_get_recommendations(db_session, create_booking, trip):
    booking = await create_booking(status=BookingStatus.PENDING)
    assert await get_merge_recommendations(db_session, booking.id) == []


@pytest.mark.asyncio
async def test_missing_booking(db_session):
    with pytest.raises(NotFoundError):
        await get_merge_recommendations(db_session, 999)
