"""
Automated merging tests: group discovery and scheduler ticks.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tripmerge.app.domain.merging.eligibility import batch_evaluate
from tripmerge.app.domain.merging.scheduler import (
    AutoMergeScheduler,
    discover_merge_groups,
    group_feasible,
    pickup_gaps_acceptable,
)
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.booking_enums import BookingStatus
from tripmerge.app.services.config_service import MergeConfig, MergeConfigKey, set_config_value

from factories import BASE_TIME, KM_LAT, FakeOptimizer, location


@pytest.fixture
def config():
    return MergeConfig.defaults()


def _nearby(make_booking, **overrides):
    fields = dict(
        pickup_location=location(25.10 + 2 * KM_LAT, 55.20),
        dropoff_location=location(25.30 + KM_LAT, 55.10),
        pickup_time=BASE_TIME + timedelta(minutes=10),
    )
    fields.update(overrides)
    return make_booking(**fields)


def test_pickup_gaps(make_booking):
    bookings = [
        make_booking(pickup_time=BASE_TIME + timedelta(minutes=20)),
        make_booking(pickup_time=BASE_TIME),
        make_booking(pickup_time=BASE_TIME + timedelta(minutes=10)),
    ]
    assert pickup_gaps_acceptable(bookings, 10) is True
    assert pickup_gaps_acceptable(bookings, 9) is False


def test_discover_groups_compatible_bookings(make_booking, config):
    first = make_booking()
    second = _nearby(make_booking)
    third = make_booking(pickup_time=BASE_TIME + timedelta(minutes=5))
    far = make_booking(pickup_location=location(25.10 + 8 * KM_LAT, 55.20))

    groups = discover_merge_groups([first, second, third, far], config)

    assert [[booking.id for booking in group] for group in groups] == [[first.id, second.id, third.id]]


def test_single_bookings_are_not_groups(make_booking, config):
    lone = make_booking()
    far = make_booking(pickup_location=location(25.10 + 8 * KM_LAT, 55.20))
    assert discover_merge_groups([lone, far], config) == []


def test_group_must_be_pairwise_eligible(make_booking, config):
    # Each outer booking is 6 km from the middle one but 12 km from the other
    south = make_booking(pickup_location=location(25.10 - 6 * KM_LAT, 55.20))
    middle = make_booking()
    north = make_booking(pickup_location=location(25.10 + 6 * KM_LAT, 55.20))

    groups = discover_merge_groups([middle, south, north], replace(config, route_deviation_tolerance_km=50.0))

    assert len(groups) == 1
    assert [booking.id for booking in groups[0]] == [middle.id, south.id]


def test_detour_tolerance_rejects_group(make_booking, config):
    group = [make_booking(), _nearby(make_booking)]

    assert group_feasible(group, config, {}) is True
    assert group_feasible(group, replace(config, route_deviation_tolerance_km=0.0), {}) is False


def test_trip_duration_limit(make_booking, config):
    group = [make_booking(), _nearby(make_booking)]
    assert group_feasible(group, replace(config, max_trip_duration_minutes=10), {}) is False


async def _approved(create_booking, **overrides):
    fields = dict(approved_at=datetime.now(timezone.utc))
    fields.update(overrides)
    return await create_booking(**fields)


async def _load(session_factory, booking_id):
    async with session_factory() as db:
        result = await db.execute(select(Booking).where(Booking.id == booking_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_tick_marks_and_merges(session_factory, create_booking, optimizer):
    parent = await _approved(create_booking)
    child = await _approved(
        create_booking,
        pickup_location=location(25.10 + 2 * KM_LAT, 55.20),
        pickup_time=BASE_TIME + timedelta(minutes=10),
    )
    scheduler = AutoMergeScheduler(session_factory, optimizer, interval_seconds=5)

    report = await scheduler.run_tick()

    assert report.enabled is True
    assert sorted(report.marked_ids) == [parent.id, child.id]
    assert len(report.merged_trips) == 1
    assert report.merged_trips[0]["parent_booking_id"] == parent.id
    assert report.merged_trips[0]["child_booking_ids"] == [child.id]
    assert report.failures == 0
    assert scheduler.interval_seconds == 60

    stored_parent = await _load(session_factory, parent.id)
    stored_child = await _load(session_factory, child.id)
    assert stored_parent.has_merged_trips is True
    assert stored_parent.merge_eligible is True
    assert stored_child.is_merged is True
    assert stored_child.merge_eligible is False
    assert stored_child.last_modified_by == "auto-merge"


@pytest.mark.asyncio
async def test_tick_does_nothing_when_disabled(db_session, session_factory, create_booking):
    await set_config_value(db_session, MergeConfigKey.AUTO_ENABLED, "false")
    await db_session.commit()
    booking = await _approved(create_booking)
    await _approved(create_booking)

    report = await AutoMergeScheduler(session_factory).run_tick()

    assert report.enabled is False
    assert report.marked_ids == []
    stored = await _load(session_factory, booking.id)
    assert stored.merge_eligible is False
    assert stored.has_merged_trips is False


@pytest.mark.asyncio
async def test_old_approvals_are_not_marked(session_factory, create_booking):
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    await _approved(create_booking, approved_at=old)
    await _approved(create_booking, approved_at=old)

    report = await AutoMergeScheduler(session_factory, approval_window_minutes=30).run_tick()

    assert report.marked_ids == []
    assert len(report.merged_trips) == 1


@pytest.mark.asyncio
async def test_failed_merge_is_counted(session_factory, create_booking, mocker):
    await _approved(create_booking)
    await _approved(create_booking)
    mocker.patch(
        "tripmerge.app.domain.merging.scheduler.merge_bookings",
        side_effect=RuntimeError("storage unavailable"),
    )

    report = await AutoMergeScheduler(session_factory).run_tick()

    assert report.merged_trips == []
    assert report.failures == 1


@pytest.mark.asyncio
async def test_failed_marking_does_not_stop_other_bookings(session_factory, create_booking, mocker):
    broken = await _approved(create_booking)
    healthy = await _approved(create_booking, pickup_time=BASE_TIME + timedelta(minutes=5))

    def evaluate_or_fail(base, *args, **kwargs):
        if base.id == broken.id:
            raise RuntimeError("corrupt pickup location")
        return batch_evaluate(base, *args, **kwargs)

    mocker.patch("tripmerge.app.domain.merging.scheduler.batch_evaluate", side_effect=evaluate_or_fail)

    report = await AutoMergeScheduler(session_factory).run_tick()

    assert report.failures == 1
    assert report.marked_ids == [healthy.id]
    assert len(report.merged_trips) == 1
    assert (await _load(session_factory, broken.id)).merge_eligible is False


@pytest.mark.asyncio
async def test_concurrent_ticks_merge_once(session_factory, create_booking):
    await _approved(create_booking)
    await _approved(create_booking)
    scheduler = AutoMergeScheduler(session_factory, FakeOptimizer())

    first, second = await asyncio.gather(scheduler.run_tick(), scheduler.run_tick())

    assert len(first.merged_trips) + len(second.merged_trips) == 1


@pytest.mark.asyncio
async def test_start_and_stop(session_factory):
    scheduler = AutoMergeScheduler(session_factory, interval_seconds=1)

    scheduler.start()
    assert scheduler.running is True
    await asyncio.sleep(0)

    await scheduler.stop()
    assert scheduler.running is False
