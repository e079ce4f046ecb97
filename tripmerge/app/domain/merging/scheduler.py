"""
Automated trip merging.

A background loop that, while TRIP_MERGE_AUTO_ENABLED is on:
1. Marks recently approved bookings merge-eligible when they fit with
   another mergeable booking
2. Finds groups of mutually compatible bookings and merges each group

Every booking and every group is processed in its own session so one
failure never affects the others.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

from tripmerge.app.core.config import settings
from tripmerge.app.domain.merging.eligibility import (
    as_utc,
    batch_evaluate,
    evaluate,
    vehicle_failure,
    vehicle_for,
)
from tripmerge.app.domain.merging.merge_service import merge_bookings
from tripmerge.app.domain.merging.sequencer import SequenceResult, build_waypoints, local_sequence
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.booking_enums import StopKind
from tripmerge.app.services import booking_repository as repo
from tripmerge.app.services.cache import TTLCache
from tripmerge.app.services.config_service import MergeConfig, load_merge_config
from tripmerge.app.services.geo import coordinates_of, distance, path_distance

logger = logging.getLogger("tripmerge.scheduler")

AUTO_MERGE_ACTOR = "auto-merge"


@dataclass
class TickReport:
    enabled: bool
    marked_ids: List[int] = field(default_factory=list)
    merged_trips: List[dict] = field(default_factory=list)
    failures: int = 0


def pickup_gaps_acceptable(bookings: Sequence[Booking], max_gap_minutes: int) -> bool:
    """Consecutive pickup times (sorted) are never further apart than the gap."""
    times = sorted(as_utc(booking.pickup_time) for booking in bookings)
    return all(later - earlier <= timedelta(minutes=max_gap_minutes) for earlier, later in zip(times, times[1:]))


def max_detour_km(route: SequenceResult, start) -> float:
    """Largest extra distance any passenger rides compared to going direct."""
    points = [start] + [waypoint.location for waypoint in route.waypoints]
    worst = 0.0
    for waypoint in route.waypoints:
        if waypoint.stop_kind is not StopKind.PICKUP:
            continue
        stops = route.sequences[waypoint.booking_id]
        # points is offset by one for the start location
        ridden = path_distance(points[stops.pickup_sequence + 1:stops.dropoff_sequence + 2])
        dropoff = route.waypoints[stops.dropoff_sequence].location
        worst = max(worst, ridden - distance(waypoint.location, dropoff))
    return worst


def group_feasible(group: Sequence[Booking], config: MergeConfig, vehicles: Dict[int, object]) -> bool:
    """Whole-group checks that pairwise eligibility cannot see."""
    if not pickup_gaps_acceptable(group, config.max_pickup_gap_minutes):
        return False

    vehicle = next((vehicles[b.vehicle_id] for b in group if b.vehicle_id in vehicles), None)
    if vehicle is not None and vehicle_failure(vehicle, group, config):
        return False

    start = coordinates_of(group[0].pickup_location)
    route = local_sequence(build_waypoints(group), start)
    if route.total_duration_min > config.max_trip_duration_minutes:
        return False
    return max_detour_km(route, start) <= config.route_deviation_tolerance_km


def discover_merge_groups(
    bookings: Sequence[Booking],
    config: MergeConfig,
    vehicles: Optional[Dict[int, object]] = None
) -> List[List[Booking]]:
    """
    Greedy grouping of mergeable bookings.

    Walks the bookings in order; each unused booking seeds a group and
    later bookings join when they are eligible with every current member
    and the grown group stays feasible. Groups of one are dropped.
    """
    vehicles = vehicles or {}
    used = set()
    groups = []

    for index, seed in enumerate(bookings):
        if seed.id in used:
            continue
        group = [seed]
        for candidate in bookings[index + 1:]:
            if candidate.id in used:
                continue
            pairwise = all(
                evaluate(member, candidate, config, vehicle_for(member, candidate, vehicles)).eligible
                for member in group
            )
            if pairwise and group_feasible(group + [candidate], config, vehicles):
                group.append(candidate)

        if len(group) > 1:
            groups.append(group)
            used.update(booking.id for booking in group)

    return groups


class AutoMergeScheduler:
    """
    Recurring automated merge loop.

    Usage:
        scheduler = AutoMergeScheduler(AsyncSessionLocal, optimizer)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        session_factory: Callable,
        optimizer=None,
        interval_seconds: float = 60,
        cache: Optional[TTLCache] = None,
        approval_window_minutes: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.optimizer = optimizer
        self.interval_seconds = interval_seconds
        self.cache = cache
        self.approval_window_minutes = approval_window_minutes or settings.recent_approval_window_minutes
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="auto-merge-scheduler")
        logger.info("Automated trip merging started (interval %ss)", self.interval_seconds)

    async def stop(self):
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.interval_seconds + 5)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None
        logger.info("Automated trip merging stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Automated merge tick failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_tick(self) -> TickReport:
        """Run one merge pass; concurrent calls wait for the running pass."""
        async with self._lock:
            async with self.session_factory() as db:
                config = await load_merge_config(db, self.cache)
            self.interval_seconds = config.auto_check_interval_seconds

            if not config.auto_enabled:
                logger.debug("Automated trip merging is disabled")
                return TickReport(enabled=False)

            report = TickReport(enabled=True)
            await self._mark_recently_approved(config, report)
            await self._merge_groups(config, report)

            logger.info(
                "Automated merge tick: %d marked eligible, %d trips merged, %d failures",
                len(report.marked_ids), len(report.merged_trips), report.failures
            )
            return report

    async def _mark_recently_approved(self, config: MergeConfig, report: TickReport):
        async with self.session_factory() as db:
            recent = await repo.get_recently_approved_bookings(db, self.approval_window_minutes)
            recent_ids = [booking.id for booking in recent]

        for booking_id in recent_ids:
            try:
                async with self.session_factory() as db:
                    booking = await repo.get_booking(db, booking_id)
                    mergeable = await repo.get_mergeable_bookings(db)
                    vehicles = await repo.get_vehicles(db, [b.vehicle_id for b in mergeable] + [booking.vehicle_id])
                    batch = batch_evaluate(booking, mergeable, config, vehicles)
                    if batch.eligible:
                        booking.merge_eligible = True
                        await db.commit()
                        report.marked_ids.append(booking_id)
                        logger.info(
                            "Booking #%s marked as eligible for merge with %d other bookings",
                            booking_id, len(batch.eligible)
                        )
            except Exception:
                report.failures += 1
                logger.exception("Error processing approved booking %s for merge eligibility", booking_id)

    async def _merge_groups(self, config: MergeConfig, report: TickReport):
        async with self.session_factory() as db:
            mergeable = await repo.get_mergeable_bookings(db)
            vehicles = await repo.get_vehicles(db, [booking.vehicle_id for booking in mergeable])
            groups = [[booking.id for booking in group] for group in discover_merge_groups(mergeable, config, vehicles)]

        logger.info("Found %d potential trip merges", len(groups))

        for parent_id, *child_ids in groups:
            try:
                async with self.session_factory() as db:
                    result = await merge_bookings(db, parent_id, child_ids, self.optimizer, actor=AUTO_MERGE_ACTOR)
                report.merged_trips.append({
                    "trip_id": result.trip.trip_id,
                    "parent_booking_id": parent_id,
                    "child_booking_ids": child_ids,
                })
            except Exception:
                report.failures += 1
                logger.exception("Error executing merge for booking %s", parent_id)
