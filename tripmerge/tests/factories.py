"""
Test data builders shared by the test modules.
"""

from datetime import datetime, timezone

from tripmerge.app.models.booking_enums import BookingStatus
from tripmerge.app.services.route_optimizer import OptimizerResponse, STATUS_OK

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

# Roughly 1 km of latitude
KM_LAT = 1 / 111.195


class FakeOptimizer:
    """
    Stand-in for RouteOptimizerClient.

    Answers with `permutation` (identity when None) and fixed legs, or with
    an ERROR response when `status` is not OK. Every call is recorded.
    """

    def __init__(self, status=STATUS_OK, permutation=None, leg_m=1000.0, leg_s=120.0):
        self.status = status
        self.permutation = permutation
        self.leg_m = leg_m
        self.leg_s = leg_s
        self.calls = []

    async def optimize(self, origin, intermediates, destination):
        self.calls.append((origin, list(intermediates), destination))
        if self.status != STATUS_OK:
            return OptimizerResponse.error(f"{self.status} - simulated failure")
        permutation = self.permutation if self.permutation is not None else list(range(len(intermediates)))
        legs = len(intermediates) + 1
        return OptimizerResponse(
            status=STATUS_OK,
            permutation=list(permutation),
            leg_distances_m=[self.leg_m] * legs,
            leg_durations_s=[self.leg_s] * legs,
            polyline="encoded_polyline",
        )


class InterferingOptimizer(FakeOptimizer):
    """
    FakeOptimizer that runs `interfere` once, on its first call, before
    answering. Lets a test change storage while a workflow is waiting on
    the optimizer.
    """

    def __init__(self, interfere, **kwargs):
        super().__init__(**kwargs)
        self.interfere = interfere

    async def optimize(self, origin, intermediates, destination):
        if self.interfere is not None:
            interfere, self.interfere = self.interfere, None
            await interfere()
        return await super().optimize(origin, intermediates, destination)


def location(lat, lng, zone="Z1", address=None):
    return {
        "address": address or f"{lat:.4f},{lng:.4f}",
        "coordinates": {"lat": lat, "lng": lng},
        "zone": zone,
    }


def booking_fields(**overrides) -> dict:
    fields = dict(
        status=BookingStatus.APPROVED,
        pickup_location=location(25.10, 55.20),
        dropoff_location=location(25.30, 55.10),
        pickup_time=BASE_TIME,
        dropoff_time=None,
        booking_type="corporate",
        priority="normal",
        passenger_count=1,
        vehicle_type="Sedan",
        vehicle_id=None,
        is_merged=False,
        parent_booking_id=None,
        has_merged_trips=False,
        merge_eligible=False,
    )
    fields.update(overrides)
    return fields
