"""
Integration tests for the trip merge HTTP API.

Every response, success or failure, uses the {success, message, data}
envelope; failures add an error block with kind and code.
"""

from datetime import timedelta

import pytest
from tripmerge.app.models.booking_enums import BookingStatus

from factories import BASE_TIME, KM_LAT, location

# Note: Client and DB setup are in conftest.py


@pytest.fixture
async def pair(create_booking):
    """Parent and a compatible booking 2 km further along."""
    parent = await create_booking(status=BookingStatus.CONFIRMED)
    child = await create_booking(
        pickup_location=location(25.10 + 2 * KM_LAT, 55.20),
        dropoff_location=location(25.30 + KM_LAT, 55.10),
        pickup_time=BASE_TIME + timedelta(minutes=10),
    )
    return parent, child


async def _merge(client, parent_id, child_ids, **kwargs):
    return await client.post("/v1/bookings/merge", json={
        "parent_booking_id": parent_id,
        "child_booking_ids": child_ids,
    }, **kwargs)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Correlation-ID" in response.headers


@pytest.mark.asyncio
async def test_merge_success(client, pair, db_session):
    parent, child = pair

    response = await _merge(client, parent.id, [child.id], headers={"X-Actor": "ops-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Bookings merged successfully"
    data = body["data"]
    assert data["parent"]["has_merged_trips"] is True
    assert data["parent"]["last_modified_by"] == "ops-1"
    assert data["children"][0]["status"] == "merged"
    assert data["trip"]["trip_id"].startswith("TRIP_")
    assert [stop["sequence"] for stop in data["trip"]["sequence"]] == [0, 1, 2, 3]

    await db_session.refresh(child)
    assert child.is_merged is True
    assert child.trip_id == data["trip"]["trip_id"]


@pytest.mark.asyncio
async def test_merge_validation_error_envelope(client, pair):
    parent, _ = pair

    response = await _merge(client, parent.id, [])

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"]["kind"] == "ValidationError"
    assert body["error"]["code"] == "ERR_VALIDATION_001"


@pytest.mark.asyncio
async def test_merge_not_found_envelope(client, pair):
    parent, _ = pair

    response = await _merge(client, parent.id, [999])

    assert response.status_code == 404
    body = response.json()
    assert body["error"]["kind"] == "NotFoundError"
    assert body["message"] == "Child booking with ID 999 not found"


@pytest.mark.asyncio
async def test_merge_state_conflict_envelope(client, pair, create_booking):
    parent, child = pair
    assert (await _merge(client, parent.id, [child.id])).status_code == 200
    other = await create_booking()

    response = await _merge(client, other.id, [child.id])

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["error"]["kind"] == "StateConflictError"
    assert body["error"]["details"]["id"] == child.id


@pytest.mark.asyncio
async def test_malformed_body(client):
    response = await client.post("/v1/bookings/merge", json={"parent_booking_id": "abc"})
    assert response.status_code == 422
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_check_eligibility(client, pair, create_booking):
    parent, child = pair
    far = await create_booking(pickup_location=location(25.10 + 8 * KM_LAT, 55.20))

    response = await client.post("/v1/bookings/check-merge-eligibility", json={
        "parent_booking_id": parent.id,
        "child_booking_ids": [child.id, far.id],
    })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["can_merge"] is True
    assert data["eligible_ids"] == [child.id]
    assert data["ineligible_ids"] == [far.id]
    assert data["results"][1]["failed_at"] == "pickup"
    assert data["reasons"][0].startswith("Checkpoint #3:")


@pytest.mark.asyncio
async def test_unmerge_round_trip(client, pair):
    parent, child = pair
    await _merge(client, parent.id, [child.id])

    response = await client.post(f"/v1/bookings/{child.id}/unmerge")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["trip_dissolved"] is True
    assert data["remaining_child_ids"] == []
    assert data["booking"]["status"] == "approved"
    assert data["booking"]["trip_id"] is None
    assert data["parent"]["has_merged_trips"] is False


@pytest.mark.asyncio
async def test_unmerge_standalone_is_conflict(client, pair):
    _, child = pair
    response = await client.post(f"/v1/bookings/{child.id}/unmerge")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_optimize_sequence_and_route(client, pair):
    parent, child = pair
    await _merge(client, parent.id, [child.id])

    sequence = await client.post(f"/v1/bookings/{parent.id}/optimize-sequence")
    route = await client.post(f"/v1/bookings/{parent.id}/optimize-route")

    assert sequence.status_code == 200
    assert sequence.json()["data"]["route"]["source"] == "optimizer"
    assert route.status_code == 200
    plan = route.json()["data"]
    assert len(plan["stops"]) == 4
    assert plan["stops"][0]["sequence_number"] == 1


@pytest.mark.asyncio
async def test_candidates_and_recommendations(client, pair, create_booking):
    parent, child = pair

    candidates = await client.get(f"/v1/bookings/{parent.id}/merge-candidates")
    assert candidates.status_code == 200
    assert [b["id"] for b in candidates.json()["data"]["candidates"]] == [child.id]

    await _merge(client, parent.id, [child.id])
    newcomer = await create_booking()

    recommendations = await client.get(f"/v1/bookings/{newcomer.id}/merge-recommendations")
    assert recommendations.status_code == 200
    data = recommendations.json()["data"]
    assert data[0]["parent_booking_id"] == parent.id
    assert data[0]["compatibility_score"] == 100


@pytest.mark.asyncio
async def test_recommendations_for_missing_booking(client):
    response = await client.get("/v1/bookings/999/merge-recommendations")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_config_endpoints(client):
    listing = await client.get("/v1/config/trip-merge")
    assert listing.status_code == 200
    assert len(listing.json()["data"]) == 13

    update = await client.put("/v1/config/trip-merge/TRIP_MERGE_PICKUP_DISTANCE_KM", json={"value": "5"})
    assert update.status_code == 200
    assert update.json()["data"]["value"] == 5.0
    assert update.json()["data"]["default"] == 7.0

    single = await client.get("/v1/config/trip-merge/TRIP_MERGE_PICKUP_DISTANCE_KM")
    assert single.json()["data"]["value"] == 5.0
    assert single.json()["data"]["data_type"] == "float"


@pytest.mark.asyncio
async def test_config_rejects_unknown_key_and_bad_value(client):
    unknown = await client.get("/v1/config/trip-merge/NOT_A_KEY")
    assert unknown.status_code == 400
    assert unknown.json()["error"]["kind"] == "ValidationError"

    bad = await client.put("/v1/config/trip-merge/TRIP_MERGE_AUTO_ENABLED", json={"value": "sometimes"})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_config_rejects_values_below_minimum(client):
    interval = await client.put("/v1/config/trip-merge/TRIP_MERGE_AUTO_CHECK_INTERVAL_SECONDS", json={"value": 0})
    assert interval.status_code == 400
    assert interval.json()["error"]["kind"] == "ValidationError"
    assert interval.json()["error"]["details"]["minimum"] == 1

    distance = await client.put("/v1/config/trip-merge/TRIP_MERGE_PICKUP_DISTANCE_KM", json={"value": -5})
    assert distance.status_code == 400

    single = await client.get("/v1/config/trip-merge/TRIP_MERGE_PICKUP_DISTANCE_KM")
    assert single.json()["data"]["value"] == 7.0


@pytest.mark.asyncio
async def test_config_change_applies_to_next_check(client, pair):
    parent, child = pair
    await client.put("/v1/config/trip-merge/TRIP_MERGE_PICKUP_DISTANCE_KM", json={"value": 1})

    response = await client.post("/v1/bookings/check-merge-eligibility", json={
        "parent_booking_id": parent.id,
        "child_booking_ids": [child.id],
    })

    assert response.json()["data"]["can_merge"] is False


@pytest.mark.asyncio
async def test_scheduler_run(client, pair):
    parent, child = pair

    response = await client.post("/v1/trip-merge/scheduler/run")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["enabled"] is True
    assert data["merged_trips"][0]["parent_booking_id"] == parent.id
    assert data["merged_trips"][0]["child_booking_ids"] == [child.id]


@pytest.mark.asyncio
async def test_scheduler_run_without_scheduler(client, configured_app):
    del configured_app.state.scheduler

    response = await client.post("/v1/trip-merge/scheduler/run")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "ERR_SCHEDULER_001"
