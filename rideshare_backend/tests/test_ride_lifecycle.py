import itertools

import pytest

from conftest import ride_request_payload
from src.api.models.ride import STATUS_ALIASES, STATUS_LABELS, RideStatus
from src.api.services.ride_lifecycle import ALLOWED_TRANSITIONS, can_transition

FORWARD = [
    (RideStatus.requested, RideStatus.accepted),
    (RideStatus.accepted, RideStatus.arrived),
    (RideStatus.arrived, RideStatus.in_progress),
    (RideStatus.in_progress, RideStatus.completed),
]


@pytest.mark.parametrize("current,new", list(itertools.product(RideStatus, RideStatus)))
def test_transition_table(current, new):
    expected = (current, new) in FORWARD or (new == RideStatus.cancelled and not current.is_terminal)
    assert can_transition(current, new) is expected


def test_terminal_statuses_have_no_exits():
    assert ALLOWED_TRANSITIONS[RideStatus.completed] == frozenset()
    assert ALLOWED_TRANSITIONS[RideStatus.cancelled] == frozenset()


def test_legacy_status_names_map_to_canonical():
    assert RideStatus.parse("searching_driver") is RideStatus.requested
    assert RideStatus.parse("driver_assigned") is RideStatus.accepted
    assert RideStatus.parse("DRIVER_ARRIVED") is RideStatus.arrived
    assert RideStatus.parse("in_progress") is RideStatus.in_progress
    assert set(STATUS_ALIASES.values()) <= set(RideStatus)


def test_every_status_has_one_label():
    assert set(STATUS_LABELS) == set(RideStatus)
    assert RideStatus.in_progress.label == "On the way"


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        RideStatus.parse("teleporting")


def _advance(client, ride_id, action, account):
    return client.patch(f"/rides/{ride_id}/{action}", headers=account.headers)


def test_full_on_demand_ride(client, rider, driver, on_demand_ride):
    ride_id = on_demand_ride["id"]
    assert on_demand_ride["status"] == "requested"
    assert on_demand_ride["status_label"] == "Looking for a driver"
    assert on_demand_ride["fare"]["estimated_fare"] == 236.25

    accepted = client.post(f"/rides/{ride_id}/accept", headers=driver.headers)
    assert accepted.status_code == 200, accepted.text
    assert accepted.json()["status"] == "accepted"
    assert accepted.json()["driver_id"] == driver.id

    profile = client.get("/drivers/me", headers=driver.headers).json()
    assert profile["is_available"] is False
    assert profile["active_ride_id"] == ride_id

    assert _advance(client, ride_id, "driver-arrived", driver).json()["status"] == "arrived"
    started = _advance(client, ride_id, "start", driver).json()
    assert started["status"] == "in_progress"
    assert started["started_at"] is not None

    completed = _advance(client, ride_id, "complete", driver).json()
    assert completed["status"] == "completed"
    assert completed["fare"]["actual_fare"] == 236.25
    assert completed["payment_status"] == "completed"
    assert completed["completed_at"] is not None

    profile = client.get("/drivers/me", headers=driver.headers).json()
    assert profile["is_available"] is True
    assert profile["active_ride_id"] is None
    assert profile["completed_rides"] == 1

    earnings = client.get("/drivers/me/earnings", headers=driver.headers).json()
    assert earnings["total"] == 236.25

    # The rider sees the same server state.
    seen = client.get(f"/rides/{ride_id}", headers=rider.headers).json()
    assert seen["status"] == "completed"


def test_only_riders_request_rides(client, driver):
    resp = client.post("/rides", json=ride_request_payload(), headers=driver.headers)
    assert resp.status_code == 403


def test_steps_cannot_be_skipped(client, driver, on_demand_ride):
    ride_id = on_demand_ride["id"]
    client.post(f"/rides/{ride_id}/accept", headers=driver.headers)

    resp = _advance(client, ride_id, "start", driver)
    assert resp.status_code == 409
    assert resp.json()["status"] == "fail"
    assert "accepted" in resp.json()["message"]


def test_repeating_a_reached_step_is_a_no_op(client, driver, on_demand_ride):
    ride_id = on_demand_ride["id"]
    client.post(f"/rides/{ride_id}/accept", headers=driver.headers)
    first = _advance(client, ride_id, "driver-arrived", driver)
    second = _advance(client, ride_id, "driver-arrived", driver)
    assert second.status_code == 200
    assert second.json()["status"] == "arrived"
    assert second.json()["updated_at"] == first.json()["updated_at"]


def test_ride_taken_by_another_driver(client, make_driver, on_demand_ride):
    first, second = make_driver(), make_driver()
    assert client.post(f"/rides/{on_demand_ride['id']}/accept", headers=first.headers).status_code == 200

    resp = client.post(f"/rides/{on_demand_ride['id']}/accept", headers=second.headers)
    assert resp.status_code == 409
    assert resp.json()["message"] == "Ride is already assigned to another driver."


def test_unavailable_driver_cannot_accept(client, driver, on_demand_ride):
    client.patch("/drivers/me/availability", json={"is_available": False}, headers=driver.headers)
    resp = client.post(f"/rides/{on_demand_ride['id']}/accept", headers=driver.headers)
    assert resp.status_code == 409


def test_rider_cannot_accept(client, make_user, on_demand_ride):
    other = make_user("rider")
    resp = client.post(f"/rides/{on_demand_ride['id']}/accept", headers=other.headers)
    assert resp.status_code == 403


def test_only_assigned_driver_moves_ride(client, make_driver, driver, on_demand_ride):
    client.post(f"/rides/{on_demand_ride['id']}/accept", headers=driver.headers)
    other = make_driver()
    assert _advance(client, on_demand_ride["id"], "driver-arrived", other).status_code == 403


def test_rider_cancels_requested_ride(client, rider, on_demand_ride):
    resp = client.patch(
        f"/rides/{on_demand_ride['id']}/cancel", json={"reason": "Plans changed"}, headers=rider.headers
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "cancelled"
    assert body["cancelled_by"] == "user"
    assert body["cancellation_reason"] == "Plans changed"


def test_driver_cancel_frees_driver(client, driver, on_demand_ride):
    ride_id = on_demand_ride["id"]
    client.post(f"/rides/{ride_id}/accept", headers=driver.headers)
    resp = client.patch(f"/rides/{ride_id}/cancel", json={"reason": "Flat tyre"}, headers=driver.headers)
    assert resp.json()["cancelled_by"] == "driver"
    assert client.get("/drivers/me", headers=driver.headers).json()["is_available"] is True


def test_cancel_requires_reason(client, rider, on_demand_ride):
    resp = client.patch(f"/rides/{on_demand_ride['id']}/cancel", json={"reason": "  "}, headers=rider.headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "A cancellation reason is required."


def test_cannot_cancel_completed_ride(client, rider, driver, on_demand_ride):
    ride_id = on_demand_ride["id"]
    client.post(f"/rides/{ride_id}/accept", headers=driver.headers)
    for action in ("driver-arrived", "start", "complete"):
        _advance(client, ride_id, action, driver)

    resp = client.patch(f"/rides/{ride_id}/cancel", json={"reason": "Too late"}, headers=rider.headers)
    assert resp.status_code == 409
    body = resp.json()
    assert body["status"] == "fail"
    assert body["message"] == "Cannot cancel ride with status: completed"


def test_cannot_cancel_twice(client, rider, on_demand_ride):
    url = f"/rides/{on_demand_ride['id']}/cancel"
    client.patch(url, json={"reason": "No longer needed"}, headers=rider.headers)
    resp = client.patch(url, json={"reason": "Again"}, headers=rider.headers)
    assert resp.status_code == 409
    assert resp.json()["message"] == "Cannot cancel ride with status: cancelled"


def test_strangers_cannot_cancel(client, make_user, on_demand_ride):
    other = make_user("rider")
    resp = client.patch(f"/rides/{on_demand_ride['id']}/cancel", json={"reason": "x"}, headers=other.headers)
    assert resp.status_code == 403


def test_admin_cancel_is_recorded_as_system(client, admin, on_demand_ride):
    resp = client.patch(f"/rides/{on_demand_ride['id']}/cancel", json={"reason": "Fraud check"}, headers=admin.headers)
    assert resp.status_code == 200
    assert resp.json()["cancelled_by"] == "system"


def _completed_ride(client, rider, driver):
    ride = client.post("/rides", json=ride_request_payload(), headers=rider.headers).json()
    client.post(f"/rides/{ride['id']}/accept", headers=driver.headers)
    for action in ("driver-arrived", "start", "complete"):
        _advance(client, ride["id"], action, driver)
    return ride["id"]


def test_both_sides_rate_once(client, rider, driver):
    ride_id = _completed_ride(client, rider, driver)

    resp = client.post(f"/rides/{ride_id}/rate", json={"rating": 4, "comment": "Smooth"}, headers=rider.headers)
    assert resp.status_code == 200
    assert resp.json()["user_to_driver"] == {"rating": 4, "comment": "Smooth"}
    assert client.get("/drivers/me", headers=driver.headers).json()["rating"] == 4.0

    resp = client.post(f"/rides/{ride_id}/rate", json={"rating": 5}, headers=driver.headers)
    assert resp.json()["driver_to_user"]["rating"] == 5
    assert client.get("/users/me", headers=rider.headers).json()["rating"] == 5.0

    again = client.post(f"/rides/{ride_id}/rate", json={"rating": 1}, headers=rider.headers)
    assert again.status_code == 409
    assert again.json()["message"] == "You have already rated this ride."


def test_rating_requires_completed_ride(client, rider, on_demand_ride):
    resp = client.post(f"/rides/{on_demand_ride['id']}/rate", json={"rating": 5}, headers=rider.headers)
    assert resp.status_code == 409


def test_rating_out_of_range(client, rider, driver):
    ride_id = _completed_ride(client, rider, driver)
    resp = client.post(f"/rides/{ride_id}/rate", json={"rating": 6}, headers=rider.headers)
    assert resp.status_code == 400


def test_history_records_every_step(client, rider, driver):
    ride_id = _completed_ride(client, rider, driver)
    history = client.get(f"/rides/{ride_id}/history", headers=rider.headers).json()
    types = [e["event_type"] for e in history["events"]]
    assert types[0] == "ride_requested"
    assert types[1] == "driver_assigned"
    transitions = [(e["payload"]["from"], e["payload"]["to"]) for e in history["events"][2:]]
    assert transitions == [("accepted", "arrived"), ("arrived", "in_progress"), ("in_progress", "completed")]


def test_status_filter_accepts_legacy_names(client, rider, on_demand_ride):
    resp = client.get("/rides/user-rides", params={"status": "searching_driver"}, headers=rider.headers)
    assert [r["id"] for r in resp.json()] == [on_demand_ride["id"]]

    resp = client.get("/rides/user-rides", params={"status": "driver_assigned"}, headers=rider.headers)
    assert resp.json() == []


def test_status_filter_rejects_unknown_names(client, rider):
    resp = client.get("/rides/user-rides", params={"status": "bogus"}, headers=rider.headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid status: bogus"
