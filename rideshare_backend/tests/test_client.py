"""Tests for the Python API client, its stores and the ride detail poller."""

import json
import threading

import pytest
import requests
import responses

from src.client.http import ApiClient, ApiError, TokenStore
from src.client.polling import RideDetailPoller
from src.client.stores import RideStore, UserStore

BASE_URL = "http://rides.test"
RIDE_ID = "6c1c7a3e-8d0b-4b7c-9d1f-1f0ad1a4a001"
REQUEST_ID = "0b9e4c55-3f2a-4e7a-a2d4-9c77f0a4b002"


def ride(status="requested", available=3, join_requests=None, ride_id=RIDE_ID):
    return {
        "id": ride_id,
        "kind": "offer",
        "status": status,
        "seats": {"total": 3, "available": available},
        "join_requests": join_requests or [],
    }


def join_request(status="pending", seats=1):
    return {"id": REQUEST_ID, "ride_id": RIDE_ID, "seats_required": seats, "status": status, "fare": 250.0 * seats}


@pytest.fixture
def notes():
    return []


@pytest.fixture
def api():
    return ApiClient(BASE_URL, token_store=TokenStore("t0ken"))


@pytest.fixture
def store(api, notes):
    return RideStore(api, notify=lambda level, message: notes.append((level, message)))


@responses.activate
def test_requests_carry_bearer_token(api):
    responses.add(responses.GET, f"{BASE_URL}/users/me", json={"id": "u1"}, status=200)
    assert api.get("/users/me") == {"id": "u1"}
    assert responses.calls[0].request.headers["Authorization"] == "Bearer t0ken"


@responses.activate
def test_none_params_are_dropped(api):
    responses.add(responses.GET, f"{BASE_URL}/rides/user-rides", json=[], status=200)
    api.get("/rides/user-rides", {"status": None, "limit": 5})
    assert responses.calls[0].request.url == f"{BASE_URL}/rides/user-rides?limit=5"


@responses.activate
def test_login_stores_token():
    client = ApiClient(BASE_URL)
    responses.add(responses.POST, f"{BASE_URL}/auth/login", json={"access_token": "fresh"}, status=200)
    assert client.login("a@example.com", "pw") == "fresh"
    assert client.token_store.get() == "fresh"
    assert json.loads(responses.calls[0].request.body) == {"email": "a@example.com", "password": "pw"}


@responses.activate
def test_unauthorized_clears_token_and_redirects():
    redirects = []
    client = ApiClient(BASE_URL, token_store=TokenStore("old"), on_unauthorized=redirects.append)
    responses.add(
        responses.GET,
        f"{BASE_URL}/users/me",
        json={"status": "fail", "message": "Your token has expired. Please log in again."},
        status=401,
    )
    with pytest.raises(ApiError) as excinfo:
        client.get("/users/me")
    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Your token has expired. Please log in again."
    assert client.token_store.get() is None
    assert redirects == ["/login"]


@responses.activate
def test_error_envelope_message(api):
    responses.add(
        responses.POST,
        f"{BASE_URL}/rides/offers/{RIDE_ID}/join",
        json={"status": "fail", "message": "Requested 4 seat(s) but only 3 available."},
        status=400,
    )
    with pytest.raises(ApiError) as excinfo:
        api.post(f"/rides/offers/{RIDE_ID}/join", {"seats": 4})
    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "Requested 4 seat(s) but only 3 available."
    assert excinfo.value.payload["status"] == "fail"


@responses.activate
def test_non_json_error(api):
    responses.add(responses.GET, f"{BASE_URL}/", body="upstream down", status=502)
    with pytest.raises(ApiError) as excinfo:
        api.get("/")
    assert excinfo.value.status_code == 502
    assert excinfo.value.payload == {}


@responses.activate
def test_network_error(api):
    responses.add(responses.GET, f"{BASE_URL}/", body=requests.ConnectionError("refused"))
    with pytest.raises(ApiError) as excinfo:
        api.get("/")
    assert excinfo.value.status_code == 0
    assert excinfo.value.message.startswith("Network error")


@responses.activate
def test_empty_body_returns_none(api):
    responses.add(responses.DELETE, f"{BASE_URL}/things/1", status=204)
    assert api.delete("/things/1") is None


@responses.activate
def test_join_then_accept_updates_every_copy(api, store, notes):
    responses.add(responses.GET, f"{BASE_URL}/rides/offers", json=[ride()], status=200)
    store.fetch_offers(seats=1, destination_city="Mysuru")
    assert "seats=1" in responses.calls[0].request.url

    pending = join_request()
    responses.add(
        responses.POST,
        f"{BASE_URL}/rides/offers/{RIDE_ID}/join",
        json={"join_request": pending, "ride": ride(join_requests=[pending])},
        status=201,
    )
    store.join_ride(RIDE_ID, seats=1, message="Near the gate")
    assert store.my_requested_rides[0]["status"] == "pending"
    assert ("success", "Join request sent.") in notes

    # Poll result: the driver accepted, one seat is gone.
    accepted = join_request(status="accepted")
    responses.add(
        responses.GET,
        f"{BASE_URL}/rides/{RIDE_ID}",
        json=ride(status="requested", available=2, join_requests=[accepted]),
        status=200,
    )
    store.fetch_ride(RIDE_ID)
    assert store.current_ride["seats"]["available"] == 2
    assert store.offers[0]["seats"]["available"] == 2
    assert store.my_requested_rides[0]["status"] == "accepted"
    assert store.my_requested_rides[0]["ride"]["seats"]["available"] == 2


@responses.activate
def test_store_failure_is_recorded(store, notes):
    responses.add(
        responses.POST,
        f"{BASE_URL}/rides/join-requests/{REQUEST_ID}/accept",
        json={"status": "fail", "message": "Not enough seats left on this ride for 1 more passenger(s)."},
        status=409,
    )
    assert store.accept_join_request(REQUEST_ID) is None
    assert store.error == "Not enough seats left on this ride for 1 more passenger(s)."
    assert store.loading is False
    assert notes == [("error", store.error)]


@responses.activate
def test_lifecycle_mutations_replace_cached_ride(store):
    responses.add(responses.GET, f"{BASE_URL}/rides/user-rides", json=[ride(ride_id="r1")], status=200)
    store.fetch_user_rides()
    responses.add(responses.PATCH, f"{BASE_URL}/rides/r1/cancel", json=ride(status="cancelled", ride_id="r1"), status=200)
    store.cancel_ride("r1", "Plans changed")
    assert store.rides[0]["status"] == "cancelled"
    assert json.loads(responses.calls[1].request.body) == {"reason": "Plans changed"}


@responses.activate
def test_request_ride_is_listed_first(store):
    store.rides = [ride(ride_id="older")]
    responses.add(responses.POST, f"{BASE_URL}/rides", json=ride(ride_id="newer"), status=201)
    store.request_ride({"ride_type": "economy"})
    assert [r["id"] for r in store.rides] == ["newer", "older"]
    assert store.current_ride["id"] == "newer"
    assert store.success == "Ride requested successfully."


@responses.activate
def test_user_store_replaces_lists(api):
    users = UserStore(api)
    masked = [{"id": "pm1", "card_number": "**** **** **** 1234", "is_default": True}]
    responses.add(responses.POST, f"{BASE_URL}/users/payment-methods", json=masked, status=201)
    users.add_payment_method({"type": "credit_card", "card_number": "4111111111111234", "expiry_date": "12/29"})
    assert users.payment_methods == masked

    responses.add(responses.DELETE, f"{BASE_URL}/users/payment-methods/pm1", json=[], status=200)
    users.remove_payment_method("pm1")
    assert users.payment_methods == []

    responses.add(responses.POST, f"{BASE_URL}/users/saved-addresses", json=[{"id": "a1", "name": "Home"}], status=201)
    users.add_saved_address("Home", "12 Residency Rd", 12.97, 77.6)
    assert users.saved_addresses[0]["name"] == "Home"


class FakeStore:
    def __init__(self, wanted_calls):
        self.calls = []
        self.done = threading.Event()
        self.wanted_calls = wanted_calls

    def fetch_ride(self, ride_id):
        self.calls.append(ride_id)
        if len(self.calls) >= self.wanted_calls:
            self.done.set()


def test_poller_refreshes_until_stopped():
    fake = FakeStore(wanted_calls=3)
    poller = RideDetailPoller(fake, RIDE_ID, interval=0.01)
    poller.start()
    assert fake.done.wait(timeout=5)
    poller.stop(timeout=5)
    assert not poller.running
    assert set(fake.calls) == {RIDE_ID}

    count = len(fake.calls)
    poller.stop()
    assert len(fake.calls) == count


def test_poller_fetches_immediately():
    fake = FakeStore(wanted_calls=1)
    poller = RideDetailPoller(fake, RIDE_ID, interval=60)
    poller.start()
    try:
        assert fake.done.wait(timeout=5)
    finally:
        poller.stop(timeout=5)
    assert not poller.running


class FlakyStore(FakeStore):
    def fetch_ride(self, ride_id):
        super().fetch_ride(ride_id)
        if len(self.calls) == 1:
            raise requests.ConnectionError("connection reset")


def test_poller_survives_unexpected_errors(caplog):
    flaky = FlakyStore(wanted_calls=3)
    poller = RideDetailPoller(flaky, RIDE_ID, interval=0.01)
    with caplog.at_level("ERROR", logger="src.client.polling"):
        poller.start()
        try:
            assert flaky.done.wait(timeout=5)
            assert poller.running
        finally:
            poller.stop(timeout=5)
    assert f"Refreshing ride {RIDE_ID} failed" in caplog.text


def test_poller_needs_positive_interval():
    with pytest.raises(ValueError):
        RideDetailPoller(FakeStore(1), RIDE_ID, interval=0)
