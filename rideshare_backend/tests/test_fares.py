import pytest

from src.api.models.driver import VehicleType
from src.api.services.fares import CURRENCY, calculate_fare


def test_economy_fare_components():
    fare = calculate_fare(10, VehicleType.economy)
    assert fare.base_fare == 50.0
    assert fare.distance_fare == 150.0
    assert fare.time_fare == 25.0
    assert fare.surge == 0.0
    assert fare.tax == 11.25
    assert fare.total == 236.25


@pytest.mark.parametrize(
    "ride_type,distance,total",
    [
        (VehicleType.premium, 0, 126.0),
        (VehicleType.suv, 4, 220.5),
        (VehicleType.comfort, 2, 131.25),
    ],
)
def test_fare_per_ride_type(ride_type, distance, total):
    assert calculate_fare(distance, ride_type).total == total


def test_ride_type_may_be_given_as_string():
    assert calculate_fare(10, "economy") == calculate_fare(10, VehicleType.economy)


def test_negative_distance_is_rejected():
    with pytest.raises(ValueError):
        calculate_fare(-1)


def test_prices_are_in_rupees():
    assert CURRENCY == "INR"


def test_fare_estimate_endpoint(client, rider):
    resp = client.get("/rides/fare-estimate", params={"distance_km": 10, "ride_type": "economy"}, headers=rider.headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 236.25
    assert body["currency"] == "INR"
    assert body["breakdown"]["tax"] == 11.25


def test_unknown_ride_type_is_rejected():
    with pytest.raises(ValueError, match="Unknown ride type: limousine"):
        calculate_fare(5, "limousine")


def test_fare_estimate_rejects_unknown_ride_type(client, rider):
    resp = client.get("/rides/fare-estimate", params={"distance_km": 5, "ride_type": "limousine"}, headers=rider.headers)
    assert resp.status_code == 400
