from conftest import offer_payload, ride_request_payload


def test_rider_cannot_offer_rides(client, rider):
    resp = client.post("/rides/offers", json=offer_payload(), headers=rider.headers)
    assert resp.status_code == 403


def test_offer_must_depart_in_the_future(client, driver):
    resp = client.post("/rides/offers", json=offer_payload(days_ahead=-1), headers=driver.headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Departure time must be in the future."


def test_offer_takes_vehicle_from_profile(client, driver, offer):
    assert offer["kind"] == "offer"
    assert offer["driver_id"] == driver.id
    assert offer["user_id"] == driver.id
    assert offer["vehicle"]["model"] == "Swift"
    assert offer["fare"]["estimated_fare"] == 250.0


def test_offer_search_filters(client, driver, rider, offer):
    chennai = client.post(
        "/rides/offers",
        json=offer_payload(seats=1, days_ahead=3, destination_city="Chennai"),
        headers=driver.headers,
    ).json()

    def search(**params):
        resp = client.get("/rides/offers", params=params, headers=rider.headers)
        assert resp.status_code == 200, resp.text
        return [r["id"] for r in resp.json()]

    # Soonest departure first.
    assert search() == [offer["id"], chennai["id"]]
    assert search(destination_city="mysu") == [offer["id"]]
    assert search(departure_city="BENGALURU") == [offer["id"], chennai["id"]]
    assert search(seats=2) == [offer["id"]]
    assert search(departure_date=offer["departure_time"][:10]) == [offer["id"]]
    assert search(departure_date=chennai["departure_time"][:10], destination_city="mysuru") == []


def test_cancelled_offers_are_not_listed(client, driver, rider, offer):
    client.patch(f"/rides/{offer['id']}/cancel", json={"reason": "Not going"}, headers=driver.headers)
    assert client.get("/rides/offers", headers=rider.headers).json() == []


def test_my_offers(client, driver, make_driver, offer):
    other = make_driver()
    client.post("/rides/offers", json=offer_payload(), headers=other.headers)

    mine = client.get("/rides/offers/my", headers=driver.headers).json()
    assert [r["id"] for r in mine] == [offer["id"]]
    # Offers are also the driver's own rides.
    assert [r["id"] for r in client.get("/rides/user-rides", headers=driver.headers).json()] == [offer["id"]]
    assert [r["id"] for r in client.get("/rides/driver-rides", headers=driver.headers).json()] == [offer["id"]]


def test_rider_cannot_list_driver_views(client, rider):
    assert client.get("/rides/offers/my", headers=rider.headers).status_code == 403
    assert client.get("/rides/driver-rides", headers=rider.headers).status_code == 403
    assert client.get("/rides/available", headers=rider.headers).status_code == 403


def test_available_rides_within_radius(client, driver, on_demand_ride):
    near = client.get("/rides/available", params={"lat": 12.97, "lng": 77.60, "radius_km": 5}, headers=driver.headers)
    assert [r["id"] for r in near.json()] == [on_demand_ride["id"]]

    far = client.get("/rides/available", params={"lat": 13.5, "lng": 77.6}, headers=driver.headers)
    assert far.json() == []

    everywhere = client.get("/rides/available", headers=driver.headers)
    assert len(everywhere.json()) == 1


def test_accepted_rides_leave_the_pool(client, driver, on_demand_ride):
    client.post(f"/rides/{on_demand_ride['id']}/accept", headers=driver.headers)
    assert client.get("/rides/available", headers=driver.headers).json() == []


def test_ride_visibility(client, driver, make_user, make_driver, on_demand_ride):
    ride_id = on_demand_ride["id"]
    stranger = make_user("rider")
    assert client.get(f"/rides/{ride_id}", headers=stranger.headers).status_code == 403
    # Drivers looking for work can see open requests.
    assert client.get(f"/rides/{ride_id}", headers=driver.headers).status_code == 200

    client.post(f"/rides/{ride_id}/accept", headers=driver.headers)
    other_driver = make_driver()
    assert client.get(f"/rides/{ride_id}", headers=other_driver.headers).status_code == 403
    assert client.get(f"/rides/{ride_id}/history", headers=other_driver.headers).status_code == 403


def test_open_offers_are_public(client, make_user, offer):
    stranger = make_user("rider")
    resp = client.get(f"/rides/{offer['id']}", headers=stranger.headers)
    assert resp.status_code == 200
    assert resp.json()["join_requests"] == []


def test_admin_sees_everything(client, admin, on_demand_ride):
    assert client.get(f"/rides/{on_demand_ride['id']}", headers=admin.headers).status_code == 200


def test_my_requested_rides(client, rider, offer):
    client.post(f"/rides/offers/{offer['id']}/join", json={"seats": 2, "message": "Two bags"}, headers=rider.headers)
    mine = client.get("/rides/my-requested-rides", headers=rider.headers).json()
    assert len(mine) == 1
    assert mine[0]["seats_required"] == 2
    assert mine[0]["fare"] == 500.0
    assert mine[0]["message"] == "Two bags"
    assert mine[0]["ride"]["id"] == offer["id"]


def test_user_rides_paginate(client, rider):
    for _ in range(3):
        client.post("/rides", json=ride_request_payload(), headers=rider.headers)
    page = client.get("/rides/user-rides", params={"limit": 2, "offset": 2}, headers=rider.headers).json()
    assert len(page) == 1


def test_ride_request_validation(client, rider):
    resp = client.post("/rides", json=ride_request_payload(estimated_distance_km=-1), headers=rider.headers)
    assert resp.status_code == 400
    resp = client.post("/rides", json=ride_request_payload(ride_type="limousine"), headers=rider.headers)
    assert resp.status_code == 400
