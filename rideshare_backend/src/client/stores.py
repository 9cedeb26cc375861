"""
Client-side caches of rides and user data.

Stores never edit cached rides by hand: every mutation returns the ride as the
server now sees it, and apply_ride() swaps that copy into every list holding
the ride. Failures are caught, recorded in `error` and reported through the
notify callback; actions then return None.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from src.client.http import ApiClient, ApiError

logger = logging.getLogger(__name__)

Notify = Callable[[str, str], None]


def _noop_notify(level: str, message: str) -> None:
    return None


class _Store:
    def __init__(self, api: ApiClient, notify: Optional[Notify] = None):
        self.api = api
        self.notify = notify or _noop_notify
        self.loading = False
        self.error: Optional[str] = None
        self.success: Optional[str] = None

    def _run(self, call: Callable[[], Any], success_message: Optional[str] = None) -> Any:
        self.loading = True
        self.error = None
        self.success = None
        try:
            result = call()
        except ApiError as exc:
            self.error = exc.message
            logger.debug("API call failed: %s", exc)
            self.notify("error", exc.message)
            return None
        finally:
            self.loading = False
        if success_message:
            self.success = success_message
            self.notify("success", success_message)
        return result


def _replace_by_id(items: List[Dict[str, Any]], item: Dict[str, Any]) -> bool:
    for i, existing in enumerate(items):
        if existing.get("id") == item.get("id"):
            items[i] = item
            return True
    return False


class RideStore(_Store):
    """Rides, offers and join requests of the logged-in user."""

    def __init__(self, api: ApiClient, notify: Optional[Notify] = None):
        super().__init__(api, notify)
        self.rides: List[Dict[str, Any]] = []
        self.driver_rides: List[Dict[str, Any]] = []
        self.offers: List[Dict[str, Any]] = []
        self.my_offers: List[Dict[str, Any]] = []
        self.my_requested_rides: List[Dict[str, Any]] = []
        self.current_ride: Optional[Dict[str, Any]] = None

    # PUBLIC_INTERFACE
    def apply_ride(self, ride: Dict[str, Any]) -> Dict[str, Any]:
        """Replace every cached copy of `ride` with this server copy."""
        for items in (self.rides, self.driver_rides, self.offers, self.my_offers):
            _replace_by_id(items, ride)
        if self.current_ride is not None and self.current_ride.get("id") == ride.get("id"):
            self.current_ride = ride

        # A passenger's view of a ride lists their own join requests.
        own_requests = {r["id"]: r for r in ride.get("join_requests", [])}
        for i, entry in enumerate(self.my_requested_rides):
            if entry.get("ride", {}).get("id") != ride.get("id"):
                continue
            updated = dict(own_requests.get(entry["id"], entry))
            updated["ride"] = ride
            self.my_requested_rides[i] = updated
        return ride

    def _mutate(self, call: Callable[[], Dict[str, Any]], success_message: str) -> Optional[Dict[str, Any]]:
        ride = self._run(call, success_message)
        if ride is None:
            return None
        return self.apply_ride(ride)

    def fetch_user_rides(self, status: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        rides = self._run(lambda: self.api.get("/rides/user-rides", {"status": status}))
        if rides is not None:
            self.rides = rides
        return rides

    def fetch_driver_rides(self, status: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        rides = self._run(lambda: self.api.get("/rides/driver-rides", {"status": status}))
        if rides is not None:
            self.driver_rides = rides
        return rides

    def fetch_ride(self, ride_id: str) -> Optional[Dict[str, Any]]:
        ride = self._run(lambda: self.api.get(f"/rides/{ride_id}"))
        if ride is None:
            return None
        self.current_ride = ride
        return self.apply_ride(ride)

    def request_ride(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ride = self._run(lambda: self.api.post("/rides", payload), "Ride requested successfully.")
        if ride is not None:
            self.rides.insert(0, ride)
            self.current_ride = ride
        return ride

    def create_offer(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ride = self._run(lambda: self.api.post("/rides/offers", payload), "Ride offer published.")
        if ride is not None:
            self.my_offers.insert(0, ride)
            self.current_ride = ride
        return ride

    def fetch_my_offers(self) -> Optional[List[Dict[str, Any]]]:
        offers = self._run(lambda: self.api.get("/rides/offers/my"))
        if offers is not None:
            self.my_offers = offers
        return offers

    def accept_ride(self, ride_id: str) -> Optional[Dict[str, Any]]:
        return self._mutate(lambda: self.api.post(f"/rides/{ride_id}/accept"), "Ride accepted.")

    def driver_arrived(self, ride_id: str) -> Optional[Dict[str, Any]]:
        return self._mutate(lambda: self.api.patch(f"/rides/{ride_id}/driver-arrived"), "Marked as arrived.")

    def start_ride(self, ride_id: str) -> Optional[Dict[str, Any]]:
        return self._mutate(lambda: self.api.patch(f"/rides/{ride_id}/start"), "Ride started.")

    def complete_ride(self, ride_id: str) -> Optional[Dict[str, Any]]:
        return self._mutate(lambda: self.api.patch(f"/rides/{ride_id}/complete"), "Ride completed.")

    def cancel_ride(self, ride_id: str, reason: str) -> Optional[Dict[str, Any]]:
        return self._mutate(
            lambda: self.api.patch(f"/rides/{ride_id}/cancel", {"reason": reason}),
            "Ride cancelled.",
        )

    def rate_ride(self, ride_id: str, rating: int, comment: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self._mutate(
            lambda: self.api.post(f"/rides/{ride_id}/rate", {"rating": rating, "comment": comment}),
            "Thanks for rating your ride.",
        )

    def fetch_offers(self, **filters: Any) -> Optional[List[Dict[str, Any]]]:
        """Filters: departure_date, seats, departure_city, destination_city."""
        offers = self._run(lambda: self.api.get("/rides/offers", filters))
        if offers is not None:
            self.offers = offers
        return offers

    def join_ride(self, ride_id: str, seats: int = 1, message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        result = self._run(
            lambda: self.api.post(f"/rides/offers/{ride_id}/join", {"seats": seats, "message": message}),
            "Join request sent.",
        )
        if result is None:
            return None
        entry = dict(result["join_request"])
        entry["ride"] = result["ride"]
        self.my_requested_rides.insert(0, entry)
        self.apply_ride(result["ride"])
        return result

    def accept_join_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self._mutate(
            lambda: self.api.post(f"/rides/join-requests/{request_id}/accept"),
            "Join request accepted.",
        )

    def reject_join_request(self, request_id: str, message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self._mutate(
            lambda: self.api.post(f"/rides/join-requests/{request_id}/reject", {"message": message}),
            "Join request rejected.",
        )

    def cancel_join_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self._mutate(
            lambda: self.api.post(f"/rides/join-requests/{request_id}/cancel"),
            "Join request cancelled.",
        )

    def fetch_my_requested_rides(self) -> Optional[List[Dict[str, Any]]]:
        entries = self._run(lambda: self.api.get("/rides/my-requested-rides"))
        if entries is not None:
            self.my_requested_rides = entries
        return entries


class UserStore(_Store):
    """Saved addresses and payment methods; the server always returns full lists."""

    def __init__(self, api: ApiClient, notify: Optional[Notify] = None):
        super().__init__(api, notify)
        self.saved_addresses: List[Dict[str, Any]] = []
        self.payment_methods: List[Dict[str, Any]] = []

    def _set_addresses(self, call: Callable[[], Any], success_message: Optional[str] = None):
        items = self._run(call, success_message)
        if items is not None:
            self.saved_addresses = items
        return items

    def _set_payment_methods(self, call: Callable[[], Any], success_message: Optional[str] = None):
        items = self._run(call, success_message)
        if items is not None:
            self.payment_methods = items
        return items

    def fetch_saved_addresses(self):
        return self._set_addresses(lambda: self.api.get("/users/saved-addresses"))

    def add_saved_address(self, name: str, address: str, lat: float, lng: float):
        payload = {"name": name, "address": address, "lat": lat, "lng": lng}
        return self._set_addresses(lambda: self.api.post("/users/saved-addresses", payload), "Address saved.")

    def remove_saved_address(self, address_id: str):
        return self._set_addresses(
            lambda: self.api.delete(f"/users/saved-addresses/{address_id}"), "Address removed."
        )

    def fetch_payment_methods(self):
        return self._set_payment_methods(lambda: self.api.get("/users/payment-methods"))

    def add_payment_method(self, payload: Dict[str, Any]):
        return self._set_payment_methods(
            lambda: self.api.post("/users/payment-methods", payload), "Payment method added."
        )

    def remove_payment_method(self, payment_method_id: str):
        return self._set_payment_methods(
            lambda: self.api.delete(f"/users/payment-methods/{payment_method_id}"), "Payment method removed."
        )

    def set_default_payment_method(self, payment_method_id: str):
        return self._set_payment_methods(
            lambda: self.api.patch(f"/users/payment-methods/{payment_method_id}/set-default"),
            "Default payment method updated.",
        )
