"""
Ride lifecycle workflow.

Every status change goes through _compare_and_set(), a single conditional
UPDATE keyed on the status the caller observed. If another request moved the
ride first, the UPDATE matches no row and the caller gets InvalidStateTransition
instead of silently overwriting the other change.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.api.errors import (
    Conflict,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from src.api.models.base import utcnow
from src.api.models.driver import Driver
from src.api.models.join_request import LIVE_JOIN_REQUEST_STATUSES, JoinRequest, JoinRequestStatus
from src.api.models.ride import (
    CancelledBy,
    PaymentStatus,
    Ride,
    RideEvent,
    RideKind,
    RideStatus,
)
from src.api.models.user import User, UserRole
from src.api.schemas.ride import RideOfferCreate, RideRequestCreate
from src.api.services.fares import CURRENCY, calculate_fare

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[RideStatus, FrozenSet[RideStatus]] = {
    RideStatus.requested: frozenset({RideStatus.accepted, RideStatus.cancelled}),
    RideStatus.accepted: frozenset({RideStatus.arrived, RideStatus.cancelled}),
    RideStatus.arrived: frozenset({RideStatus.in_progress, RideStatus.cancelled}),
    RideStatus.in_progress: frozenset({RideStatus.completed, RideStatus.cancelled}),
    RideStatus.completed: frozenset(),
    RideStatus.cancelled: frozenset(),
}


def can_transition(current: RideStatus, new: RideStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(current: RideStatus, new: RideStatus) -> None:
    """Raise InvalidStateTransition unless `new` directly follows `current`."""
    if not can_transition(current, new):
        raise InvalidStateTransition(
            f"Invalid status transition from '{current.value}' to '{new.value}'."
        )


def _is_admin(user: User) -> bool:
    return user.role == UserRole.admin


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (SQLite, client input) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_event(db: Session, ride_id: UUID, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Persist a ride event row."""
    db.add(RideEvent(ride_id=ride_id, event_type=event_type, payload=payload or {}))


def get_ride(db: Session, ride_id: UUID) -> Ride:
    ride = db.scalar(select(Ride).where(Ride.id == ride_id))
    if not ride:
        raise NotFound("Ride not found.")
    return ride


def _compare_and_set(db: Session, ride: Ride, expected: RideStatus, new: RideStatus, **values: Any) -> None:
    result = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == expected)
        .values(status=new, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateTransition(
            f"Ride is no longer '{expected.value}'; it was updated by another request."
        )


def _commit(db: Session, ride: Ride) -> Ride:
    db.commit()
    db.refresh(ride)
    return ride


def _free_driver(db: Session, driver_user_id: UUID, ride_id: UUID) -> Optional[Driver]:
    driver = db.scalar(select(Driver).where(Driver.id == driver_user_id))
    if driver and driver.active_ride_id == ride_id:
        driver.is_available = True
        driver.active_ride_id = None
        driver.updated_at = utcnow()
    return driver


# PUBLIC_INTERFACE
def can_view(user: User, ride: Ride) -> bool:
    """
    Whether `user` may read `ride`.

    Participants and admins always can; open offers are visible to everyone;
    unassigned on-demand requests are visible to drivers looking for work.
    """
    if _is_admin(user) or ride.user_id == user.id or ride.driver_id == user.id:
        return True
    if any(r.passenger_id == user.id for r in ride.join_requests):
        return True
    if ride.kind == RideKind.offer and not ride.status.is_terminal:
        return True
    return (
        ride.kind == RideKind.on_demand
        and ride.status == RideStatus.requested
        and ride.driver_id is None
        and user.role == UserRole.driver
    )


# PUBLIC_INTERFACE
def request_ride(db: Session, actor: User, data: RideRequestCreate) -> Ride:
    """Create an on-demand ride in status=requested with an estimated fare."""
    if actor.role != UserRole.rider:
        raise Forbidden("Rider role required to request a ride.")

    fare = calculate_fare(data.estimated_distance_km, data.ride_type)
    ride = Ride(
        kind=RideKind.on_demand,
        user_id=actor.id,
        driver_id=None,
        status=RideStatus.requested,
        pickup_address=data.pickup.address.strip(),
        pickup_lat=data.pickup.lat,
        pickup_lng=data.pickup.lng,
        dest_address=data.destination.address.strip(),
        dest_lat=data.destination.lat,
        dest_lng=data.destination.lng,
        ride_type=data.ride_type,
        estimated_distance_km=data.estimated_distance_km,
        estimated_duration_min=data.estimated_duration_min,
        estimated_fare=fare.total,
        currency=CURRENCY,
        fare_base=fare.base_fare,
        fare_distance=fare.distance_fare,
        fare_time=fare.time_fare,
        fare_surge=fare.surge,
        fare_tax=fare.tax,
        payment_method=data.payment_method,
    )
    db.add(ride)
    db.flush()
    add_event(
        db,
        ride.id,
        "ride_requested",
        {
            "user_id": str(actor.id),
            "pickup": {"lat": data.pickup.lat, "lng": data.pickup.lng},
            "destination": {"lat": data.destination.lat, "lng": data.destination.lng},
            "estimated_fare": fare.total,
        },
    )
    _commit(db, ride)
    logger.info("Ride %s requested by %s (fare %.2f %s)", ride.id, actor.id, fare.total, CURRENCY)
    return ride


# PUBLIC_INTERFACE
def create_offer(db: Session, actor: User, data: RideOfferCreate) -> Ride:
    """Publish a scheduled ride offer owned by the calling driver."""
    if actor.role != UserRole.driver:
        raise Forbidden("Driver role required to offer a ride.")
    departure = as_utc(data.departure_time)
    if departure <= utcnow():
        raise ValidationError({"departure_time": "Departure time must be in the future."})

    profile = db.scalar(select(Driver).where(Driver.id == actor.id))
    vehicle = data.vehicle
    ride = Ride(
        kind=RideKind.offer,
        user_id=actor.id,
        driver_id=actor.id,
        status=RideStatus.requested,
        pickup_address=data.pickup.address.strip(),
        pickup_lat=data.pickup.lat,
        pickup_lng=data.pickup.lng,
        dest_address=data.destination.address.strip(),
        dest_lat=data.destination.lat,
        dest_lng=data.destination.lng,
        departure_city=data.departure_city,
        destination_city=data.destination_city,
        departure_time=departure,
        estimated_distance_km=data.estimated_distance_km,
        estimated_duration_min=data.estimated_duration_min,
        estimated_fare=round(data.price_per_seat, 2),
        currency=CURRENCY,
        seats_total=data.seats,
        available_seats=data.seats,
        vehicle_model=(vehicle.model if vehicle and vehicle.model else getattr(profile, "vehicle_model", None)),
        vehicle_color=(vehicle.color if vehicle and vehicle.color else getattr(profile, "vehicle_color", None)),
        vehicle_license_plate=(
            vehicle.license_plate if vehicle and vehicle.license_plate else getattr(profile, "license_plate", None)
        ),
        notes=data.notes,
    )
    if profile is not None:
        ride.ride_type = profile.vehicle_type
    db.add(ride)
    db.flush()
    add_event(
        db,
        ride.id,
        "offer_created",
        {"driver_id": str(actor.id), "seats": data.seats, "departure_time": departure.isoformat()},
    )
    _commit(db, ride)
    logger.info("Offer %s created by %s with %d seat(s)", ride.id, actor.id, data.seats)
    return ride


# PUBLIC_INTERFACE
def accept_ride(db: Session, ride_id: UUID, actor: User) -> Ride:
    """
    requested -> accepted.

    On-demand: any available driver may take an unassigned ride and becomes its
    driver. Offer: only the owner may confirm it.
    """
    ride = get_ride(db, ride_id)

    if ride.kind == RideKind.offer:
        if ride.driver_id != actor.id:
            raise Forbidden("Only the offer owner can accept this ride.")
        if ride.status == RideStatus.accepted:
            return ride
        validate_transition(ride.status, RideStatus.accepted)
        _compare_and_set(db, ride, ride.status, RideStatus.accepted)
        add_event(db, ride.id, "status_changed", {"from": "requested", "to": "accepted", "by_user_id": str(actor.id)})
        return _commit(db, ride)

    if actor.role != UserRole.driver:
        raise Forbidden("You need to be a driver to accept rides.")
    if ride.status == RideStatus.accepted and ride.driver_id == actor.id:
        return ride
    if ride.driver_id is not None and ride.driver_id != actor.id:
        raise Conflict("Ride is already assigned to another driver.")
    validate_transition(ride.status, RideStatus.accepted)

    profile = db.scalar(select(Driver).where(Driver.id == actor.id))
    if not profile or not bool(profile.is_available):
        raise Conflict("Driver is not available for assignment.")

    result = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == RideStatus.requested, Ride.driver_id.is_(None))
        .values(status=RideStatus.accepted, driver_id=actor.id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Ride was taken by another driver.")

    profile.is_available = False
    profile.active_ride_id = ride.id
    profile.updated_at = utcnow()
    add_event(db, ride.id, "driver_assigned", {"driver_id": str(actor.id)})
    _commit(db, ride)
    logger.info("Ride %s accepted by driver %s", ride.id, actor.id)
    return ride


def _advance(db: Session, ride_id: UUID, actor: User, new: RideStatus, **values: Any) -> Ride:
    ride = get_ride(db, ride_id)
    if ride.driver_id is None or ride.driver_id != actor.id:
        raise Forbidden("You are not assigned to this ride.")
    if ride.status == new:
        return ride
    previous = ride.status
    validate_transition(previous, new)
    _compare_and_set(db, ride, previous, new, **values)
    add_event(
        db,
        ride.id,
        "status_changed",
        {"from": previous.value, "to": new.value, "by_user_id": str(actor.id)},
    )
    _commit(db, ride)
    logger.info("Ride %s moved %s -> %s", ride.id, previous.value, new.value)
    return ride


# PUBLIC_INTERFACE
def driver_arrived(db: Session, ride_id: UUID, actor: User) -> Ride:
    """accepted -> arrived."""
    return _advance(db, ride_id, actor, RideStatus.arrived)


# PUBLIC_INTERFACE
def start_ride(db: Session, ride_id: UUID, actor: User) -> Ride:
    """arrived -> in_progress."""
    return _advance(db, ride_id, actor, RideStatus.in_progress, started_at=utcnow())


# PUBLIC_INTERFACE
def complete_ride(db: Session, ride_id: UUID, actor: User) -> Ride:
    """
    in_progress -> completed.

    Fixes actual_fare when absent: the estimate for on-demand rides, the sum of
    accepted seat fares for offers. Credits the driver and frees them.
    """
    ride = get_ride(db, ride_id)
    if ride.driver_id is None or ride.driver_id != actor.id:
        raise Forbidden("You are not assigned to this ride.")
    if ride.status == RideStatus.completed:
        return ride
    validate_transition(ride.status, RideStatus.completed)

    actual_fare = ride.actual_fare
    if actual_fare is None:
        if ride.kind == RideKind.offer:
            actual_fare = round(
                sum(r.fare for r in ride.join_requests if r.status == JoinRequestStatus.accepted), 2
            )
        else:
            actual_fare = ride.estimated_fare

    _compare_and_set(
        db,
        ride,
        RideStatus.in_progress,
        RideStatus.completed,
        completed_at=utcnow(),
        actual_fare=actual_fare,
        payment_status=PaymentStatus.completed,
    )

    profile = _free_driver(db, actor.id, ride.id)
    if profile is not None:
        profile.earnings_total = Driver.earnings_total + actual_fare
        profile.earnings_current_week = Driver.earnings_current_week + actual_fare
        profile.earnings_current_month = Driver.earnings_current_month + actual_fare
        profile.completed_rides = Driver.completed_rides + 1

    add_event(
        db,
        ride.id,
        "status_changed",
        {"from": "in_progress", "to": "completed", "by_user_id": str(actor.id), "actual_fare": actual_fare},
    )
    _commit(db, ride)
    logger.info("Ride %s completed (fare %.2f)", ride.id, actual_fare)
    return ride


# PUBLIC_INTERFACE
def cancel_ride(db: Session, ride_id: UUID, actor: User, reason: str) -> Ride:
    """
    Cancel a ride from any non-terminal status.

    The requester, the assigned driver (or offer owner) and admins may cancel.
    Live join requests of an offer are cancelled with it.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError({"reason": "A cancellation reason is required."})

    ride = get_ride(db, ride_id)
    is_driver = ride.driver_id is not None and ride.driver_id == actor.id
    is_rider = ride.user_id == actor.id
    if not (is_driver or is_rider or _is_admin(actor)):
        raise Forbidden("You are not authorized to cancel this ride.")
    if ride.status.is_terminal:
        raise InvalidStateTransition(f"Cannot cancel ride with status: {ride.status.value}")

    if is_driver:
        cancelled_by = CancelledBy.driver
    elif is_rider:
        cancelled_by = CancelledBy.user
    else:
        cancelled_by = CancelledBy.system

    # Every live join request goes with the offer, so all seats come back.
    seat_reset = {"available_seats": Ride.seats_total} if ride.kind == RideKind.offer else {}

    previous = ride.status
    _compare_and_set(
        db,
        ride,
        previous,
        RideStatus.cancelled,
        cancelled_at=utcnow(),
        cancellation_reason=reason,
        cancelled_by=cancelled_by,
        **seat_reset,
    )

    if ride.driver_id is not None:
        _free_driver(db, ride.driver_id, ride.id)

    if ride.kind == RideKind.offer:
        db.execute(
            update(JoinRequest)
            .where(JoinRequest.ride_id == ride.id, JoinRequest.status.in_(LIVE_JOIN_REQUEST_STATUSES))
            .values(
                status=JoinRequestStatus.cancelled,
                response_message="Ride was cancelled.",
                responded_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    add_event(
        db,
        ride.id,
        "status_changed",
        {
            "from": previous.value,
            "to": "cancelled",
            "by_user_id": str(actor.id),
            "cancelled_by": cancelled_by.value,
            "reason": reason,
        },
    )
    _commit(db, ride)
    logger.info("Ride %s cancelled by %s (%s)", ride.id, cancelled_by.value, reason)
    return ride


def _running_average(average: float, count: int, rating: int) -> float:
    return round((average * count + rating) / (count + 1), 1)


# PUBLIC_INTERFACE
def rate_ride(db: Session, ride_id: UUID, actor: User, rating: int, comment: Optional[str] = None) -> Ride:
    """
    Rate the other party of a completed on-demand ride.

    Each side rates once; a second attempt is a conflict.
    """
    if not 1 <= rating <= 5:
        raise ValidationError({"rating": "Rating must be between 1 and 5"})

    ride = get_ride(db, ride_id)
    is_driver = ride.driver_id is not None and ride.driver_id == actor.id
    is_rider = ride.user_id == actor.id and not is_driver
    if not (is_driver or is_rider):
        raise Forbidden("You are not authorized to rate this ride.")
    if ride.kind != RideKind.on_demand:
        raise Conflict("Ratings are only available for on-demand rides.")
    if ride.status != RideStatus.completed:
        raise InvalidStateTransition("Only completed rides can be rated.")

    comment = (comment or "").strip()
    if is_rider:
        rating_col, values = Ride.rating_user_to_driver, {
            "rating_user_to_driver": rating,
            "comment_user_to_driver": comment,
        }
    else:
        rating_col, values = Ride.rating_driver_to_user, {
            "rating_driver_to_user": rating,
            "comment_driver_to_user": comment,
        }

    result = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, rating_col.is_(None))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("You have already rated this ride.")

    if is_rider:
        profile = db.scalar(select(Driver).where(Driver.id == ride.driver_id))
        if profile is not None:
            profile.rating_average = _running_average(profile.rating_average, profile.rating_count, rating)
            profile.rating_count = profile.rating_count + 1
    else:
        rated = db.scalar(select(User).where(User.id == ride.user_id))
        if rated is not None:
            rated.rating_average = _running_average(rated.rating_average, rated.rating_count, rating)
            rated.rating_count = rated.rating_count + 1

    add_event(
        db,
        ride.id,
        "ride_rated",
        {"by_user_id": str(actor.id), "rated_by": "driver" if is_driver else "user", "rating": rating},
    )
    return _commit(db, ride)
