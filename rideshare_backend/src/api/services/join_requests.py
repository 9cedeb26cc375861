"""
Seat booking on ride offers.

Seat counts only change through conditional UPDATEs:

- accept:  available_seats = available_seats - n  WHERE available_seats >= n
- release: available_seats = available_seats + n  (reject/cancel of an accepted request)

and every request status change is keyed on the status the caller observed, so
two concurrent accepts of one request (or of the last seats) cannot both win.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.errors import (
    CapacityExceeded,
    Conflict,
    Forbidden,
    InsufficientSeats,
    InvalidStateTransition,
    NotFound,
)
from src.api.models.base import utcnow
from src.api.models.join_request import LIVE_JOIN_REQUEST_STATUSES, JoinRequest, JoinRequestStatus
from src.api.models.ride import Ride, RideKind, RideStatus
from src.api.models.user import User
from src.api.services.ride_lifecycle import add_event, get_ride

logger = logging.getLogger(__name__)

# Offers accept new passengers until the driver reaches the pickup point.
JOINABLE_STATUSES = (RideStatus.requested, RideStatus.accepted)
# Passengers may drop out until the ride starts.
CANCELLABLE_RIDE_STATUSES = (RideStatus.requested, RideStatus.accepted, RideStatus.arrived)

DUPLICATE_REQUEST_MESSAGE = "You already have an active request for this ride."


def get_join_request(db: Session, request_id: UUID) -> JoinRequest:
    req = db.scalar(select(JoinRequest).where(JoinRequest.id == request_id))
    if not req:
        raise NotFound("Join request not found.")
    return req


def _require_owner(ride: Ride, actor: User) -> None:
    if ride.driver_id != actor.id:
        raise Forbidden("Only the ride owner can respond to join requests.")


def _set_request_status(
    db: Session,
    req: JoinRequest,
    expected: JoinRequestStatus,
    new: JoinRequestStatus,
    response_message: Optional[str] = None,
) -> None:
    values = {"status": new, "responded_at": utcnow()}
    if response_message is not None:
        values["response_message"] = response_message
    result = db.execute(
        update(JoinRequest)
        .where(JoinRequest.id == req.id, JoinRequest.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateTransition(f"Join request is no longer {expected.value}.")


def live_request_of(db: Session, ride_id: UUID, passenger_id: UUID) -> Optional[JoinRequest]:
    return db.scalar(
        select(JoinRequest).where(
            JoinRequest.ride_id == ride_id,
            JoinRequest.passenger_id == passenger_id,
            JoinRequest.status.in_(LIVE_JOIN_REQUEST_STATUSES),
        )
    )


def _release_seats(db: Session, ride_id: UUID, seats: int) -> None:
    db.execute(
        update(Ride)
        .where(Ride.id == ride_id)
        .values(available_seats=Ride.available_seats + seats, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


# PUBLIC_INTERFACE
def join_ride(db: Session, offer_id: UUID, actor: User, seats: int, message: Optional[str] = None) -> JoinRequest:
    """
    Ask for `seats` seats on an offer; creates a pending request.

    Raises:
        CapacityExceeded: unless 0 < seats <= available_seats.
        Conflict: if the passenger already has a live request on the offer.
    """
    ride = get_ride(db, offer_id)
    if ride.kind != RideKind.offer:
        raise Conflict("Only ride offers can be joined.")
    if ride.status not in JOINABLE_STATUSES:
        raise InvalidStateTransition(f"Cannot join a ride with status: {ride.status.value}")
    if ride.driver_id == actor.id:
        raise Forbidden("You cannot join your own ride offer.")

    available = ride.available_seats or 0
    if seats <= 0 or seats > available:
        raise CapacityExceeded(f"Requested {seats} seat(s) but only {available} available.")

    if live_request_of(db, ride.id, actor.id):
        raise Conflict(DUPLICATE_REQUEST_MESSAGE)

    req = JoinRequest(
        ride_id=ride.id,
        passenger_id=actor.id,
        seats_required=seats,
        status=JoinRequestStatus.pending,
        fare=round(ride.estimated_fare * seats, 2),
        message=(message or "").strip() or None,
    )
    db.add(req)
    try:
        db.flush()
    except IntegrityError:
        # A concurrent join from the same passenger won the unique index.
        db.rollback()
        raise Conflict(DUPLICATE_REQUEST_MESSAGE)
    add_event(db, ride.id, "join_requested", {"request_id": str(req.id), "passenger_id": str(actor.id), "seats": seats})
    db.commit()
    db.refresh(req)
    logger.info("Passenger %s requested %d seat(s) on offer %s", actor.id, seats, ride.id)
    return req


# PUBLIC_INTERFACE
def accept_join_request(db: Session, request_id: UUID, actor: User) -> Ride:
    """
    pending -> accepted, taking the seats from the offer in the same transaction.

    Raises:
        InvalidStateTransition: if the request is no longer pending.
        InsufficientSeats: if the offer no longer has enough seats.
    """
    req = get_join_request(db, request_id)
    ride = req.ride
    _require_owner(ride, actor)
    if ride.status not in JOINABLE_STATUSES:
        raise InvalidStateTransition(f"Cannot accept requests on a ride with status: {ride.status.value}")
    if req.status != JoinRequestStatus.pending:
        raise InvalidStateTransition(f"Join request is already {req.status.value}.")

    seats = req.seats_required
    _set_request_status(db, req, JoinRequestStatus.pending, JoinRequestStatus.accepted)

    result = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.available_seats >= seats)
        .values(available_seats=Ride.available_seats - seats, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InsufficientSeats(f"Not enough seats left on this ride for {seats} more passenger(s).")

    add_event(db, ride.id, "join_accepted", {"request_id": str(req.id), "seats": seats})
    db.commit()
    db.refresh(ride)
    logger.info("Join request %s accepted; %s seat(s) left on %s", req.id, ride.available_seats, ride.id)
    return ride


# PUBLIC_INTERFACE
def reject_join_request(db: Session, request_id: UUID, actor: User, message: Optional[str] = None) -> Ride:
    """
    Owner declines a request. Pending requests cost no seats; rejecting an
    accepted request gives its seats back.
    """
    req = get_join_request(db, request_id)
    ride = req.ride
    _require_owner(ride, actor)
    previous = req.status
    if previous not in LIVE_JOIN_REQUEST_STATUSES:
        raise InvalidStateTransition(f"Join request is already {previous.value}.")
    if previous == JoinRequestStatus.accepted and ride.status not in CANCELLABLE_RIDE_STATUSES:
        raise InvalidStateTransition("Cannot remove a passenger once the ride has started.")

    _set_request_status(db, req, previous, JoinRequestStatus.rejected, (message or "").strip() or None)
    if previous == JoinRequestStatus.accepted:
        _release_seats(db, ride.id, req.seats_required)

    add_event(
        db,
        ride.id,
        "join_rejected",
        {"request_id": str(req.id), "previous_status": previous.value, "seats": req.seats_required},
    )
    db.commit()
    db.refresh(ride)
    logger.info("Join request %s rejected (was %s)", req.id, previous.value)
    return ride


# PUBLIC_INTERFACE
def cancel_join_request(db: Session, request_id: UUID, actor: User) -> Ride:
    """Passenger withdraws their own request; accepted seats are given back."""
    req = get_join_request(db, request_id)
    ride = req.ride
    if req.passenger_id != actor.id:
        raise Forbidden("You can only cancel your own join requests.")
    previous = req.status
    if previous not in LIVE_JOIN_REQUEST_STATUSES:
        raise InvalidStateTransition(f"Cannot cancel a join request that is {previous.value}.")
    if ride.status not in CANCELLABLE_RIDE_STATUSES:
        raise InvalidStateTransition("Cannot cancel a join request once the ride has started.")

    _set_request_status(db, req, previous, JoinRequestStatus.cancelled)
    if previous == JoinRequestStatus.accepted:
        _release_seats(db, ride.id, req.seats_required)

    add_event(
        db,
        ride.id,
        "join_cancelled",
        {"request_id": str(req.id), "previous_status": previous.value, "seats": req.seats_required},
    )
    db.commit()
    db.refresh(ride)
    logger.info("Join request %s cancelled by passenger (was %s)", req.id, previous.value)
    return ride
