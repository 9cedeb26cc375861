from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.deps import get_current_user, require_driver
from src.api.errors import CastError, Forbidden
from src.api.models.base import utcnow
from src.api.models.driver import VehicleType
from src.api.models.join_request import JoinRequest, JoinRequestStatus
from src.api.models.ride import Ride, RideEvent, RideKind, RideStatus
from src.api.models.user import User, UserRole
from src.api.realtime import publish
from src.api.routers.drivers import distance_km_haversine
from src.api.schemas.ride import (
    FareBreakdownPublic,
    FareEstimateResponse,
    FarePublic,
    JoinRequestPublic,
    JoinRequestResponse,
    JoinRideRequest,
    JoinRideResponse,
    MyJoinRequestPublic,
    PassengerPublic,
    Place,
    RatingPublic,
    RideCancelRequest,
    RideEventPublic,
    RideHistoryResponse,
    RideOfferCreate,
    RidePublic,
    RideRateRequest,
    RideRequestCreate,
    SeatsPublic,
    VehicleInfo,
)
from src.api.services import join_requests as bookings
from src.api.services import ride_lifecycle as lifecycle
from src.api.services.fares import CURRENCY, calculate_fare

router = APIRouter(prefix="/rides", tags=["rides"])


def _join_request_to_public(req: JoinRequest) -> JoinRequestPublic:
    passenger = req.passenger
    return JoinRequestPublic(
        id=req.id,
        ride_id=req.ride_id,
        passenger=PassengerPublic(id=passenger.id, name=passenger.name, phone_number=passenger.phone_number),
        seats_required=req.seats_required,
        status=req.status,
        fare=req.fare,
        message=req.message,
        response_message=req.response_message,
        requested_at=req.requested_at,
        responded_at=req.responded_at,
    )


def _visible_join_requests(ride: Ride, viewer: Optional[User]) -> List[JoinRequest]:
    """The owner and admins see every request; passengers see only their own."""
    if viewer is None:
        return []
    if ride.driver_id == viewer.id or viewer.role == UserRole.admin:
        return list(ride.join_requests)
    return [r for r in ride.join_requests if r.passenger_id == viewer.id]


def _to_public(ride: Ride, viewer: Optional[User] = None) -> RidePublic:
    """Convert ORM Ride to the response shape seen by `viewer`."""
    vehicle = None
    if ride.vehicle_model or ride.vehicle_color or ride.vehicle_license_plate:
        vehicle = VehicleInfo(
            model=ride.vehicle_model,
            color=ride.vehicle_color,
            license_plate=ride.vehicle_license_plate,
        )
    seat_info = None
    if ride.kind == RideKind.offer and ride.seats_total is not None:
        seat_info = SeatsPublic(total=ride.seats_total, available=ride.available_seats or 0)

    return RidePublic(
        id=ride.id,
        kind=ride.kind,
        user_id=ride.user_id,
        driver_id=ride.driver_id,
        status=ride.status,
        status_label=ride.status.label,
        pickup=Place(address=ride.pickup_address, lat=ride.pickup_lat, lng=ride.pickup_lng),
        destination=Place(address=ride.dest_address, lat=ride.dest_lat, lng=ride.dest_lng),
        departure_city=ride.departure_city,
        destination_city=ride.destination_city,
        ride_type=ride.ride_type,
        estimated_distance_km=ride.estimated_distance_km,
        estimated_duration_min=ride.estimated_duration_min,
        fare=FarePublic(
            estimated_fare=ride.estimated_fare,
            actual_fare=ride.actual_fare,
            currency=ride.currency,
            breakdown=FareBreakdownPublic(
                base_fare=ride.fare_base,
                distance_fare=ride.fare_distance,
                time_fare=ride.fare_time,
                surge=ride.fare_surge,
                tax=ride.fare_tax,
            ),
        ),
        payment_method=ride.payment_method,
        payment_status=ride.payment_status,
        seats=seat_info,
        vehicle=vehicle,
        notes=ride.notes,
        requested_at=ride.requested_at,
        departure_time=ride.departure_time,
        started_at=ride.started_at,
        completed_at=ride.completed_at,
        cancelled_at=ride.cancelled_at,
        cancellation_reason=ride.cancellation_reason,
        cancelled_by=ride.cancelled_by,
        duration_min=ride.duration_min,
        user_to_driver=RatingPublic(rating=ride.rating_user_to_driver, comment=ride.comment_user_to_driver),
        driver_to_user=RatingPublic(rating=ride.rating_driver_to_user, comment=ride.comment_driver_to_user),
        join_requests=[_join_request_to_public(r) for r in _visible_join_requests(ride, viewer)],
        created_at=ride.created_at,
        updated_at=ride.updated_at,
    )


def _to_event_public(ev: RideEvent) -> RideEventPublic:
    """Convert ORM RideEvent to public schema."""
    return RideEventPublic(
        id=ev.id,
        ride_id=ev.ride_id,
        event_type=ev.event_type,
        payload=ev.payload or {},
        created_at=ev.created_at,
    )


def _parse_status(value: Optional[str]) -> Optional[RideStatus]:
    if value is None:
        return None
    try:
        return RideStatus.parse(value)
    except ValueError:
        raise CastError("status", value)


def _get_viewable_ride(db: Session, ride_id: UUID, user: User) -> Ride:
    ride = lifecycle.get_ride(db, ride_id)
    if not lifecycle.can_view(user, ride):
        raise Forbidden("Not allowed to view this ride.")
    return ride


def _publish_ride(background_tasks: BackgroundTasks, ride: Ride) -> None:
    """Queue a ride_status push for subscribers; join requests are left out of the broadcast copy."""
    snapshot = _to_public(ride).model_dump(mode="json")
    background_tasks.add_task(publish, ride.id, {"type": "ride_status", "ride": snapshot})


def _publish_join_request(background_tasks: BackgroundTasks, req: JoinRequest, ride: Ride) -> None:
    background_tasks.add_task(
        publish,
        ride.id,
        {
            "type": "join_request",
            "ride_id": str(ride.id),
            "request_id": str(req.id),
            "status": req.status.value,
            "seats_required": req.seats_required,
            "available_seats": ride.available_seats,
        },
    )


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


@router.get(
    "/user-rides",
    response_model=List[RidePublic],
    summary="List rides created by the current user",
    description="On-demand rides the caller requested (and offers they published), newest first.",
    operation_id="rides_list_user_rides",
)
def list_user_rides(
    status_filter: Optional[str] = Query(default=None, alias="status", description="Optional ride status filter."),
    limit: int = Query(default=50, ge=1, le=200, description="Max rides to return."),
    offset: int = Query(default=0, ge=0, description="Offset for pagination."),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[RidePublic]:
    """
    Auth:
    - Bearer JWT required

    The status filter accepts canonical names and legacy ones
    (searching_driver, driver_assigned, driver_arrived).
    """
    stmt = select(Ride).where(Ride.user_id == current_user.id)
    wanted = _parse_status(status_filter)
    if wanted is not None:
        stmt = stmt.where(Ride.status == wanted)
    stmt = stmt.order_by(desc(Ride.created_at)).limit(limit).offset(offset)
    return [_to_public(r, current_user) for r in db.scalars(stmt).all()]


@router.get(
    "/driver-rides",
    response_model=List[RidePublic],
    summary="List rides driven by the current driver",
    operation_id="rides_list_driver_rides",
)
def list_driver_rides(
    status_filter: Optional[str] = Query(default=None, alias="status", description="Optional ride status filter."),
    limit: int = Query(default=50, ge=1, le=200, description="Max rides to return."),
    offset: int = Query(default=0, ge=0, description="Offset for pagination."),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_driver),
) -> List[RidePublic]:
    """
    Auth:
    - role must be 'driver'
    """
    stmt = select(Ride).where(Ride.driver_id == current_user.id)
    wanted = _parse_status(status_filter)
    if wanted is not None:
        stmt = stmt.where(Ride.status == wanted)
    stmt = stmt.order_by(desc(Ride.created_at)).limit(limit).offset(offset)
    return [_to_public(r, current_user) for r in db.scalars(stmt).all()]


@router.get(
    "/available",
    response_model=List[RidePublic],
    summary="List open ride requests",
    description="Unassigned on-demand requests, optionally limited to pickups within radius_km of lat/lng.",
    operation_id="rides_list_available",
)
def list_available_rides(
    lat: Optional[float] = Query(default=None, ge=-90, le=90),
    lng: Optional[float] = Query(default=None, ge=-180, le=180),
    radius_km: float = Query(default=10.0, gt=0, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_driver),
) -> List[RidePublic]:
    """
    Auth:
    - role must be 'driver'
    """
    stmt = (
        select(Ride)
        .where(
            Ride.kind == RideKind.on_demand,
            Ride.status == RideStatus.requested,
            Ride.driver_id.is_(None),
        )
        .order_by(Ride.created_at)
    )
    rides = list(db.scalars(stmt).all())
    if lat is not None and lng is not None:
        rides = [r for r in rides if distance_km_haversine(lat, lng, r.pickup_lat, r.pickup_lng) <= radius_km]
    return [_to_public(r, current_user) for r in rides]


@router.get(
    "/offers",
    response_model=List[RidePublic],
    summary="Search ride offers",
    description=(
        "Open offers with free seats and a departure in the future. Filters: departure_date, "
        "seats (minimum free seats), departure_city, destination_city (case-insensitive substring)."
    ),
    operation_id="rides_list_offers",
)
def list_offers(
    departure_date: Optional[date] = Query(default=None, description="Departure day (UTC)."),
    seats_wanted: Optional[int] = Query(default=None, alias="seats", gt=0, le=8, description="Minimum free seats."),
    departure_city: Optional[str] = Query(default=None, max_length=100),
    destination_city: Optional[str] = Query(default=None, max_length=100),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[RidePublic]:
    stmt = select(Ride).where(
        Ride.kind == RideKind.offer,
        Ride.status.in_(bookings.JOINABLE_STATUSES),
        Ride.available_seats >= (seats_wanted or 1),
        Ride.departure_time > utcnow(),
    )
    if departure_date is not None:
        start, end = _day_bounds(departure_date)
        stmt = stmt.where(Ride.departure_time >= start, Ride.departure_time < end)
    if departure_city:
        stmt = stmt.where(func.lower(Ride.departure_city).contains(departure_city.strip().lower()))
    if destination_city:
        stmt = stmt.where(func.lower(Ride.destination_city).contains(destination_city.strip().lower()))

    stmt = stmt.order_by(Ride.departure_time).limit(limit).offset(offset)
    return [_to_public(r, current_user) for r in db.scalars(stmt).all()]


@router.get(
    "/offers/my",
    response_model=List[RidePublic],
    summary="List the current driver's offers",
    operation_id="rides_list_my_offers",
)
def list_my_offers(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_driver),
) -> List[RidePublic]:
    stmt = (
        select(Ride)
        .where(Ride.kind == RideKind.offer, Ride.driver_id == current_user.id)
        .order_by(desc(Ride.departure_time))
    )
    return [_to_public(r, current_user) for r in db.scalars(stmt).all()]


@router.get(
    "/my-requested-rides",
    response_model=List[MyJoinRequestPublic],
    summary="List the current user's join requests",
    description="Every join request the caller made, newest first, each with its ride.",
    operation_id="rides_list_my_join_requests",
)
def list_my_requested_rides(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[MyJoinRequestPublic]:
    reqs = db.scalars(
        select(JoinRequest)
        .where(JoinRequest.passenger_id == current_user.id)
        .order_by(desc(JoinRequest.requested_at))
    ).all()
    return [
        MyJoinRequestPublic(
            **_join_request_to_public(r).model_dump(),
            ride=_to_public(r.ride, current_user),
        )
        for r in reqs
    ]


@router.get(
    "/fare-estimate",
    response_model=FareEstimateResponse,
    summary="Estimate a fare",
    operation_id="rides_fare_estimate",
)
def fare_estimate(
    distance_km: float = Query(..., ge=0, le=2000, description="Route distance (km)."),
    ride_type: VehicleType = Query(default=VehicleType.economy),
    _current_user: User = Depends(get_current_user),
) -> FareEstimateResponse:
    fare = calculate_fare(distance_km, ride_type)
    return FareEstimateResponse(
        ride_type=ride_type,
        distance_km=distance_km,
        currency=CURRENCY,
        total=fare.total,
        breakdown=FareBreakdownPublic(
            base_fare=fare.base_fare,
            distance_fare=fare.distance_fare,
            time_fare=fare.time_fare,
            surge=fare.surge,
            tax=fare.tax,
        ),
    )


@router.post(
    "",
    response_model=RidePublic,
    status_code=status.HTTP_201_CREATED,
    summary="Request a ride",
    description="Create an on-demand ride request (status=requested) with an estimated fare.",
    operation_id="rides_request",
)
def request_ride(
    payload: RideRequestCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    """
    Auth:
    - role must be 'rider'
    """
    ride = lifecycle.request_ride(db, current_user, payload)
    return _to_public(ride, current_user)


@router.post(
    "/offers",
    response_model=RidePublic,
    status_code=status.HTTP_201_CREATED,
    summary="Offer a ride",
    description="Publish a scheduled ride with seats passengers can ask to join.",
    operation_id="rides_create_offer",
)
def create_offer(
    payload: RideOfferCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_driver),
) -> RidePublic:
    ride = lifecycle.create_offer(db, current_user, payload)
    return _to_public(ride, current_user)


@router.get(
    "/offers/{ride_id}/requests",
    response_model=List[JoinRequestPublic],
    summary="List join requests of an offer",
    operation_id="rides_list_offer_requests",
)
def list_offer_requests(
    ride_id: UUID,
    status_filter: Optional[JoinRequestStatus] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[JoinRequestPublic]:
    """
    Authorization:
    - offer owner (or admin) only
    """
    ride = lifecycle.get_ride(db, ride_id)
    if ride.driver_id != current_user.id and current_user.role != UserRole.admin:
        raise Forbidden("Only the ride owner can see its join requests.")
    reqs = [r for r in ride.join_requests if status_filter is None or r.status == status_filter]
    return [_join_request_to_public(r) for r in reqs]


def _join(
    ride_id: UUID,
    payload: Optional[JoinRideRequest],
    background_tasks: BackgroundTasks,
    db: Session,
    current_user: User,
) -> JoinRideResponse:
    payload = payload or JoinRideRequest()
    req = bookings.join_ride(db, ride_id, current_user, payload.seats, payload.message)
    ride = lifecycle.get_ride(db, ride_id)
    _publish_join_request(background_tasks, req, ride)
    return JoinRideResponse(join_request=_join_request_to_public(req), ride=_to_public(ride, current_user))


@router.post(
    "/offers/{ride_id}/join",
    response_model=JoinRideResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ask to join a ride offer",
    description="Create a pending join request for `seats` seats (default 1).",
    operation_id="rides_join_offer",
)
def join_offer(
    ride_id: UUID,
    background_tasks: BackgroundTasks,
    payload: Optional[JoinRideRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JoinRideResponse:
    return _join(ride_id, payload, background_tasks, db, current_user)


@router.post(
    "/join-requests/{request_id}/accept",
    response_model=RidePublic,
    summary="Accept a join request",
    description="Owner accepts a pending request; its seats are taken from the offer atomically.",
    operation_id="rides_accept_join_request",
)
def accept_join_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    ride = bookings.accept_join_request(db, request_id, current_user)
    _publish_join_request(background_tasks, bookings.get_join_request(db, request_id), ride)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.post(
    "/join-requests/{request_id}/reject",
    response_model=RidePublic,
    summary="Reject a join request",
    description="Owner declines a pending or accepted request; accepted seats are given back.",
    operation_id="rides_reject_join_request",
)
def reject_join_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    payload: Optional[JoinRequestResponse] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    message = payload.message if payload else None
    ride = bookings.reject_join_request(db, request_id, current_user, message)
    _publish_join_request(background_tasks, bookings.get_join_request(db, request_id), ride)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


def _cancel_request(
    request_id: UUID, background_tasks: BackgroundTasks, db: Session, current_user: User
) -> RidePublic:
    ride = bookings.cancel_join_request(db, request_id, current_user)
    _publish_join_request(background_tasks, bookings.get_join_request(db, request_id), ride)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.post(
    "/join-requests/{request_id}/cancel",
    response_model=RidePublic,
    summary="Cancel my join request",
    description="Passenger withdraws a pending or accepted request; accepted seats are given back.",
    operation_id="rides_cancel_join_request",
)
def cancel_join_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    return _cancel_request(request_id, background_tasks, db, current_user)


@router.delete(
    "/requests/{request_id}",
    response_model=RidePublic,
    summary="Cancel my join request",
    description="Same as POST /rides/join-requests/{request_id}/cancel.",
    operation_id="rides_delete_join_request",
)
def delete_join_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    return _cancel_request(request_id, background_tasks, db, current_user)


@router.get(
    "/{ride_id}",
    response_model=RidePublic,
    summary="Get ride by id",
    description="Return ride details if the current user may see the ride.",
    operation_id="rides_get_by_id",
)
def get_ride(
    ride_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    """
    Get ride details.

    Auth:
    - Bearer JWT required

    Authorization:
    - requester, driver, joined passengers and admins; anyone for open offers;
      drivers for unassigned requests
    """
    return _to_public(_get_viewable_ride(db, ride_id, current_user), current_user)


@router.get(
    "/{ride_id}/history",
    response_model=RideHistoryResponse,
    summary="Get ride event history",
    description="Return ride_events for a ride (oldest to newest) if authorized.",
    operation_id="rides_get_history",
)
def get_ride_history(
    ride_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RideHistoryResponse:
    _get_viewable_ride(db, ride_id, current_user)
    events = list(
        db.scalars(
            select(RideEvent).where(RideEvent.ride_id == ride_id).order_by(RideEvent.created_at.asc())
        ).all()
    )
    return RideHistoryResponse(ride_id=ride_id, events=[_to_event_public(e) for e in events])


@router.post(
    "/{ride_id}/accept",
    response_model=RidePublic,
    summary="Accept a ride",
    description="Driver takes an unassigned on-demand request, or the owner confirms their offer.",
    operation_id="rides_accept",
)
def accept_ride(
    ride_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    ride = lifecycle.accept_ride(db, ride_id, current_user)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.post(
    "/{ride_id}/request",
    response_model=JoinRideResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Ask to join a ride offer",
    description="Same as POST /rides/offers/{ride_id}/join.",
    operation_id="rides_request_seat",
)
def request_seat(
    ride_id: UUID,
    background_tasks: BackgroundTasks,
    payload: Optional[JoinRideRequest] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> JoinRideResponse:
    return _join(ride_id, payload, background_tasks, db, current_user)


@router.patch(
    "/{ride_id}/driver-arrived",
    response_model=RidePublic,
    summary="Mark driver arrived",
    operation_id="rides_driver_arrived",
)
def driver_arrived(
    ride_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    ride = lifecycle.driver_arrived(db, ride_id, current_user)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.patch(
    "/{ride_id}/start",
    response_model=RidePublic,
    summary="Start a ride",
    operation_id="rides_start",
)
def start_ride(
    ride_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    ride = lifecycle.start_ride(db, ride_id, current_user)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.patch(
    "/{ride_id}/complete",
    response_model=RidePublic,
    summary="Complete a ride",
    description="Fixes the actual fare, marks payment completed and credits the driver.",
    operation_id="rides_complete",
)
def complete_ride(
    ride_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    ride = lifecycle.complete_ride(db, ride_id, current_user)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.patch(
    "/{ride_id}/cancel",
    response_model=RidePublic,
    summary="Cancel a ride",
    description="Cancel a non-terminal ride. A reason is required.",
    operation_id="rides_cancel",
)
def cancel_ride(
    ride_id: UUID,
    payload: RideCancelRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    """
    Authorization:
    - requester, assigned driver / offer owner, or admin

    Errors:
    - 409 if the ride is already completed or cancelled
    """
    ride = lifecycle.cancel_ride(db, ride_id, current_user, payload.reason)
    _publish_ride(background_tasks, ride)
    return _to_public(ride, current_user)


@router.post(
    "/{ride_id}/rate",
    response_model=RidePublic,
    summary="Rate a completed ride",
    description="The rider rates the driver or the driver rates the rider; once each.",
    operation_id="rides_rate",
)
def rate_ride(
    ride_id: UUID,
    payload: RideRateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RidePublic:
    ride = lifecycle.rate_ride(db, ride_id, current_user, payload.rating, payload.comment)
    return _to_public(ride, current_user)
