from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.api.models.driver import VehicleType
from src.api.models.join_request import JoinRequestStatus
from src.api.models.ride import CancelledBy, PaymentMethodKind, PaymentStatus, RideKind, RideStatus


class Place(BaseModel):
    address: str = Field(..., min_length=1, max_length=500, description="Human-readable address.")
    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees.")
    lng: float = Field(..., ge=-180, le=180, description="Longitude in degrees.")


class VehicleInfo(BaseModel):
    model: Optional[str] = Field(default=None, max_length=100)
    color: Optional[str] = Field(default=None, max_length=50)
    license_plate: Optional[str] = Field(default=None, max_length=20)


class RideRequestCreate(BaseModel):
    pickup: Place = Field(..., description="Pickup location.")
    destination: Place = Field(..., description="Destination location.")
    ride_type: VehicleType = Field(default=VehicleType.economy, description="Requested vehicle class.")
    estimated_distance_km: float = Field(..., ge=0, le=2000, description="Route distance estimate (km).")
    estimated_duration_min: float = Field(..., ge=0, le=2880, description="Route duration estimate (minutes).")
    payment_method: PaymentMethodKind = Field(default=PaymentMethodKind.credit_card)


class RideOfferCreate(BaseModel):
    pickup: Place = Field(..., description="Departure point.")
    destination: Place = Field(..., description="Arrival point.")
    departure_city: Optional[str] = Field(default=None, max_length=100)
    destination_city: Optional[str] = Field(default=None, max_length=100)
    departure_time: datetime = Field(..., description="Scheduled departure; must be in the future.")
    seats: int = Field(..., gt=0, le=8, description="Seats offered to passengers.")
    price_per_seat: float = Field(..., ge=0, description="Price charged per booked seat.")
    estimated_distance_km: Optional[float] = Field(default=None, ge=0, le=2000)
    estimated_duration_min: Optional[float] = Field(default=None, ge=0, le=2880)
    vehicle: Optional[VehicleInfo] = Field(default=None, description="Defaults to the driver profile vehicle.")
    notes: Optional[str] = Field(default=None, max_length=1000)


class RideCancelRequest(BaseModel):
    reason: str = Field(..., max_length=500, description="Why the ride is cancelled (required).")


class RideRateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5, description="Rating from 1 to 5.")
    comment: Optional[str] = Field(default=None, max_length=1000)


class JoinRideRequest(BaseModel):
    seats: int = Field(default=1, gt=0, le=8, description="Seats requested.")
    message: Optional[str] = Field(default=None, max_length=500)


class JoinRequestResponse(BaseModel):
    message: Optional[str] = Field(default=None, max_length=500, description="Optional note to the passenger.")


class FareBreakdownPublic(BaseModel):
    base_fare: float
    distance_fare: float
    time_fare: float
    surge: float
    tax: float


class FarePublic(BaseModel):
    estimated_fare: float
    actual_fare: Optional[float] = None
    currency: str
    breakdown: FareBreakdownPublic


class FareEstimateResponse(BaseModel):
    ride_type: VehicleType
    distance_km: float
    currency: str
    total: float
    breakdown: FareBreakdownPublic


class SeatsPublic(BaseModel):
    total: int
    available: int


class RatingPublic(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None


class PassengerPublic(BaseModel):
    id: UUID
    name: str
    phone_number: Optional[str] = None


class JoinRequestPublic(BaseModel):
    id: UUID = Field(..., description="Join request id.")
    ride_id: UUID = Field(..., description="Offer the request targets.")
    passenger: PassengerPublic
    seats_required: int
    status: JoinRequestStatus
    fare: float
    message: Optional[str] = None
    response_message: Optional[str] = None
    requested_at: datetime
    responded_at: Optional[datetime] = None


class RidePublic(BaseModel):
    id: UUID = Field(..., description="Ride id.")
    kind: RideKind = Field(..., description="on_demand request or driver offer.")
    user_id: UUID = Field(..., description="User who requested or published the ride.")
    driver_id: Optional[UUID] = Field(default=None, description="Assigned driver / offer owner (nullable).")

    status: RideStatus = Field(..., description="Canonical ride status.")
    status_label: str = Field(..., description="Display label for the status.")

    pickup: Place
    destination: Place
    departure_city: Optional[str] = None
    destination_city: Optional[str] = None

    ride_type: VehicleType
    estimated_distance_km: Optional[float] = None
    estimated_duration_min: Optional[float] = None
    fare: FarePublic
    payment_method: PaymentMethodKind
    payment_status: PaymentStatus

    seats: Optional[SeatsPublic] = Field(default=None, description="Seat accounting (offers only).")
    vehicle: Optional[VehicleInfo] = None
    notes: Optional[str] = None

    requested_at: datetime
    departure_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    duration_min: Optional[int] = None

    user_to_driver: RatingPublic = Field(default_factory=RatingPublic)
    driver_to_user: RatingPublic = Field(default_factory=RatingPublic)

    join_requests: List[JoinRequestPublic] = Field(
        default_factory=list,
        description="Requests visible to the viewer: all for the owner, own ones for passengers.",
    )

    created_at: datetime
    updated_at: datetime


class JoinRideResponse(BaseModel):
    join_request: JoinRequestPublic
    ride: RidePublic


class MyJoinRequestPublic(JoinRequestPublic):
    ride: RidePublic


class RideEventPublic(BaseModel):
    id: UUID = Field(..., description="Event id.")
    ride_id: UUID = Field(..., description="Ride id.")
    event_type: str = Field(..., description="Event type string.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload JSON.")
    created_at: datetime = Field(..., description="When event was created.")


class RideHistoryResponse(BaseModel):
    ride_id: UUID = Field(..., description="Ride id.")
    events: List[RideEventPublic] = Field(..., description="Ordered list of ride events (oldest -> newest).")
