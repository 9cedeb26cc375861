from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.deps import require_admin, require_driver
from src.api.errors import DuplicateKeyError, NotFound, ValidationError
from src.api.models.base import utcnow
from src.api.models.driver import Driver, DriverDocument, VehicleType
from src.api.models.ride import Ride, RideStatus
from src.api.models.user import User
from src.api.schemas.driver import (
    DailyEarnings,
    DriverAvailabilityUpdate,
    DriverDocumentCreate,
    DriverDocumentPublic,
    DriverEarningsResponse,
    DriverLocationUpdate,
    DriverProfileUpsert,
    DriverPublic,
    DriverVehiclePublic,
)
from src.api.services.fares import CURRENCY
from src.api.services.ride_lifecycle import as_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/drivers", tags=["drivers"])

EARNINGS_WINDOW_DAYS = 7


def _strip(value: Optional[str]) -> Optional[str]:
    return value.strip() if value is not None else None


def _document_to_public(doc: DriverDocument) -> DriverDocumentPublic:
    return DriverDocumentPublic(
        id=doc.id,
        type=doc.type,
        file_url=doc.file_url,
        verified=bool(doc.verified),
        uploaded_at=doc.uploaded_at,
    )


def _to_public(d: Driver) -> DriverPublic:
    """Convert ORM Driver row to public schema."""
    return DriverPublic(
        id=d.id,
        name=d.user.name if d.user is not None else None,
        vehicle=DriverVehiclePublic(
            make=d.vehicle_make,
            model=d.vehicle_model,
            year=d.vehicle_year,
            color=d.vehicle_color,
            license_plate=d.license_plate,
            type=d.vehicle_type,
        ),
        license_no=d.license_no,
        license_expiry=d.license_expiry,
        license_verified=bool(d.license_verified),
        rating=float(d.rating_average or 0.0),
        rating_count=int(d.rating_count or 0),
        is_available=bool(d.is_available),
        active_ride_id=d.active_ride_id,
        location_lat=d.location_lat,
        location_lng=d.location_lng,
        completed_rides=int(d.completed_rides or 0),
        documents=[_document_to_public(doc) for doc in d.documents],
        updated_at=d.updated_at,
    )


def _get_or_create_profile(db: Session, user: User) -> Driver:
    """Return the caller's driver row, creating an empty one on first use (onboarding)."""
    driver = db.scalar(select(Driver).where(Driver.id == user.id))
    if not driver:
        driver = Driver(id=user.id)
        db.add(driver)
    return driver


def _save(db: Session, driver: Driver) -> DriverPublic:
    driver.updated_at = utcnow()
    db.commit()
    db.refresh(driver)
    return _to_public(driver)


def _get_profile(db: Session, driver_id: UUID) -> Driver:
    driver = db.scalar(select(Driver).where(Driver.id == driver_id))
    if not driver:
        raise NotFound("Driver profile not found.")
    return driver


def _validate_proximity_args(lat: Optional[float], lng: Optional[float], radius_km: Optional[float]) -> None:
    """Validate that proximity params are provided consistently."""
    any_prox = lat is not None or lng is not None or radius_km is not None
    if not any_prox:
        return
    if lat is None or lng is None or radius_km is None:
        raise ValidationError(
            {"radius_km": "lat, lng, and radius_km must be provided together for proximity filtering."}
        )


def distance_km_haversine(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Haversine distance in km.

    Proximity filtering happens in Python so the schema needs no PostGIS.
    """
    r = 6371.0
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


@router.get(
    "/me",
    response_model=DriverPublic,
    summary="Get current driver's profile",
    description="Return the authenticated driver's driver-profile record.",
    operation_id="drivers_get_me",
)
def get_my_driver_profile(
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverPublic:
    """
    Get the current driver's driver profile.

    Auth:
    - Bearer JWT
    - role must be 'driver'
    """
    return _to_public(_get_profile(db, current_user.id))


@router.put(
    "/me",
    response_model=DriverPublic,
    summary="Create or update driver profile (onboarding)",
    description="Upsert the authenticated driver's profile (vehicle details, license).",
    operation_id="drivers_upsert_me",
)
def upsert_my_driver_profile(
    payload: DriverProfileUpsert,
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverPublic:
    """
    Upsert the current driver's profile.

    Creates a row in drivers table if one doesn't exist yet, otherwise replaces
    the vehicle/license fields. A changed license number needs verifying again.

    Raises:
        DuplicateKeyError: if the license plate is registered to another driver.
    """
    driver = _get_or_create_profile(db, current_user)

    # Apply updates; allow nulls to clear values.
    driver.vehicle_make = _strip(payload.vehicle_make)
    driver.vehicle_model = _strip(payload.vehicle_model)
    driver.vehicle_year = payload.vehicle_year
    driver.vehicle_color = _strip(payload.vehicle_color)
    driver.license_plate = _strip(payload.license_plate).upper() if payload.license_plate else None
    driver.vehicle_type = payload.vehicle_type
    license_no = _strip(payload.license_no)
    if license_no != driver.license_no:
        driver.license_verified = False
    driver.license_no = license_no
    driver.license_expiry = payload.license_expiry

    try:
        return _save(db, driver)
    except IntegrityError:
        db.rollback()
        raise DuplicateKeyError({"license_plate": payload.license_plate})


@router.patch(
    "/me/availability",
    response_model=DriverPublic,
    summary="Update driver availability",
    description="Toggle whether the authenticated driver is available for matching.",
    operation_id="drivers_update_availability",
)
def update_my_availability(
    payload: DriverAvailabilityUpdate,
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverPublic:
    """
    Set driver's availability (is_available).

    Creates driver row if absent (common during onboarding). A driver serving
    an on-demand ride cannot go available until that ride ends.
    """
    driver = _get_or_create_profile(db, current_user)
    if payload.is_available and driver.active_ride_id is not None:
        raise ValidationError({"is_available": "Finish or cancel your current ride before going available."})
    driver.is_available = payload.is_available
    return _save(db, driver)


@router.patch(
    "/me/location",
    response_model=DriverPublic,
    summary="Update driver current location",
    description="Persist the authenticated driver's last known lat/lng and refresh updated_at.",
    operation_id="drivers_update_location",
)
def update_my_location(
    payload: DriverLocationUpdate,
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverPublic:
    """
    Update driver's last known location.

    Note:
    - Location update does not automatically set is_available; clients should
      call availability endpoint separately as needed.
    """
    driver = _get_or_create_profile(db, current_user)
    driver.location_lat = payload.lat
    driver.location_lng = payload.lng
    return _save(db, driver)


@router.post(
    "/me/documents",
    response_model=DriverPublic,
    status_code=201,
    summary="Upload a driver document",
    description="Register an uploaded compliance document; it stays unverified until an admin checks it.",
    operation_id="drivers_add_document",
)
def add_my_document(
    payload: DriverDocumentCreate,
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverPublic:
    driver = _get_or_create_profile(db, current_user)
    db.flush()
    db.add(DriverDocument(driver_id=driver.id, type=payload.type, file_url=payload.file_url.strip()))
    return _save(db, driver)


@router.delete(
    "/me/documents/{document_id}",
    response_model=DriverPublic,
    summary="Remove a driver document",
    operation_id="drivers_remove_document",
)
def remove_my_document(
    document_id: UUID,
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverPublic:
    driver = _get_profile(db, current_user.id)
    doc = db.scalar(
        select(DriverDocument).where(DriverDocument.id == document_id, DriverDocument.driver_id == driver.id)
    )
    if not doc:
        raise NotFound("Document not found.")
    db.delete(doc)
    return _save(db, driver)


@router.get(
    "/me/earnings",
    response_model=DriverEarningsResponse,
    summary="Get current driver's earnings",
    description="Running totals plus per-day earnings for the last 7 days (today included).",
    operation_id="drivers_get_earnings",
)
def get_my_earnings(
    current_user: User = Depends(require_driver),
    db: Session = Depends(get_db),
) -> DriverEarningsResponse:
    driver = _get_profile(db, current_user.id)

    today = utcnow().date()
    first_day = today - timedelta(days=EARNINGS_WINDOW_DAYS - 1)
    rides = db.scalars(
        select(Ride).where(
            Ride.driver_id == current_user.id,
            Ride.status == RideStatus.completed,
            Ride.completed_at.is_not(None),
        )
    ).all()

    amounts: Dict[date, float] = defaultdict(float)
    counts: Dict[date, int] = defaultdict(int)
    for ride in rides:
        day = as_utc(ride.completed_at).date()
        if day < first_day:
            continue
        amounts[day] += ride.actual_fare or 0.0
        counts[day] += 1

    days = [first_day + timedelta(days=i) for i in range(EARNINGS_WINDOW_DAYS)]
    return DriverEarningsResponse(
        currency=CURRENCY,
        total=round(driver.earnings_total or 0.0, 2),
        current_week=round(driver.earnings_current_week or 0.0, 2),
        current_month=round(driver.earnings_current_month or 0.0, 2),
        completed_rides=int(driver.completed_rides or 0),
        last_7_days=[DailyEarnings(day=d, amount=round(amounts[d], 2), rides=counts[d]) for d in days],
    )


@router.get(
    "/available",
    response_model=List[DriverPublic],
    summary="List currently-available drivers",
    description=(
        "Fetch drivers with is_available=true. Optionally filter by vehicle_type and by proximity "
        "using lat/lng/radius_km (Haversine computed server-side)."
    ),
    operation_id="drivers_list_available",
)
def list_available_drivers(
    lat: Optional[float] = Query(default=None, ge=-90, le=90, description="Filter center latitude."),
    lng: Optional[float] = Query(default=None, ge=-180, le=180, description="Filter center longitude."),
    radius_km: Optional[float] = Query(
        default=None,
        gt=0,
        le=200,
        description="Radius in kilometers (max 200km) for proximity filtering.",
    ),
    vehicle_type: Optional[VehicleType] = Query(default=None, description="Only drivers of this class."),
    db: Session = Depends(get_db),
) -> List[DriverPublic]:
    """
    List available drivers for matching.

    This endpoint is intentionally not restricted to drivers; riders/matching
    services may call it. Results are ordered nearest first when proximity
    filtering is used.
    """
    _validate_proximity_args(lat, lng, radius_km)

    stmt = select(Driver).where(Driver.is_available.is_(True))
    if vehicle_type is not None:
        stmt = stmt.where(Driver.vehicle_type == vehicle_type)

    # If proximity filtering requested, we require non-null coordinates.
    if lat is not None and lng is not None and radius_km is not None:
        stmt = stmt.where(and_(Driver.location_lat.is_not(None), Driver.location_lng.is_not(None)))

    drivers = list(db.scalars(stmt).all())

    if lat is not None and lng is not None and radius_km is not None:
        nearby: list[tuple[float, Driver]] = []
        for d in drivers:
            dist = distance_km_haversine(lat, lng, float(d.location_lat), float(d.location_lng))
            if dist <= radius_km:
                nearby.append((dist, d))
        drivers = [d for _, d in sorted(nearby, key=lambda pair: pair[0])]

    return [_to_public(d) for d in drivers]


@router.patch(
    "/{driver_id}/documents/{document_id}/verify",
    response_model=DriverPublic,
    summary="Verify a driver document (admin)",
    operation_id="drivers_verify_document",
)
def verify_document(
    driver_id: UUID,
    document_id: UUID,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DriverPublic:
    """
    Mark one of a driver's documents as verified.

    Auth:
    - role must be 'admin'
    """
    driver = _get_profile(db, driver_id)
    doc = db.scalar(
        select(DriverDocument).where(DriverDocument.id == document_id, DriverDocument.driver_id == driver.id)
    )
    if not doc:
        raise NotFound("Document not found.")
    doc.verified = True
    logger.info("Admin %s verified document %s of driver %s", admin.id, doc.id, driver.id)
    return _save(db, driver)


@router.patch(
    "/{driver_id}/license/verify",
    response_model=DriverPublic,
    summary="Verify a driver's license (admin)",
    operation_id="drivers_verify_license",
)
def verify_license(
    driver_id: UUID,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DriverPublic:
    """
    Mark a driver's license as verified.

    Auth:
    - role must be 'admin'

    Raises:
        ValidationError: if the driver has not entered a license number.
    """
    driver = _get_profile(db, driver_id)
    if not driver.license_no:
        raise ValidationError({"license_no": "Driver has not provided a license number."})
    driver.license_verified = True
    logger.info("Admin %s verified the license of driver %s", admin.id, driver.id)
    return _save(db, driver)
