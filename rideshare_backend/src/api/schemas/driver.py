from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.api.models.driver import DocumentType, VehicleType


class DriverProfileUpsert(BaseModel):
    vehicle_make: Optional[str] = Field(default=None, max_length=100, description="Vehicle manufacturer.")
    vehicle_model: Optional[str] = Field(default=None, max_length=100, description="Vehicle model.")
    vehicle_year: Optional[int] = Field(default=None, ge=1950, le=2100, description="Model year.")
    vehicle_color: Optional[str] = Field(default=None, max_length=50, description="Vehicle color.")
    license_plate: Optional[str] = Field(default=None, max_length=20, description="Plate number (unique).")
    vehicle_type: VehicleType = Field(default=VehicleType.economy, description="Service class offered.")
    license_no: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Driver license number (freeform).",
    )
    license_expiry: Optional[date] = Field(default=None, description="License expiry date.")


class DriverAvailabilityUpdate(BaseModel):
    is_available: bool = Field(..., description="Whether driver is currently available for matching.")


class DriverLocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees.")
    lng: float = Field(..., ge=-180, le=180, description="Longitude in degrees.")


class DriverDocumentCreate(BaseModel):
    type: DocumentType = Field(..., description="insurance, registration, inspection or other")
    file_url: str = Field(..., min_length=1, max_length=1000, description="Where the uploaded file is stored.")


class DriverDocumentPublic(BaseModel):
    id: UUID
    type: DocumentType
    file_url: str
    verified: bool
    uploaded_at: datetime


class DriverVehiclePublic(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    color: Optional[str] = None
    license_plate: Optional[str] = None
    type: VehicleType


class DriverPublic(BaseModel):
    id: UUID = Field(..., description="Driver user id (same as users.id).")
    name: Optional[str] = Field(default=None, description="Driver's display name.")
    vehicle: DriverVehiclePublic
    license_no: Optional[str] = Field(default=None, description="License number (may be null).")
    license_expiry: Optional[date] = None
    license_verified: bool
    rating: float = Field(..., description="Average rating received from riders.")
    rating_count: int
    is_available: bool = Field(..., description="Current availability status.")
    active_ride_id: Optional[UUID] = Field(default=None, description="On-demand ride being served, if any.")
    location_lat: Optional[float] = Field(default=None, description="Last known latitude.")
    location_lng: Optional[float] = Field(default=None, description="Last known longitude.")
    completed_rides: int
    documents: List[DriverDocumentPublic] = Field(default_factory=list)
    updated_at: datetime = Field(..., description="When driver record was last updated.")


class DailyEarnings(BaseModel):
    day: date
    amount: float
    rides: int


class DriverEarningsResponse(BaseModel):
    currency: str
    total: float
    current_week: float
    current_month: float
    completed_rides: int
    last_7_days: List[DailyEarnings] = Field(..., description="Oldest day first, today last.")
