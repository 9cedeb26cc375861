from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from src.api.models.payment_method import PaymentMethodType


class UserPublic(BaseModel):
    id: UUID = Field(..., description="User id")
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    role: str = Field(..., description="Role: rider, driver or admin")
    phone_number: Optional[str] = Field(default=None, description="Contact phone number")
    location_lat: Optional[float] = Field(default=None, description="Last known latitude")
    location_lng: Optional[float] = Field(default=None, description="Last known longitude")
    rating: float = Field(..., description="Average rating received from drivers")
    rating_count: int = Field(..., description="Number of ratings received")
    created_at: datetime = Field(..., description="Account creation timestamp")


class UserProfileUpdate(BaseModel):
    """Only the fields present in the request body are changed."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    phone_number: Optional[str] = Field(default=None, max_length=30)


class UserLocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees.")
    lng: float = Field(..., ge=-180, le=180, description="Longitude in degrees.")


class SavedAddressCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Label such as Home or Work")
    address: str = Field(..., min_length=1, max_length=500)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class SavedAddressPublic(BaseModel):
    id: UUID
    name: str
    address: str
    lat: float
    lng: float
    created_at: datetime


class PaymentMethodCreate(BaseModel):
    type: PaymentMethodType = Field(..., description="credit_card, debit_card or paypal")
    card_number: str = Field(..., min_length=4, max_length=32, description="Card number or account reference")
    expiry_date: str = Field(..., pattern=r"^(0[1-9]|1[0-2])/\d{2}$", description="Expiry as MM/YY")
    cvv: Optional[str] = Field(default=None, pattern=r"^\d{3,4}$", description="Checked for shape, never stored")
    is_default: bool = Field(default=False, description="Make this the default payment method")

    @field_validator("card_number")
    @classmethod
    def _strip_separators(cls, value: str) -> str:
        return value.replace(" ", "").replace("-", "")


class PaymentMethodPublic(BaseModel):
    id: UUID
    type: PaymentMethodType
    card_number: str = Field(..., description="Masked card number, e.g. **** **** **** 1234")
    expiry_date: str
    is_default: bool
    created_at: datetime
