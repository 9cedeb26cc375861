from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base, utcnow
from src.api.models.driver import VehicleType


class RideStatus(str, enum.Enum):
    """
    Canonical ride lifecycle.

    requested -> accepted -> arrived -> in_progress -> completed
    cancelled is reachable from every non-terminal status.
    """

    requested = "requested"
    accepted = "accepted"
    arrived = "arrived"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RideStatus.completed, RideStatus.cancelled)

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]

    # PUBLIC_INTERFACE
    @classmethod
    def parse(cls, value: str) -> "RideStatus":
        """Parse a canonical status or one of the legacy screen names."""
        key = value.strip().lower()
        if key in STATUS_ALIASES:
            return STATUS_ALIASES[key]
        return cls(key)


# Older clients used different names for the same states.
STATUS_ALIASES: dict[str, RideStatus] = {
    "searching_driver": RideStatus.requested,
    "driver_assigned": RideStatus.accepted,
    "driver_arrived": RideStatus.arrived,
}

STATUS_LABELS: dict[RideStatus, str] = {
    RideStatus.requested: "Looking for a driver",
    RideStatus.accepted: "Driver assigned",
    RideStatus.arrived: "Driver arrived",
    RideStatus.in_progress: "On the way",
    RideStatus.completed: "Completed",
    RideStatus.cancelled: "Cancelled",
}


class RideKind(str, enum.Enum):
    on_demand = "on_demand"
    offer = "offer"


class PaymentMethodKind(str, enum.Enum):
    credit_card = "credit_card"
    debit_card = "debit_card"
    paypal = "paypal"
    cash = "cash"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class CancelledBy(str, enum.Enum):
    user = "user"
    driver = "driver"
    system = "system"


class Ride(Base):
    """
    ORM model for the 'rides' table.

    A ride is either an on-demand request (kind=on_demand, created by a rider,
    driver assigned on accept) or a scheduled offer (kind=offer, created by a
    driver who is both user_id and driver_id, with seats passengers can join).
    """

    __tablename__ = "rides"
    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_rides_available_seats_non_negative"),
        CheckConstraint("available_seats <= seats_total", name="ck_rides_available_seats_within_total"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[RideKind] = mapped_column(Enum(RideKind, name="ride_kind"), nullable=False, index=True)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    driver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status: Mapped[RideStatus] = mapped_column(
        Enum(RideStatus, name="ride_status"),
        nullable=False,
        default=RideStatus.requested,
        server_default=RideStatus.requested.value,
        index=True,
    )

    pickup_address: Mapped[str] = mapped_column(Text, nullable=False)
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dest_address: Mapped[str] = mapped_column(Text, nullable=False)
    dest_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dest_lng: Mapped[float] = mapped_column(Float, nullable=False)
    departure_city: Mapped[str | None] = mapped_column(Text, nullable=True)
    destination_city: Mapped[str | None] = mapped_column(Text, nullable=True)

    ride_type: Mapped[VehicleType] = mapped_column(
        Enum(VehicleType, name="vehicle_type"),
        nullable=False,
        default=VehicleType.economy,
    )
    estimated_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    estimated_duration_min: Mapped[float | None] = mapped_column(Float, nullable=True)

    estimated_fare: Mapped[float] = mapped_column(Float, nullable=False)
    actual_fare: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="INR", server_default="INR")
    fare_base: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fare_distance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fare_time: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fare_surge: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fare_tax: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    payment_method: Mapped[PaymentMethodKind] = mapped_column(
        Enum(PaymentMethodKind, name="ride_payment_method"),
        nullable=False,
        default=PaymentMethodKind.credit_card,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status"),
        nullable=False,
        default=PaymentStatus.pending,
    )

    # Offer-only seat accounting; null for on-demand rides.
    seats_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    available_seats: Mapped[int | None] = mapped_column(Integer, nullable=True)

    vehicle_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_color: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_license_plate: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    departure_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[CancelledBy | None] = mapped_column(Enum(CancelledBy, name="cancelled_by"), nullable=True)

    rating_user_to_driver: Mapped[int | None] = mapped_column(Integer, nullable=True)
    comment_user_to_driver: Mapped[str | None] = mapped_column(Text, nullable=True)
    rating_driver_to_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    comment_driver_to_user: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    user = relationship("User", foreign_keys=[user_id], lazy="joined")
    driver = relationship("User", foreign_keys=[driver_id], lazy="joined")
    events = relationship(
        "RideEvent",
        back_populates="ride",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="RideEvent.created_at",
    )
    join_requests = relationship(
        "JoinRequest",
        back_populates="ride",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="JoinRequest.requested_at",
    )

    @property
    def duration_min(self) -> int | None:
        """Minutes between start and completion, once both are known."""
        if self.started_at and self.completed_at:
            return round((self.completed_at - self.started_at).total_seconds() / 60)
        return None


class RideEvent(Base):
    """Append-only audit trail of everything that happened to a ride."""

    __tablename__ = "ride_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    ride_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    event_type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True,
    )

    ride = relationship("Ride", back_populates="events")


# Extra composite indexes to support common list queries efficiently.
Index("idx_rides_user_created_at", Ride.user_id, Ride.created_at.desc())
Index("idx_rides_driver_created_at", Ride.driver_id, Ride.created_at.desc())
Index("idx_rides_kind_status_departure", Ride.kind, Ride.status, Ride.departure_time)
Index("idx_ride_events_ride_created_at", RideEvent.ride_id, RideEvent.created_at.asc())
