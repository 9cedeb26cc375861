import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Enum, Float, ForeignKey, Integer, Text, Uuid, false, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base, utcnow


class VehicleType(str, enum.Enum):
    economy = "economy"
    comfort = "comfort"
    premium = "premium"
    suv = "suv"


class DocumentType(str, enum.Enum):
    insurance = "insurance"
    registration = "registration"
    inspection = "inspection"
    other = "other"


class Driver(Base):
    """
    ORM model for the 'drivers' table.

    Notes:
    - Primary key equals the corresponding users.id (1:1 relationship).
    - active_ride_id points at the on-demand ride the driver is currently serving;
      the driver is unavailable while it is set.
    - Earnings are credited when a ride completes.
    """

    __tablename__ = "drivers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )

    vehicle_make: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vehicle_color: Mapped[str | None] = mapped_column(Text, nullable=True)
    license_plate: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    vehicle_type: Mapped[VehicleType] = mapped_column(
        Enum(VehicleType, name="vehicle_type"),
        nullable=False,
        default=VehicleType.economy,
        server_default=VehicleType.economy.value,
    )

    license_no: Mapped[str | None] = mapped_column(Text, nullable=True)
    license_expiry: Mapped[date | None] = mapped_column(Date, nullable=True)
    license_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    rating_average: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    location_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    active_ride_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("rides.id", ondelete="SET NULL"),
        nullable=True,
    )

    earnings_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    earnings_current_week: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    earnings_current_month: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    completed_rides: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    user = relationship("User", lazy="joined")
    documents = relationship(
        "DriverDocument",
        back_populates="driver",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="DriverDocument.uploaded_at",
    )


class DriverDocument(Base):
    """Uploaded compliance document; verified by an admin."""

    __tablename__ = "driver_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    driver_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[DocumentType] = mapped_column(Enum(DocumentType, name="document_type"), nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    driver = relationship("Driver", back_populates="documents")
