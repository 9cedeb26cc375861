import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, Integer, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base, utcnow


class UserRole(str, enum.Enum):
    """User roles supported by the application."""
    rider = "rider"
    driver = "driver"
    admin = "admin"


class User(Base):
    """
    ORM model for the 'users' table.

    Riders request on-demand rides and join ride offers; drivers additionally own
    a row in 'drivers'. Ratings are running averages maintained by ride ratings.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, name="user_role"), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(Text, nullable=True)

    location_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    rating_average: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    password_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    saved_addresses = relationship(
        "SavedAddress",
        back_populates="user",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="SavedAddress.created_at",
    )
    payment_methods = relationship(
        "PaymentMethod",
        back_populates="user",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="PaymentMethod.created_at",
    )
