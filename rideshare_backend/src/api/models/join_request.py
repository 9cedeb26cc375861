import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, Float, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.api.models.base import Base, utcnow


class JoinRequestStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    cancelled = "cancelled"


# Requests still holding (or waiting for) seats on the offer.
LIVE_JOIN_REQUEST_STATUSES = (JoinRequestStatus.pending, JoinRequestStatus.accepted)


class JoinRequest(Base):
    """
    A passenger's request for seats on a ride offer.

    Seats are only taken from the offer when the owner accepts the request.
    """

    __tablename__ = "join_requests"
    __table_args__ = (CheckConstraint("seats_required >= 1", name="ck_join_requests_seats_positive"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ride_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("rides.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    passenger_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    seats_required: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[JoinRequestStatus] = mapped_column(
        Enum(JoinRequestStatus, name="join_request_status"),
        nullable=False,
        default=JoinRequestStatus.pending,
        index=True,
    )
    fare: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ride = relationship("Ride", back_populates="join_requests")
    passenger = relationship("User", lazy="joined")


Index("idx_join_requests_passenger_ride", JoinRequest.passenger_id, JoinRequest.ride_id)

# At most one live request per passenger per ride, also under concurrent joins.
_LIVE_CLAUSE = "status IN ('pending', 'accepted')"
Index(
    "uq_join_requests_live_passenger",
    JoinRequest.ride_id,
    JoinRequest.passenger_id,
    unique=True,
    postgresql_where=text(_LIVE_CLAUSE),
    sqlite_where=text(_LIVE_CLAUSE),
)
