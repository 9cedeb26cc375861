"""
In-memory real-time broker for per-ride WebSocket channels.

REST mutations publish the server-confirmed ride (ride_status) and join request
changes (join_request) to the ride's room, so clients apply server state instead
of editing their local copies. Drivers also stream their location through the
room.

Rooms live in process memory; running several API workers requires a shared
broker (Redis pub/sub or similar) behind the same publish() call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import jwt
from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect, WebSocketState

from src.api.errors import AppError, Forbidden, NotFound, Unauthorized, normalize_error
from src.api.models.base import utcnow
from src.api.models.driver import Driver
from src.api.models.join_request import LIVE_JOIN_REQUEST_STATUSES
from src.api.models.ride import Ride
from src.api.models.user import User, UserRole
from src.api.schemas.driver import DriverLocationUpdate
from src.api.security import decode_token, issued_before, subject_id

logger = logging.getLogger(__name__)

# Heartbeat and backpressure behavior.
PING_INTERVAL_SECONDS = 20
SEND_TIMEOUT_SECONDS = 3

CHANNELS = ("driver", "passenger", "admin")


@dataclass
class Connection:
    """Represents one active WebSocket client connection."""
    websocket: WebSocket
    user_id: UUID
    channel: str
    connected_at: float


class RideRoom:
    """
    Per-ride room of subscribers, keyed by channel then user id.

    The room keeps the last driver location so new subscribers are hydrated
    immediately.
    """

    def __init__(self, ride_id: UUID):
        self.ride_id = ride_id
        self.members: dict[str, dict[UUID, Connection]] = {c: {} for c in CHANNELS}
        self.last_location: Optional[dict[str, Any]] = None
        self.lock = asyncio.Lock()

    async def add(self, conn: Connection) -> None:
        if conn.channel not in self.members:
            raise ValueError(f"Unknown channel: {conn.channel}")
        async with self.lock:
            self.members[conn.channel][conn.user_id] = conn

    async def remove(self, user_id: UUID) -> None:
        async with self.lock:
            for members in self.members.values():
                members.pop(user_id, None)

    async def connections(self) -> list[Connection]:
        async with self.lock:
            return [c for members in self.members.values() for c in members.values()]

    async def is_empty(self) -> bool:
        async with self.lock:
            return not any(self.members.values())


class InMemoryRideBroker:
    """In-memory broker mapping ride_id -> RideRoom."""

    def __init__(self):
        self._rooms: dict[UUID, RideRoom] = {}
        self._lock = asyncio.Lock()

    async def get_room(self, ride_id: UUID) -> RideRoom:
        async with self._lock:
            room = self._rooms.get(ride_id)
            if room is None:
                room = RideRoom(ride_id)
                self._rooms[ride_id] = room
            return room

    async def find_room(self, ride_id: UUID) -> Optional[RideRoom]:
        async with self._lock:
            return self._rooms.get(ride_id)

    async def cleanup_if_empty(self, ride_id: UUID) -> None:
        async with self._lock:
            room = self._rooms.get(ride_id)
            if room is not None and await room.is_empty():
                self._rooms.pop(ride_id, None)


broker = InMemoryRideBroker()


async def _safe_send_json(conn: Connection, payload: dict[str, Any]) -> bool:
    """Send JSON with timeout. Returns False if the client should be dropped."""
    if conn.websocket.client_state != WebSocketState.CONNECTED:
        return False
    try:
        await asyncio.wait_for(conn.websocket.send_text(json.dumps(payload, default=str)), timeout=SEND_TIMEOUT_SECONDS)
        return True
    except (asyncio.TimeoutError, RuntimeError, WebSocketDisconnect):
        return False


# PUBLIC_INTERFACE
async def publish(ride_id: UUID, payload: dict[str, Any]) -> int:
    """
    Broadcast payload to every subscriber of a ride room.

    Used by REST routes (as a background task after commit) and by the driver
    channel. Returns how many clients received the message.
    """
    room = await broker.find_room(ride_id)
    if room is None:
        return 0

    delivered = 0
    for conn in await room.connections():
        if await _safe_send_json(conn, payload):
            delivered += 1
        else:
            await room.remove(conn.user_id)
    await broker.cleanup_if_empty(ride_id)
    return delivered


def _extract_token_from_ws(websocket: WebSocket) -> Optional[str]:
    """
    Extract JWT from:
    - Authorization: Bearer <token>
    - ?token=<token> query
    """
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip()

    token = websocket.query_params.get("token")
    if token:
        return token.strip()
    return None


# PUBLIC_INTERFACE
def authenticate_ws_user(websocket: WebSocket, db: Session) -> User:
    """
    Authenticate a WebSocket connection with the same JWT rules as REST.

    Raises:
        Unauthorized: the token is missing or no longer valid for its user.
        jwt.PyJWTError: invalid or expired token.
    """
    token = _extract_token_from_ws(websocket)
    if not token:
        raise Unauthorized("Missing authentication token (use Authorization: Bearer ... or ?token=...).")

    claims = decode_token(token)
    user = db.scalar(select(User).where(User.id == subject_id(claims)))
    if not user:
        raise Unauthorized("The user belonging to this token no longer exists.")
    if issued_before(claims, user.password_changed_at):
        raise Unauthorized("User recently changed password. Please log in again.")
    return user


# PUBLIC_INTERFACE
def authorize_ws_ride_access(user: User, ride: Ride, channel: str) -> None:
    """
    Rules:
    - driver: only the assigned driver / offer owner
    - passenger: the requester of an on-demand ride, or a passenger with a
      pending/accepted join request on an offer
    - admin: admins only

    Raises:
        Forbidden: if not authorized.
    """
    if channel == "driver":
        if ride.driver_id is None or ride.driver_id != user.id:
            raise Forbidden("Not the driver of this ride.")
        return

    if channel == "passenger":
        if ride.user_id == user.id and ride.driver_id != user.id:
            return
        if any(
            r.passenger_id == user.id and r.status in LIVE_JOIN_REQUEST_STATUSES
            for r in ride.join_requests
        ):
            return
        raise Forbidden("Not a passenger of this ride.")

    if channel == "admin":
        if user.role != UserRole.admin:
            raise Forbidden("Admin channel not allowed.")
        return

    raise Forbidden("Invalid channel.")


async def _heartbeat_sender(conn: Connection, stop_event: asyncio.Event) -> None:
    """Send periodic ping messages until stop_event is set."""
    while not stop_event.is_set():
        await asyncio.sleep(PING_INTERVAL_SECONDS)
        if stop_event.is_set():
            break
        # Browser WebSocket APIs don't expose ping frames, so ping in-band.
        if not await _safe_send_json(conn, {"type": "ping", "ts": time.time()}):
            stop_event.set()


def _store_driver_location(db: Session, driver_id: UUID, lat: float, lng: float) -> None:
    db.execute(
        update(Driver)
        .where(Driver.id == driver_id)
        .values(location_lat=lat, location_lng=lng, updated_at=utcnow())
    )
    db.commit()


async def _handle_driver_message(
    websocket: WebSocket, db: Session, room: RideRoom, user: User, msg: dict[str, Any]
) -> None:
    if msg.get("lat") is None or msg.get("lng") is None:
        await websocket.send_json({"type": "error", "message": "Missing lat/lng."})
        return
    try:
        location = DriverLocationUpdate.model_validate({"lat": msg["lat"], "lng": msg["lng"]})
    except PydanticValidationError:
        await websocket.send_json({"type": "error", "message": "Invalid lat/lng."})
        return

    location_payload = {
        "type": "driver_location",
        "ride_id": str(room.ride_id),
        "driver_id": str(user.id),
        "lat": location.lat,
        "lng": location.lng,
        "ts": msg.get("ts") or time.time(),
    }
    async with room.lock:
        room.last_location = location_payload

    await run_in_threadpool(_store_driver_location, db, user.id, location.lat, location.lng)
    await publish(room.ride_id, location_payload)


async def run_ws_session(
    websocket: WebSocket,
    *,
    db: Session,
    ride_id: UUID,
    channel: str,
) -> None:
    """
    Generic WebSocket session runner with:
    - auth + authorization
    - room join/leave
    - heartbeat pings
    - graceful disconnect

    On the driver channel, {"type": "location", "lat", "lng"} messages update the
    driver's stored location and are broadcast to the room. Other channels are
    subscribers; their messages are acknowledged and otherwise ignored.

    PUBLIC_INTERFACE
    """
    # Accept early so client gets WS upgrade; on auth failure we close with 1008.
    await websocket.accept()

    try:
        user = authenticate_ws_user(websocket, db)
        ride = db.scalar(select(Ride).where(Ride.id == ride_id))
        if not ride:
            raise NotFound("Ride not found.")
        authorize_ws_ride_access(user, ride, channel)
    except (AppError, jwt.PyJWTError) as exc:
        _, body = normalize_error(exc, include_stack=False)
        await websocket.send_json({"type": "error", "message": body["message"]})
        await websocket.close(code=1008, reason=body["message"])
        return

    conn = Connection(websocket=websocket, user_id=user.id, channel=channel, connected_at=time.time())
    room = await broker.get_room(ride_id)
    await room.add(conn)

    # Initial hydrate message.
    await _safe_send_json(
        conn,
        {
            "type": "connected",
            "ride_id": str(ride_id),
            "channel": channel,
            "user_id": str(user.id),
            "ride_status": ride.status.value,
            "status_label": ride.status.label,
            "available_seats": ride.available_seats,
            "last_location": room.last_location,
        },
    )

    stop = asyncio.Event()
    heartbeat_task = asyncio.create_task(_heartbeat_sender(conn, stop))
    try:
        while websocket.client_state == WebSocketState.CONNECTED and not stop.is_set():
            try:
                msg = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, KeyError):
                await websocket.send_json({"type": "error", "message": "Invalid message format; expected JSON."})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object."})
                continue

            mtype = msg.get("type")
            if mtype == "pong":
                continue
            if channel == "driver" and mtype in ("location", "driver_location"):
                await _handle_driver_message(websocket, db, room, user, msg)
                continue

            # Unknown message types are acknowledged for forward compatibility.
            await websocket.send_json({"type": "ack", "received_type": mtype})
    finally:
        stop.set()
        heartbeat_task.cancel()
        await room.remove(user.id)
        await broker.cleanup_if_empty(ride_id)
        logger.debug("WebSocket %s/%s closed for %s", ride_id, channel, user.id)
