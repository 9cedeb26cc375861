"""
WebSocket routes for live ride updates.

Endpoints:
- /ws/ride/{ride_id}/driver    : driver publishes location; receives ride events
- /ws/ride/{ride_id}/passenger : requester or joined passenger receives ride events
- /ws/ride/{ride_id}/admin     : admins observe a ride

Auth:
- Provide JWT via `Authorization: Bearer <token>` OR query param `?token=<token>`.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.realtime import run_ws_session

router = APIRouter(prefix="/ws", tags=["realtime"])


@router.websocket("/ride/{ride_id}/driver")
async def ws_ride_driver(websocket: WebSocket, ride_id: UUID, db: Session = Depends(get_db)) -> None:
    """
    Driver WebSocket.

    Client messages (JSON):
    - {"type":"location","lat":..., "lng":..., "ts": optional}

    Server messages (JSON): connected, driver_location, ride_status, join_request, ping
    """
    await run_ws_session(websocket, db=db, ride_id=ride_id, channel="driver")


@router.websocket("/ride/{ride_id}/passenger")
async def ws_ride_passenger(websocket: WebSocket, ride_id: UUID, db: Session = Depends(get_db)) -> None:
    """
    Passenger WebSocket: subscribe to ride status, seat changes and driver location.

    Server messages (JSON): connected (includes last_location), ride_status,
    join_request, driver_location, ping
    """
    await run_ws_session(websocket, db=db, ride_id=ride_id, channel="passenger")


@router.websocket("/ride/{ride_id}/admin")
async def ws_ride_admin(websocket: WebSocket, ride_id: UUID, db: Session = Depends(get_db)) -> None:
    """Admin observer channel."""
    await run_ws_session(websocket, db=db, ride_id=ride_id, channel="admin")
