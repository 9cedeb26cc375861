"""
FastAPI application entrypoint for the Rideshare backend.

Provides:
- Health check
- Authentication (/auth/*)
- User profile, saved addresses and payment methods (/users/*)
- Driver onboarding, documents and earnings (/drivers/*)
- On-demand rides, ride offers and seat booking (/rides/*)
- Live ride channels (/ws/ride/{ride_id}/*)

Configuration (see src.api.config):
- DATABASE_URL: Postgres connection string (SQLite for local runs/tests)
- JWT_SECRET_KEY: secret used to sign access tokens
- JWT_ALGORITHM: optional (default HS256)
- ACCESS_TOKEN_EXPIRE_MINUTES: optional (default 60)
- APP_ENV: "production" hides stack traces in error responses
- LOG_LEVEL, CORS_ALLOWED_ORIGINS, AUTO_CREATE_TABLES
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.config import APP_ENV, AUTO_CREATE_TABLES, CORS_ALLOWED_ORIGINS
from src.api.db import init_db
from src.api.errors import register_exception_handlers
from src.api.logging_config import configure_logging
from src.api.routers import auth as auth_router
from src.api.routers import drivers as drivers_router
from src.api.routers import rides as rides_router
from src.api.routers import users as users_router
from src.api.routers import ws as ws_router

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Health and readiness endpoints."},
    {"name": "auth", "description": "Registration, login and password endpoints."},
    {"name": "users", "description": "User profile, saved addresses and payment methods."},
    {"name": "drivers", "description": "Driver onboarding, availability, documents and earnings."},
    {"name": "rides", "description": "Ride requests, offers, seat booking, lifecycle and history."},
    {
        "name": "realtime",
        "description": "WebSocket endpoints for live ride status, join requests and driver location (see /docs/ws).",
    },
]


# PUBLIC_INTERFACE
def create_app() -> FastAPI:
    """Build the FastAPI application with logging, CORS, error handlers and routers."""
    configure_logging()

    app = FastAPI(
        title="Rideshare Backend",
        description="Backend API for on-demand rides and shared ride offers.",
        version="0.2.0",
        openapi_tags=openapi_tags,
    )

    # Credentials cannot be combined with a wildcard origin.
    allow_all = CORS_ALLOWED_ORIGINS == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(auth_router.router)
    app.include_router(users_router.router)
    app.include_router(drivers_router.router)
    app.include_router(rides_router.router)
    app.include_router(ws_router.router)

    app.add_api_route(
        "/",
        health_check,
        methods=["GET"],
        tags=["health"],
        summary="Health check",
        description="Simple health check endpoint.",
        operation_id="health_check",
    )
    app.add_api_route(
        "/docs/ws",
        websocket_usage_guide,
        methods=["GET"],
        tags=["realtime"],
        summary="WebSocket usage guide",
        description="Human-readable documentation for WebSocket endpoints (OpenAPI does not fully model WebSockets).",
        operation_id="docs_websocket_usage",
    )

    if AUTO_CREATE_TABLES:
        init_db()
    logger.info("Rideshare backend started (env=%s)", APP_ENV)
    return app


def health_check():
    """Return a simple health response."""
    return {"message": "Healthy"}


def websocket_usage_guide():
    """
    WebSocket usage guide.

    Authentication:
    - Provide JWT via header: Authorization: Bearer <token>
      OR via query: ?token=<token>

    Endpoints:
    - ws /ws/ride/{ride_id}/driver
      * The assigned driver (or offer owner) only.
      * Send: {"type":"location","lat":<float>,"lng":<float>,"ts": optional}
      * Receive: connected, driver_location, ride_status, join_request, ping

    - ws /ws/ride/{ride_id}/passenger
      * The requester of an on-demand ride, or a passenger with a pending or
        accepted join request on an offer.
      * Receive: connected (includes last_location), ride_status, join_request,
        driver_location, ping

    - ws /ws/ride/{ride_id}/admin
      * Admins only.

    Notes:
    - ride_status messages carry the full server-side ride; clients replace
      their cached copy with it.
    - Heartbeats are JSON "ping" messages every ~20 seconds.
    - Clients may respond with {"type":"pong"}.
    """
    return {
        "auth": {
            "header": "Authorization: Bearer <JWT>",
            "query": "?token=<JWT>",
        },
        "endpoints": {
            "driver": "/ws/ride/{ride_id}/driver",
            "passenger": "/ws/ride/{ride_id}/passenger",
            "admin": "/ws/ride/{ride_id}/admin",
        },
        "messages": {
            "driver_send": {"type": "location", "lat": 12.34, "lng": 56.78, "ts": "optional"},
            "server_types": ["connected", "ride_status", "join_request", "driver_location", "ping", "error", "ack"],
        },
    }


app = create_app()
