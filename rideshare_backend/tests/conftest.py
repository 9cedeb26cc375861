import itertools
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# Settings are read at import time, so they must be in place before src.api loads.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["APP_ENV"] = "test"
os.environ["AUTO_CREATE_TABLES"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.api.db import SessionLocal, engine, init_db  # noqa: E402
from src.api.main import app  # noqa: E402
from src.api.models.base import Base  # noqa: E402
from src.api.models.user import User, UserRole  # noqa: E402
from src.api.security import create_access_token, hash_password  # noqa: E402

PASSWORD = "correct-horse-battery"
_emails = itertools.count(1)


@dataclass
class Account:
    id: str
    email: str
    token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(autouse=True)
def tables():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(client):
    """Register an account through the API and return its id and token."""

    def _make(role: str = "rider", name: str | None = None) -> Account:
        n = next(_emails)
        email = f"{role}{n}@example.com"
        resp = client.post(
            "/auth/register",
            json={"name": name or f"{role.title()} {n}", "email": email, "password": PASSWORD, "role": role},
        )
        assert resp.status_code == 201, resp.text
        token = resp.json()["access_token"]
        me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"}).json()
        return Account(id=me["id"], email=email, token=token)

    return _make


@pytest.fixture
def make_driver(client, make_user):
    """Register a driver with a vehicle profile who is available for rides."""

    def _make(plate: str | None = None, vehicle_type: str = "economy", lat: float | None = None, lng: float | None = None) -> Account:
        account = make_user("driver")
        profile = {
            "vehicle_make": "Maruti",
            "vehicle_model": "Swift",
            "vehicle_year": 2021,
            "vehicle_color": "White",
            "license_plate": plate or f"KA01AB{next(_emails):04d}",
            "vehicle_type": vehicle_type,
            "license_no": f"DL-{account.id[:8]}",
        }
        assert client.put("/drivers/me", json=profile, headers=account.headers).status_code == 200
        assert client.patch("/drivers/me/availability", json={"is_available": True}, headers=account.headers).status_code == 200
        if lat is not None and lng is not None:
            client.patch("/drivers/me/location", json={"lat": lat, "lng": lng}, headers=account.headers)
        return account

    return _make


@pytest.fixture
def rider(make_user):
    return make_user("rider")


@pytest.fixture
def driver(make_driver):
    return make_driver()


@pytest.fixture
def admin():
    """Admins cannot self-register; create one directly."""
    with SessionLocal() as session:
        user = User(
            name="Admin",
            email=f"admin{next(_emails)}@example.com",
            password_hash=hash_password(PASSWORD),
            role=UserRole.admin,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        token = create_access_token(subject=user.id, role=UserRole.admin.value)
        return Account(id=str(user.id), email=user.email, token=token)


def ride_request_payload(**overrides) -> dict:
    payload = {
        "pickup": {"address": "MG Road, Bengaluru", "lat": 12.9756, "lng": 77.6050},
        "destination": {"address": "Indiranagar, Bengaluru", "lat": 12.9784, "lng": 77.6408},
        "ride_type": "economy",
        "estimated_distance_km": 10,
        "estimated_duration_min": 25,
        "payment_method": "cash",
    }
    payload.update(overrides)
    return payload


def offer_payload(seats: int = 3, price: float = 250.0, days_ahead: int = 1, **overrides) -> dict:
    departure = datetime.now(timezone.utc) + timedelta(days=days_ahead)
    payload = {
        "pickup": {"address": "Majestic, Bengaluru", "lat": 12.9767, "lng": 77.5713},
        "destination": {"address": "Mysuru Palace", "lat": 12.3052, "lng": 76.6552},
        "departure_city": "Bengaluru",
        "destination_city": "Mysuru",
        "departure_time": departure.isoformat(),
        "seats": seats,
        "price_per_seat": price,
        "estimated_distance_km": 145,
        "estimated_duration_min": 180,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def on_demand_ride(client, rider):
    resp = client.post("/rides", json=ride_request_payload(), headers=rider.headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture
def offer(client, driver):
    resp = client.post("/rides/offers", json=offer_payload(), headers=driver.headers)
    assert resp.status_code == 201, resp.text
    return resp.json()
