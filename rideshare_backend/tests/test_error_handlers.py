import time
import uuid

import jwt
import pytest
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from conftest import PASSWORD
from src.api.config import JWT_ALGORITHM, JWT_SECRET_KEY
from src.api.errors import (
    TOKEN_EXPIRED_MESSAGE,
    TOKEN_INVALID_MESSAGE,
    CastError,
    DuplicateKeyError,
    InsufficientSeats,
    NotFound,
    ValidationError,
    normalize_error,
    register_exception_handlers,
)
from src.api.security import create_access_token


def _normalize(exc):
    return normalize_error(exc, include_stack=False)


def test_validation_messages_are_joined():
    code, body = _normalize(ValidationError({"name": "Name is required.", "email": "Email is invalid."}))
    assert code == 400
    assert body == {"status": "fail", "message": "Name is required., Email is invalid."}


def test_duplicate_key_names_the_field():
    code, body = _normalize(DuplicateKeyError({"email": "a@b.c"}))
    assert code == 400
    assert body["message"] == "Duplicate field value: email. Please use another value."


@pytest.mark.parametrize(
    "orig",
    [
        "UNIQUE constraint failed: users.email",
        'duplicate key value violates unique constraint "users_email_key"\nDETAIL:  Key (email)=(a@b.c) already exists.',
    ],
)
def test_integrity_errors_become_duplicate_keys(orig):
    code, body = _normalize(IntegrityError("INSERT ...", {}, Exception(orig)))
    assert code == 400
    assert body["message"] == "Duplicate field value: email. Please use another value."


def test_other_integrity_errors_are_conflicts():
    code, body = _normalize(IntegrityError("INSERT ...", {}, Exception("CHECK constraint failed")))
    assert code == 409
    assert body["status"] == "fail"


def test_cast_error_names_path_and_value():
    code, body = _normalize(CastError("ride_id", "abc"))
    assert code == 400
    assert body["message"] == "Invalid ride_id: abc"


def test_request_validation_error_is_a_400():
    exc = RequestValidationError([{"loc": ("body", "email"), "msg": "Field required", "type": "missing"}])
    code, body = _normalize(exc)
    assert code == 400
    assert body["message"] == "email: Field required"


def test_jwt_errors_are_401():
    assert _normalize(jwt.ExpiredSignatureError("expired")) == (401, {"status": "fail", "message": TOKEN_EXPIRED_MESSAGE})
    assert _normalize(jwt.DecodeError("bad")) == (401, {"status": "fail", "message": TOKEN_INVALID_MESSAGE})


def test_app_errors_keep_their_status():
    assert _normalize(NotFound("Ride not found."))[0] == 404
    assert _normalize(InsufficientSeats())[0] == 409
    assert _normalize(NotFound("Gone", status_code=410))[0] == 410


def test_unknown_errors_are_500():
    code, body = _normalize(RuntimeError("boom"))
    assert code == 500
    assert body == {"status": "error", "message": "boom"}


def test_status_code_attribute_is_honoured():
    class Teapot(Exception):
        status_code = 418

    code, body = _normalize(Teapot("short and stout"))
    assert code == 418
    assert body["status"] == "fail"


def test_stack_only_when_requested():
    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        _, with_stack = normalize_error(exc, include_stack=True)
        _, without = normalize_error(exc, include_stack=False)
    assert "RuntimeError: boom" in with_stack["stack"]
    assert "stack" not in without


def test_missing_token(client):
    resp = client.get("/users/me")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"
    assert resp.json()["status"] == "fail"
    assert resp.json()["message"] == "You are not logged in. Please log in to access."


def test_expired_token(client, rider):
    token = create_access_token(subject=uuid.UUID(rider.id), role="rider", expires_minutes=-1)
    resp = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["message"] == TOKEN_EXPIRED_MESSAGE


def test_garbage_token(client):
    resp = client.get("/users/me", headers={"Authorization": "Bearer not.a.jwt"})
    assert resp.status_code == 401
    assert resp.json()["message"] == TOKEN_INVALID_MESSAGE


def test_token_of_deleted_user(client):
    token = create_access_token(subject=uuid.uuid4(), role="rider")
    resp = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "The user belonging to this token no longer exists."


def test_tokens_issued_before_password_change_are_rejected(client, rider):
    now = int(time.time())
    old_token = jwt.encode(
        {"sub": rider.id, "role": "rider", "iat": now - 3600, "exp": now + 3600},
        JWT_SECRET_KEY,
        algorithm=JWT_ALGORITHM,
    )
    assert client.get("/users/me", headers={"Authorization": f"Bearer {old_token}"}).status_code == 200

    resp = client.patch(
        "/auth/update-password",
        json={"current_password": PASSWORD, "new_password": "an-even-better-one"},
        headers=rider.headers,
    )
    assert resp.status_code == 200
    new_token = resp.json()["access_token"]

    stale = client.get("/users/me", headers={"Authorization": f"Bearer {old_token}"})
    assert stale.status_code == 401
    assert stale.json()["message"] == "User recently changed password. Please log in again."
    assert client.get("/users/me", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200


def test_duplicate_registration(client, rider):
    resp = client.post(
        "/auth/register",
        json={"name": "Again", "email": rider.email, "password": PASSWORD},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Duplicate field value: email. Please use another value."


def test_body_validation_is_a_400(client):
    resp = client.post("/auth/register", json={"name": "No Email", "password": PASSWORD})
    assert resp.status_code == 400
    assert resp.json()["status"] == "fail"
    assert "email" in resp.json()["message"]


def test_malformed_id_is_a_400(client, rider):
    resp = client.get("/rides/not-a-uuid", headers=rider.headers)
    assert resp.status_code == 400
    assert resp.json()["status"] == "fail"


def test_missing_ride(client, rider):
    resp = client.get(f"/rides/{uuid.uuid4()}", headers=rider.headers)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Ride not found."


def test_unknown_route(client):
    resp = client.get("/nowhere")
    assert resp.status_code == 404
    assert resp.json()["status"] == "fail"


def test_stack_included_outside_production(client):
    resp = client.get("/users/me")
    assert "stack" in resp.json()


def test_unhandled_exception_envelope():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    def boom():
        raise RuntimeError("kaput")

    with TestClient(app, raise_server_exceptions=False) as c:
        resp = c.get("/boom")
    assert resp.status_code == 500
    assert resp.json()["status"] == "error"
    assert resp.json()["message"] == "kaput"
