"""
Error taxonomy and the single normalization point for HTTP error responses.

Services raise the AppError subclasses below and never build responses
themselves. The handlers registered by register_exception_handlers() map every
error shape (our own, FastAPI/Starlette, SQLAlchemy integrity errors and PyJWT
errors) to one JSON envelope:

    {"status": "fail" | "error", "message": str, "stack": str (non-production only)}
"""

from __future__ import annotations

import logging
import re
import traceback
from typing import Any, Dict, Optional, Tuple

import jwt
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.api.config import IS_PRODUCTION

logger = logging.getLogger(__name__)

TOKEN_EXPIRED_MESSAGE = "Your token has expired. Please log in again."
TOKEN_INVALID_MESSAGE = "Invalid token. Please log in again."


class AppError(Exception):
    """Base class for errors that carry their own HTTP status code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found."


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action."


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "You are not logged in. Please log in to access."


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Request conflicts with the current state of the resource."


class InvalidStateTransition(Conflict):
    default_message = "Invalid status transition."


class InsufficientSeats(Conflict):
    default_message = "Not enough seats left on this ride."


class CapacityExceeded(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Requested seats exceed the seats available on this ride."


class ValidationError(AppError):
    """One or more fields failed validation; errors maps field -> message."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        super().__init__(", ".join(self.errors.values()) or "Invalid input data.")


class DuplicateKeyError(AppError):
    """A unique constraint rejected the write; key_value maps field -> offending value."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, key_value: Dict[str, Any]):
        self.key_value = dict(key_value)
        fields = ", ".join(self.key_value.keys())
        super().__init__(f"Duplicate field value: {fields}. Please use another value.")


class CastError(AppError):
    """A value could not be converted to the type a field requires."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, path: str, value: Any):
        self.path = path
        self.value = value
        super().__init__(f"Invalid {path}: {value}")


# SQLite: "UNIQUE constraint failed: users.email"
_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (?P<cols>[\w., ]+)")
# Postgres: "Key (email)=(a@b.c) already exists."
_PG_UNIQUE = re.compile(r"Key \((?P<cols>[^)]+)\)=\((?P<vals>[^)]*)\) already exists")


def duplicate_key_from_integrity(exc: IntegrityError) -> Optional[DuplicateKeyError]:
    """Translate a unique-constraint IntegrityError into a DuplicateKeyError, if it is one."""
    text = str(exc.orig) if exc.orig is not None else str(exc)

    match = _PG_UNIQUE.search(text)
    if match:
        cols = [c.strip() for c in match.group("cols").split(",")]
        vals = [v.strip() for v in match.group("vals").split(",")]
        return DuplicateKeyError(dict(zip(cols, vals + [None] * (len(cols) - len(vals)))))

    match = _SQLITE_UNIQUE.search(text)
    if match:
        cols = [c.strip().split(".")[-1] for c in match.group("cols").split(",")]
        return DuplicateKeyError({c: None for c in cols})
    return None


def _format_request_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        msg = err.get("msg", "Invalid value")
        parts.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return ", ".join(parts) or "Invalid input data."


# PUBLIC_INTERFACE
def normalize_error(exc: BaseException, *, include_stack: bool = not IS_PRODUCTION) -> Tuple[int, Dict[str, Any]]:
    """
    Map any exception to (HTTP status code, envelope body).

    Rules:
    - validation errors -> 400 with concatenated messages
    - duplicate keys -> 400 naming the offending fields
    - cast errors -> 400 naming field/value
    - expired/invalid JWT -> 401 with a fixed message
    - AppError / HTTPException -> their own status code
    - anything else -> its status_code attribute, else 500
    """
    status_code = getattr(exc, "status_code", None) or status.HTTP_500_INTERNAL_SERVER_ERROR
    message = str(exc) or "Internal Server Error"

    if isinstance(exc, IntegrityError):
        dup = duplicate_key_from_integrity(exc)
        if dup is not None:
            status_code, message = dup.status_code, dup.message
        else:
            status_code, message = status.HTTP_409_CONFLICT, Conflict.default_message
    elif isinstance(exc, RequestValidationError):
        status_code, message = status.HTTP_400_BAD_REQUEST, _format_request_validation(exc)
    elif isinstance(exc, jwt.ExpiredSignatureError):
        status_code, message = status.HTTP_401_UNAUTHORIZED, TOKEN_EXPIRED_MESSAGE
    elif isinstance(exc, jwt.InvalidTokenError):
        status_code, message = status.HTTP_401_UNAUTHORIZED, TOKEN_INVALID_MESSAGE
    elif isinstance(exc, AppError):
        status_code, message = exc.status_code, exc.message
    elif isinstance(exc, StarletteHTTPException):
        status_code = exc.status_code
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    body: Dict[str, Any] = {
        "status": "fail" if 400 <= status_code < 500 else "error",
        "message": message,
    }
    if include_stack:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return status_code, body


async def _handle(request: Request, exc: Exception) -> JSONResponse:
    status_code, body = normalize_error(exc)
    if status_code >= 500:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    elif status_code == status.HTTP_409_CONFLICT:
        logger.warning("Conflict on %s %s: %s", request.method, request.url.path, body["message"])

    headers = None
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, StarletteHTTPException) and exc.headers:
        headers = dict(exc.headers)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# PUBLIC_INTERFACE
def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope handlers on the application."""
    for exc_class in (
        AppError,
        StarletteHTTPException,
        RequestValidationError,
        IntegrityError,
        jwt.PyJWTError,
        Exception,
    ):
        app.add_exception_handler(exc_class, _handle)
