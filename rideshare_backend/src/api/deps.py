"""
Shared FastAPI dependencies for authentication/authorization.

This module centralizes JWT parsing and role checks so routers can enforce
consistent access controls. PyJWT errors are left to propagate: the error
handlers in src.api.errors turn them into the 401 envelope.
"""

from __future__ import annotations

from typing import Any, Dict
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.errors import Forbidden, Unauthorized
from src.api.models.user import User, UserRole
from src.api.security import decode_token, issued_before, subject_id

bearer_scheme = HTTPBearer(auto_error=False)


def role_of(user: User) -> str:
    """Return the user's role as a plain string."""
    return user.role.value if hasattr(user.role, "value") else str(user.role)


# PUBLIC_INTERFACE
def get_current_token_payload(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Dict[str, Any]:
    """
    Return decoded JWT payload for the current request.

    Authentication: Bearer JWT access token.

    Raises:
        Unauthorized: if no bearer token was sent.
        jwt.PyJWTError: if the token is invalid or expired.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized()
    return decode_token(credentials.credentials)


# PUBLIC_INTERFACE
def get_current_user_id(payload: Dict[str, Any] = Depends(get_current_token_payload)) -> UUID:
    """
    Return current authenticated user's id (UUID).

    Raises:
        jwt.InvalidTokenError: if sub is not a valid UUID.
    """
    return subject_id(payload)


# PUBLIC_INTERFACE
def get_current_user(
    db: Session = Depends(get_db),
    payload: Dict[str, Any] = Depends(get_current_token_payload),
    user_id: UUID = Depends(get_current_user_id),
) -> User:
    """
    Return the current authenticated User ORM object.

    Raises:
        Unauthorized: if the user no longer exists or changed their password
            after the token was issued.
    """
    user = db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise Unauthorized("The user belonging to this token no longer exists.")

    if issued_before(payload, user.password_changed_at):
        raise Unauthorized("User recently changed password. Please log in again.")
    return user


def require_role(*roles: UserRole):
    """Build a dependency that admits only users holding one of `roles`."""
    allowed = {r.value for r in roles}

    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        if role_of(current_user) not in allowed:
            raise Forbidden()
        return current_user

    return _dependency


# PUBLIC_INTERFACE
def require_driver(current_user: User = Depends(get_current_user)) -> User:
    """
    Ensure the current user has role=driver.

    Raises:
        Forbidden: if user is not a driver.
    """
    if role_of(current_user) != UserRole.driver.value:
        raise Forbidden("Driver role required.")
    return current_user


require_admin = require_role(UserRole.admin)
