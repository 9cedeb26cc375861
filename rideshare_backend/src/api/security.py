"""
Password hashing and JWT access tokens.

Claims: sub (user id), role, iat, exp. A token stops working when it expires or
when it was issued before the user's last password change.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

import jwt
from passlib.context import CryptContext

from src.api.config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, JWT_SECRET_KEY

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

REQUIRED_CLAIMS = ["sub", "iat", "exp"]


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


# PUBLIC_INTERFACE
def create_access_token(*, subject: UUID, role: str, expires_minutes: Optional[int] = None) -> str:
    """Sign a token for `subject`; lifetime defaults to ACCESS_TOKEN_EXPIRE_MINUTES."""
    lifetime = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes)
    issued = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": str(subject),
        "role": role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + lifetime).timestamp()),
    }
    return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


# PUBLIC_INTERFACE
def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify signature and expiry and return the claims.

    Raises:
        jwt.ExpiredSignatureError: the token has expired.
        jwt.InvalidTokenError: bad signature, malformed token or missing claims.
    """
    return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM], options={"require": REQUIRED_CLAIMS})


def subject_id(claims: Dict[str, Any]) -> UUID:
    try:
        return UUID(str(claims["sub"]))
    except (KeyError, TypeError, ValueError):
        raise jwt.InvalidTokenError("Token subject is not a user id.")


def issued_before(claims: Dict[str, Any], moment: Optional[datetime]) -> bool:
    """True if the token's iat predates `moment` (whole seconds; naive datetimes are UTC)."""
    if moment is None:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(claims.get("iat", 0)) < int(moment.timestamp())
