import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.deps import get_current_user
from src.api.errors import DuplicateKeyError, Unauthorized
from src.api.models.base import utcnow
from src.api.models.user import User, UserRole
from src.api.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UpdatePasswordRequest
from src.api.security import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _token_for(user: User) -> TokenResponse:
    return TokenResponse(access_token=create_access_token(subject=user.id, role=user.role.value))


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    description="Create a new user account (rider or driver) and return an access token.",
    operation_id="auth_register",
)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> TokenResponse:
    """
    Register a new user and return a JWT access token.

    Errors:
    - 400 if the email is already registered
    """
    email = str(payload.email).lower().strip()
    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        role=UserRole(payload.role),
        phone_number=payload.phone_number,
    )

    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateKeyError({"email": email})
    db.refresh(user)

    logger.info("Registered %s user %s", user.role.value, user.id)
    return _token_for(user)


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login",
    description="Authenticate a user by email/password and return an access token.",
    operation_id="auth_login",
)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    """
    Login by verifying user credentials and return a JWT access token.

    Errors:
    - 401 for invalid credentials
    """
    email = str(payload.email).lower().strip()
    user = db.scalar(select(User).where(User.email == email))
    if not user or not verify_password(payload.password, user.password_hash):
        raise Unauthorized("Incorrect email or password.")

    return _token_for(user)


@router.patch(
    "/update-password",
    response_model=TokenResponse,
    summary="Change password",
    description="Change the caller's password. Tokens issued before the change stop working.",
    operation_id="auth_update_password",
)
def update_password(
    payload: UpdatePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TokenResponse:
    """
    Verify the current password, store the new one and return a fresh token.

    Errors:
    - 401 if current_password is wrong
    """
    if not verify_password(payload.current_password, current_user.password_hash):
        raise Unauthorized("Your current password is wrong.")

    current_user.password_hash = hash_password(payload.new_password)
    # Backdated so the token issued below is not older than the change.
    current_user.password_changed_at = utcnow() - timedelta(seconds=1)
    db.commit()
    db.refresh(current_user)

    logger.info("User %s changed their password", current_user.id)
    return _token_for(current_user)
