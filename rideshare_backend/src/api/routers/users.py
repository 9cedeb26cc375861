import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.api.db import get_db
from src.api.deps import get_current_user, require_admin, role_of
from src.api.errors import NotFound
from src.api.models.address import SavedAddress
from src.api.models.payment_method import PaymentMethod
from src.api.models.user import User, UserRole
from src.api.schemas.user import (
    PaymentMethodCreate,
    PaymentMethodPublic,
    SavedAddressCreate,
    SavedAddressPublic,
    UserLocationUpdate,
    UserProfileUpdate,
    UserPublic,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


def _to_public(user: User) -> UserPublic:
    return UserPublic(
        id=user.id,
        name=user.name,
        email=user.email,
        role=role_of(user),
        phone_number=user.phone_number,
        location_lat=user.location_lat,
        location_lng=user.location_lng,
        rating=float(user.rating_average or 0.0),
        rating_count=int(user.rating_count or 0),
        created_at=user.created_at,
    )


def mask_card_number(card_number: str) -> str:
    """Keep only the last four digits: **** **** **** 1234."""
    return f"**** **** **** {card_number[-4:]}"


def _address_to_public(a: SavedAddress) -> SavedAddressPublic:
    return SavedAddressPublic(id=a.id, name=a.name, address=a.address, lat=a.lat, lng=a.lng, created_at=a.created_at)


def _payment_to_public(pm: PaymentMethod) -> PaymentMethodPublic:
    return PaymentMethodPublic(
        id=pm.id,
        type=pm.type,
        card_number=mask_card_number(pm.card_number),
        expiry_date=pm.expiry_date,
        is_default=bool(pm.is_default),
        created_at=pm.created_at,
    )


def _own_payment_method(db: Session, user: User, payment_method_id: UUID) -> PaymentMethod:
    pm = db.scalar(
        select(PaymentMethod).where(PaymentMethod.id == payment_method_id, PaymentMethod.user_id == user.id)
    )
    if not pm:
        raise NotFound("Payment method not found.")
    return pm


def _clear_default(db: Session, user_id: UUID) -> None:
    db.execute(
        update(PaymentMethod)
        .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session=False)
    )


def _list_payment_methods(db: Session, user_id: UUID) -> List[PaymentMethodPublic]:
    rows = db.scalars(
        select(PaymentMethod).where(PaymentMethod.user_id == user_id).order_by(PaymentMethod.created_at)
    ).all()
    return [_payment_to_public(pm) for pm in rows]


@router.get(
    "/me",
    response_model=UserPublic,
    summary="Get current user",
    description="Return the authenticated user's profile.",
    operation_id="users_me",
)
def get_me(current_user: User = Depends(get_current_user)) -> UserPublic:
    """
    Get the current authenticated user's profile.

    Authentication: Bearer JWT access token.
    """
    return _to_public(current_user)


@router.patch(
    "/me",
    response_model=UserPublic,
    summary="Update current user",
    description="Update name and/or phone number of the authenticated user.",
    operation_id="users_update_me",
)
def update_me(
    payload: UserProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserPublic:
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name") is not None:
        current_user.name = changes["name"].strip()
    if "phone_number" in changes:
        current_user.phone_number = changes["phone_number"]
    db.commit()
    db.refresh(current_user)
    return _to_public(current_user)


@router.patch(
    "/me/location",
    response_model=UserPublic,
    summary="Update current user location",
    description="Persist the authenticated user's last known lat/lng.",
    operation_id="users_update_location",
)
def update_my_location(
    payload: UserLocationUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserPublic:
    current_user.location_lat = payload.lat
    current_user.location_lng = payload.lng
    db.commit()
    db.refresh(current_user)
    return _to_public(current_user)


@router.get(
    "/saved-addresses",
    response_model=List[SavedAddressPublic],
    summary="List saved addresses",
    operation_id="users_list_saved_addresses",
)
def list_saved_addresses(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[SavedAddressPublic]:
    rows = db.scalars(
        select(SavedAddress).where(SavedAddress.user_id == current_user.id).order_by(SavedAddress.created_at)
    ).all()
    return [_address_to_public(a) for a in rows]


@router.post(
    "/saved-addresses",
    response_model=List[SavedAddressPublic],
    status_code=status.HTTP_201_CREATED,
    summary="Add a saved address",
    description="Store a named place and return the caller's full list of saved addresses.",
    operation_id="users_add_saved_address",
)
def add_saved_address(
    payload: SavedAddressCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[SavedAddressPublic]:
    db.add(
        SavedAddress(
            user_id=current_user.id,
            name=payload.name.strip(),
            address=payload.address.strip(),
            lat=payload.lat,
            lng=payload.lng,
        )
    )
    db.commit()
    return list_saved_addresses(current_user=current_user, db=db)


@router.delete(
    "/saved-addresses/{address_id}",
    response_model=List[SavedAddressPublic],
    summary="Remove a saved address",
    operation_id="users_remove_saved_address",
)
def remove_saved_address(
    address_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[SavedAddressPublic]:
    address = db.scalar(
        select(SavedAddress).where(SavedAddress.id == address_id, SavedAddress.user_id == current_user.id)
    )
    if not address:
        raise NotFound("Saved address not found.")
    db.delete(address)
    db.commit()
    return list_saved_addresses(current_user=current_user, db=db)


@router.get(
    "/payment-methods",
    response_model=List[PaymentMethodPublic],
    summary="List payment methods",
    description="Card numbers are always returned masked.",
    operation_id="users_list_payment_methods",
)
def list_payment_methods(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[PaymentMethodPublic]:
    return _list_payment_methods(db, current_user.id)


@router.post(
    "/payment-methods",
    response_model=List[PaymentMethodPublic],
    status_code=status.HTTP_201_CREATED,
    summary="Add a payment method",
    description=(
        "Store a payment method. The first method added (or one sent with is_default=true) "
        "becomes the default. The CVV is never stored."
    ),
    operation_id="users_add_payment_method",
)
def add_payment_method(
    payload: PaymentMethodCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[PaymentMethodPublic]:
    has_any = db.scalar(select(PaymentMethod.id).where(PaymentMethod.user_id == current_user.id).limit(1))
    make_default = payload.is_default or has_any is None
    if make_default:
        _clear_default(db, current_user.id)

    db.add(
        PaymentMethod(
            user_id=current_user.id,
            type=payload.type,
            card_number=payload.card_number,
            expiry_date=payload.expiry_date,
            is_default=make_default,
        )
    )
    db.commit()
    logger.info("User %s added a %s payment method", current_user.id, payload.type.value)
    return _list_payment_methods(db, current_user.id)


@router.delete(
    "/payment-methods/{payment_method_id}",
    response_model=List[PaymentMethodPublic],
    summary="Remove a payment method",
    description="Removing the default promotes the oldest remaining method.",
    operation_id="users_remove_payment_method",
)
def remove_payment_method(
    payment_method_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[PaymentMethodPublic]:
    pm = _own_payment_method(db, current_user, payment_method_id)
    was_default = bool(pm.is_default)
    db.delete(pm)
    db.flush()

    if was_default:
        oldest = db.scalar(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == current_user.id)
            .order_by(PaymentMethod.created_at)
            .limit(1)
        )
        if oldest is not None:
            oldest.is_default = True
    db.commit()
    return _list_payment_methods(db, current_user.id)


@router.patch(
    "/payment-methods/{payment_method_id}/set-default",
    response_model=List[PaymentMethodPublic],
    summary="Set default payment method",
    operation_id="users_set_default_payment_method",
)
def set_default_payment_method(
    payment_method_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[PaymentMethodPublic]:
    pm = _own_payment_method(db, current_user, payment_method_id)
    _clear_default(db, current_user.id)
    db.execute(
        update(PaymentMethod)
        .where(PaymentMethod.id == pm.id)
        .values(is_default=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return _list_payment_methods(db, current_user.id)


@router.get(
    "",
    response_model=List[UserPublic],
    summary="List users (admin)",
    operation_id="users_list",
)
def list_users(
    role: str | None = Query(default=None, pattern="^(rider|driver|admin)$", description="Filter by role."),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[UserPublic]:
    """
    List user accounts, newest first.

    Auth:
    - role must be 'admin'
    """
    stmt = select(User)
    if role:
        stmt = stmt.where(User.role == UserRole(role))
    stmt = stmt.order_by(User.created_at.desc()).limit(limit).offset(offset)
    return [_to_public(u) for u in db.scalars(stmt).all()]


@router.get(
    "/{user_id}",
    response_model=UserPublic,
    summary="Get a user (admin)",
    operation_id="users_get",
)
def get_user(
    user_id: UUID,
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> UserPublic:
    user = db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise NotFound("User not found.")
    return _to_public(user)
