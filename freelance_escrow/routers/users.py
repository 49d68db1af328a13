"""User endpoints."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor, ActorRole
from freelance_escrow.db import get_db
from freelance_escrow.models.api_key import ApiKey, ApiScope
from freelance_escrow.models.user import User
from freelance_escrow.schemas.user import PayoutAccountUpdate, UserCreate, UserRead
from freelance_escrow.security import actor_from_key, get_actor, require_scope
from freelance_escrow.utils.audit import log_audit
from freelance_escrow.utils.errors import error_response

router = APIRouter(prefix="/users", tags=["users"])


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("USER_NOT_FOUND", "User not found."),
        )
    return user


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> User:
    """Register a marketplace participant."""

    user = User(**payload.model_dump())
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("USER_CREATE_FAILED", "Could not create user."),
        ) from exc

    log_audit(
        db,
        actor=actor_from_key(api_key).tag,
        action="CREATE_USER",
        entity="User",
        entity_id=user.id,
        data={"username": user.username, "email": user.email},
    )
    db.commit()
    db.refresh(user)
    return user


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> User:
    """Admins can read anyone; parties can read themselves."""

    if actor.role is not ActorRole.ADMIN and actor.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response("FORBIDDEN", "Cannot read another user's profile."),
        )
    return _get_user_or_404(db, user_id)


@router.put("/{user_id}/payout-account", response_model=UserRead)
def set_payout_account(
    user_id: int,
    payload: PayoutAccountUpdate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> User:
    """Attach the connected Stripe account that receives the user's payouts."""

    user = _get_user_or_404(db, user_id)
    user.stripe_account_id = payload.stripe_account_id
    log_audit(
        db,
        actor=actor_from_key(api_key).tag,
        action="SET_PAYOUT_ACCOUNT",
        entity="User",
        entity_id=user.id,
        data={"stripe_account_id": payload.stripe_account_id},
    )
    db.commit()
    db.refresh(user)
    return user
