"""Escrow settlement endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor
from freelance_escrow.db import get_db
from freelance_escrow.models import Escrow, EscrowEvent
from freelance_escrow.schemas.escrow import DisputePayload, EscrowEventRead, EscrowRead, ReleasePayload, ResolvePayload
from freelance_escrow.security import get_actor
from freelance_escrow.services import escrow as escrow_service
from freelance_escrow.services import state_machine
from freelance_escrow.services.gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/escrows", tags=["escrow"])


@router.get("/{escrow_id}", response_model=EscrowRead)
def read_escrow(
    escrow_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Escrow:
    return escrow_service.get_escrow(db, escrow_id, actor=actor)


@router.get("/{escrow_id}/events", response_model=list[EscrowEventRead])
def list_events(
    escrow_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[EscrowEvent]:
    return escrow_service.list_escrow_events(db, escrow_id, actor=actor)


@router.post("/{escrow_id}/release", response_model=EscrowRead)
def release_funds(
    escrow_id: int,
    payload: ReleasePayload,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> Escrow:
    return state_machine.release_funds(db, escrow_id, reason=payload.reason, actor=actor, gateway=gateway)


@router.post("/{escrow_id}/dispute", response_model=EscrowRead)
def raise_dispute(
    escrow_id: int,
    payload: DisputePayload,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Escrow:
    return state_machine.raise_dispute(db, escrow_id, reason=payload.reason, actor=actor)


@router.post("/{escrow_id}/resolve", response_model=EscrowRead)
def resolve_dispute(
    escrow_id: int,
    payload: ResolvePayload,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> Escrow:
    return state_machine.resolve_dispute(
        db,
        escrow_id,
        resolution=payload.resolution,
        notes=payload.notes,
        actor=actor,
        gateway=gateway,
        freelancer_amount=payload.freelancer_amount,
    )
