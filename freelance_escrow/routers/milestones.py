"""Milestone lifecycle endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor
from freelance_escrow.db import get_db
from freelance_escrow.models import Escrow, Milestone
from freelance_escrow.schemas.escrow import EscrowOrderRead, EscrowRead, FundPayload, GatewayOrderRead
from freelance_escrow.schemas.milestone import (
    DeliverableSubmission,
    MilestoneRead,
    MilestoneReview,
    MilestoneUpdate,
)
from freelance_escrow.security import get_actor
from freelance_escrow.services import escrow as escrow_service
from freelance_escrow.services import milestones as milestones_service
from freelance_escrow.services import state_machine
from freelance_escrow.services.fees import fee_policy_from_settings
from freelance_escrow.services.gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/milestones", tags=["milestones"])


@router.get("/{milestone_id}", response_model=MilestoneRead)
def read_milestone(
    milestone_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Milestone:
    return milestones_service.get_milestone(db, milestone_id, actor=actor)


@router.patch("/{milestone_id}", response_model=MilestoneRead)
def update_milestone(
    milestone_id: int,
    payload: MilestoneUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Milestone:
    return milestones_service.update_milestone(db, milestone_id, payload, actor=actor)


@router.post("/{milestone_id}/propose", response_model=MilestoneRead)
def propose_milestone(
    milestone_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Milestone:
    return state_machine.propose_milestone(db, milestone_id, actor=actor)


@router.post("/{milestone_id}/escrow-order", response_model=EscrowOrderRead, status_code=status.HTTP_201_CREATED)
def create_escrow_order(
    milestone_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> EscrowOrderRead:
    escrow, order = state_machine.create_escrow_order(
        db,
        milestone_id,
        actor=actor,
        gateway=gateway,
        fee_policy=fee_policy_from_settings(),
    )
    return EscrowOrderRead(
        escrow=EscrowRead.model_validate(escrow),
        order=GatewayOrderRead.model_validate(order),
    )


@router.post("/{milestone_id}/fund", response_model=EscrowRead)
def fund_escrow(
    milestone_id: int,
    payload: FundPayload,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> Escrow:
    proof = state_machine.PaymentProof(
        order_id=payload.order_id,
        provider_signature=payload.provider_signature,
        payment_ref=payload.payment_ref,
    )
    return state_machine.fund_escrow(db, milestone_id, proof, actor=actor, gateway=gateway)


@router.post("/{milestone_id}/start", response_model=MilestoneRead)
def start_milestone(
    milestone_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Milestone:
    return state_machine.start_milestone(db, milestone_id, actor=actor)


@router.post("/{milestone_id}/submit", response_model=MilestoneRead)
def submit_deliverable(
    milestone_id: int,
    payload: DeliverableSubmission,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Milestone:
    return state_machine.submit_deliverable(
        db,
        milestone_id,
        notes=payload.notes,
        attachment_refs=payload.attachment_refs,
        actor=actor,
    )


@router.post("/{milestone_id}/review", response_model=MilestoneRead)
def review_milestone(
    milestone_id: int,
    payload: MilestoneReview,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> Milestone:
    return state_machine.review_milestone(
        db,
        milestone_id,
        approve=payload.approve,
        notes=payload.notes,
        actor=actor,
        gateway=gateway,
    )


@router.get("/{milestone_id}/escrow", response_model=EscrowRead)
def read_milestone_escrow(
    milestone_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Escrow:
    return escrow_service.get_escrow_for_milestone(db, milestone_id, actor=actor)
