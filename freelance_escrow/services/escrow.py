"""Read-side escrow queries shared by the HTTP layer."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor, ActorRole
from freelance_escrow.models import Escrow, EscrowEvent
from freelance_escrow.services.milestones import get_milestone
from freelance_escrow.utils.errors import NotFound, Unauthorized


def _ensure_party(actor: Actor, escrow: Escrow) -> None:
    if actor.role in {ActorRole.ADMIN, ActorRole.SYSTEM}:
        return
    if actor.role is ActorRole.CLIENT and actor.user_id == escrow.client_id:
        return
    if actor.role is ActorRole.FREELANCER and actor.user_id == escrow.freelancer_id:
        return
    raise Unauthorized("Not a party to this escrow.")


def get_escrow(db: Session, escrow_id: int, *, actor: Actor) -> Escrow:
    escrow = db.get(Escrow, escrow_id, populate_existing=True)
    if escrow is None:
        raise NotFound("Escrow not found.", code="ESCROW_NOT_FOUND", details={"escrow_id": escrow_id})
    _ensure_party(actor, escrow)
    return escrow


def get_escrow_for_milestone(db: Session, milestone_id: int, *, actor: Actor) -> Escrow:
    milestone = get_milestone(db, milestone_id, actor=actor)
    escrow = db.scalars(
        select(Escrow).where(Escrow.milestone_id == milestone.id).execution_options(populate_existing=True)
    ).first()
    if escrow is None:
        raise NotFound(
            "No escrow exists for this milestone.",
            code="ESCROW_NOT_FOUND",
            details={"milestone_id": milestone_id},
        )
    return escrow


def list_escrow_events(db: Session, escrow_id: int, *, actor: Actor) -> list[EscrowEvent]:
    escrow = get_escrow(db, escrow_id, actor=actor)
    stmt = select(EscrowEvent).where(EscrowEvent.escrow_id == escrow.id).order_by(EscrowEvent.id)
    return list(db.scalars(stmt))


__all__ = ["get_escrow", "get_escrow_for_milestone", "list_escrow_events"]
