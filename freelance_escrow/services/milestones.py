"""Milestone planning services (creation, edits and reads).

Status changes are not made here; they go through ``state_machine``.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor, ActorRole
from freelance_escrow.models import Escrow, Milestone, MilestoneStatus
from freelance_escrow.schemas.milestone import MilestoneCreate, MilestoneUpdate
from freelance_escrow.services.fees import to_money
from freelance_escrow.services.workspaces import ensure_participant, get_workspace
from freelance_escrow.utils.audit import log_audit
from freelance_escrow.utils.errors import ConcurrentModification, InvalidTransition, NotFound, ValidationError
from freelance_escrow.utils.time import as_utc

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = frozenset({MilestoneStatus.DRAFT, MilestoneStatus.PENDING})
# Fields the escrow order and the auto-release deadline are computed from.
LOCKED_AFTER_ORDER = ("amount", "due_date", "payment_due_date")


def _check_dates(due_date, payment_due_date) -> None:
    if due_date is not None and payment_due_date is not None and as_utc(payment_due_date) < as_utc(due_date):
        raise ValidationError(
            "'payment_due_date' cannot be before 'due_date'.",
            details={"field": "payment_due_date"},
        )


def create_milestone(db: Session, workspace_id: int, payload: MilestoneCreate, *, actor: Actor) -> Milestone:
    """Append a milestone to the workspace plan.

    Milestones proposed by the freelancer start as ``draft`` until proposed to
    the client; milestones added by the client or an admin start ``pending``.
    """

    workspace = get_workspace(db, workspace_id, actor=actor)
    _check_dates(payload.due_date, payload.payment_due_date)
    position = (
        db.scalar(select(func.max(Milestone.position)).where(Milestone.workspace_id == workspace.id)) or 0
    ) + 1
    milestone = Milestone(
        workspace_id=workspace.id,
        position=position,
        title=payload.title,
        description=payload.description,
        amount=to_money(payload.amount),
        currency=payload.currency or workspace.currency,
        due_date=payload.due_date,
        payment_due_date=payload.payment_due_date,
        status=MilestoneStatus.DRAFT if actor.role is ActorRole.FREELANCER else MilestoneStatus.PENDING,
        attachment_refs=[],
    )
    db.add(milestone)
    db.flush()
    log_audit(
        db,
        actor=actor.tag,
        action="MILESTONE_CREATED",
        entity="Milestone",
        entity_id=milestone.id,
        data={"workspace_id": workspace.id, "amount": str(milestone.amount), "position": position},
    )
    db.commit()
    db.refresh(milestone)
    logger.info("Milestone created", extra={"milestone_id": milestone.id, "workspace_id": workspace.id})
    return milestone


def get_milestone(db: Session, milestone_id: int, *, actor: Actor) -> Milestone:
    milestone = db.get(Milestone, milestone_id, populate_existing=True)
    if milestone is None:
        raise NotFound("Milestone not found.", code="MILESTONE_NOT_FOUND", details={"milestone_id": milestone_id})
    ensure_participant(actor, milestone.workspace)
    return milestone


def list_milestones(db: Session, workspace_id: int, *, actor: Actor) -> list[Milestone]:
    workspace = get_workspace(db, workspace_id, actor=actor)
    stmt = select(Milestone).where(Milestone.workspace_id == workspace.id).order_by(Milestone.position)
    return list(db.scalars(stmt))


def update_milestone(db: Session, milestone_id: int, payload: MilestoneUpdate, *, actor: Actor) -> Milestone:
    """Edit a milestone that is still being planned."""

    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    for field in ("title", "amount", "due_date"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"'{field}' cannot be null.", details={"field": field})
    milestone = get_milestone(db, milestone_id, actor=actor)
    if not changes:
        return milestone
    if milestone.status not in EDITABLE_STATUSES:
        raise InvalidTransition(
            "Only draft or pending milestones can be edited.",
            details={"milestone_status": milestone.status.value},
        )
    has_order = db.scalar(select(Escrow.id).where(Escrow.milestone_id == milestone.id)) is not None
    locked = [field for field in LOCKED_AFTER_ORDER if field in changes]
    if has_order and locked:
        raise InvalidTransition(
            "Amount and dates are locked once an escrow order exists.",
            details={"milestone_status": milestone.status.value, "locked_fields": locked},
        )
    if "amount" in changes:
        changes["amount"] = to_money(changes["amount"])
    _check_dates(changes.get("due_date", milestone.due_date), changes.get("payment_due_date", milestone.payment_due_date))

    result = db.execute(
        update(Milestone)
        .where(
            Milestone.id == milestone.id,
            Milestone.status.in_(EDITABLE_STATUSES),
            Milestone.version == milestone.version,
        )
        .values(version=Milestone.version + 1, **changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ConcurrentModification(
            "Milestone was modified concurrently; refetch and retry.",
            details={"milestone_id": milestone.id},
        )
    log_audit(
        db,
        actor=actor.tag,
        action="MILESTONE_UPDATED",
        entity="Milestone",
        entity_id=milestone.id,
        data={key: str(value) for key, value in changes.items()},
    )
    db.commit()
    db.refresh(milestone)
    logger.info("Milestone updated", extra={"milestone_id": milestone.id, "fields": sorted(changes)})
    return milestone


__all__ = ["create_milestone", "get_milestone", "list_milestones", "update_milestone"]
