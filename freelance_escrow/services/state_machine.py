"""Escrow state machine.

Sole writer of milestone and escrow status. Every command follows the same
shape: validate the payload, load the (milestone, escrow) pair, check the
actor's role and ownership, check the transition table, call the payment
gateway if money moves, then apply compare-and-swap updates to both rows and
append the outbox event and audit entry in one commit.
"""
from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterator

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from freelance_escrow.config import Settings, get_settings
from freelance_escrow.core.actors import OVERDUE_SWEEP_ACTOR, PAYMENT_GATEWAY_ACTOR, Actor, ActorRole
from freelance_escrow.models import (
    ClientApprovalStatus,
    DisputeResolution,
    Escrow,
    EscrowEvent,
    EscrowStatus,
    Milestone,
    MilestoneStatus,
    User,
    Workspace,
)
from freelance_escrow.services.fees import FeePolicy, fee_policy_from_settings, to_money
from freelance_escrow.services.gateway import GatewayOrder, PaymentGateway
from freelance_escrow.utils.audit import log_audit
from freelance_escrow.utils.errors import (
    ConcurrentModification,
    EscrowDomainError,
    GatewayError,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from freelance_escrow.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 500
MAX_REASON_LENGTH = 1000


class Command(str, enum.Enum):
    PROPOSE = "propose"
    CREATE_ORDER = "create_order"
    FUND = "fund"
    START = "start"
    SUBMIT_DELIVERABLE = "submit_deliverable"
    APPROVE = "approve"
    REJECT = "reject"
    RELEASE = "release"
    AUTO_RELEASE = "auto_release"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    MARK_OVERDUE = "mark_overdue"


@dataclass(frozen=True)
class Rule:
    """Who may issue a command and from which (escrow, milestone) states.

    ``None`` inside ``escrow_from`` means "no escrow exists yet";
    ``milestone_from=None`` accepts any milestone status.
    """

    roles: frozenset[ActorRole]
    escrow_from: frozenset[EscrowStatus | None]
    milestone_from: frozenset[MilestoneStatus] | None


_OPEN_MILESTONE = frozenset(set(MilestoneStatus) - {MilestoneStatus.PAID, MilestoneStatus.COMPLETED})

TRANSITIONS: dict[Command, Rule] = {
    Command.PROPOSE: Rule(
        roles=frozenset({ActorRole.FREELANCER}),
        escrow_from=frozenset({None}),
        milestone_from=frozenset({MilestoneStatus.DRAFT}),
    ),
    Command.CREATE_ORDER: Rule(
        roles=frozenset({ActorRole.CLIENT}),
        escrow_from=frozenset({None, EscrowStatus.PENDING}),
        milestone_from=frozenset(
            {
                MilestoneStatus.PENDING,
                MilestoneStatus.APPROVED,
                MilestoneStatus.IN_PROGRESS,
                MilestoneStatus.PAYMENT_OVERDUE,
            }
        ),
    ),
    Command.FUND: Rule(
        roles=frozenset({ActorRole.CLIENT, ActorRole.ADMIN, ActorRole.SYSTEM}),
        escrow_from=frozenset({EscrowStatus.PENDING}),
        milestone_from=_OPEN_MILESTONE,
    ),
    Command.START: Rule(
        roles=frozenset({ActorRole.FREELANCER}),
        escrow_from=frozenset({None, EscrowStatus.PENDING, EscrowStatus.ACTIVE}),
        milestone_from=frozenset({MilestoneStatus.PENDING, MilestoneStatus.APPROVED, MilestoneStatus.REJECTED}),
    ),
    Command.SUBMIT_DELIVERABLE: Rule(
        roles=frozenset({ActorRole.FREELANCER}),
        escrow_from=frozenset({EscrowStatus.ACTIVE}),
        milestone_from=frozenset({MilestoneStatus.IN_PROGRESS, MilestoneStatus.APPROVED}),
    ),
    Command.APPROVE: Rule(
        roles=frozenset({ActorRole.CLIENT}),
        escrow_from=frozenset({EscrowStatus.ACTIVE}),
        milestone_from=frozenset({MilestoneStatus.REVIEW}),
    ),
    Command.REJECT: Rule(
        roles=frozenset({ActorRole.CLIENT}),
        escrow_from=frozenset({EscrowStatus.ACTIVE}),
        milestone_from=frozenset({MilestoneStatus.REVIEW}),
    ),
    Command.RELEASE: Rule(
        roles=frozenset({ActorRole.CLIENT, ActorRole.ADMIN}),
        escrow_from=frozenset({EscrowStatus.ACTIVE}),
        milestone_from=_OPEN_MILESTONE,
    ),
    Command.AUTO_RELEASE: Rule(
        roles=frozenset({ActorRole.SYSTEM}),
        escrow_from=frozenset({EscrowStatus.ACTIVE}),
        milestone_from=_OPEN_MILESTONE,
    ),
    Command.RAISE_DISPUTE: Rule(
        roles=frozenset({ActorRole.CLIENT, ActorRole.FREELANCER}),
        escrow_from=frozenset({EscrowStatus.ACTIVE}),
        milestone_from=_OPEN_MILESTONE,
    ),
    Command.RESOLVE_DISPUTE: Rule(
        roles=frozenset({ActorRole.ADMIN}),
        escrow_from=frozenset({EscrowStatus.DISPUTED}),
        milestone_from=None,
    ),
    Command.MARK_OVERDUE: Rule(
        roles=frozenset({ActorRole.SYSTEM}),
        escrow_from=frozenset({None, EscrowStatus.PENDING}),
        milestone_from=frozenset({MilestoneStatus.PENDING, MilestoneStatus.APPROVED, MilestoneStatus.IN_PROGRESS}),
    ),
}


@dataclass(frozen=True)
class PaymentProof:
    order_id: str
    provider_signature: str
    payment_ref: str | None = None


# --------------------------------------------------------------------------
# Plumbing
# --------------------------------------------------------------------------


@contextmanager
def _transaction(db: Session) -> Iterator[None]:
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


def _load_milestone(db: Session, milestone_id: int, *, for_update: bool = False) -> Milestone:
    stmt = select(Milestone).where(Milestone.id == milestone_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    milestone = db.scalars(stmt).first()
    if milestone is None:
        raise NotFound("Milestone not found.", code="MILESTONE_NOT_FOUND", details={"milestone_id": milestone_id})
    return milestone


def _load_escrow(db: Session, escrow_id: int, *, for_update: bool = False) -> Escrow:
    stmt = select(Escrow).where(Escrow.id == escrow_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    escrow = db.scalars(stmt).first()
    if escrow is None:
        raise NotFound("Escrow not found.", code="ESCROW_NOT_FOUND", details={"escrow_id": escrow_id})
    return escrow


def _escrow_for_milestone(db: Session, milestone_id: int, *, for_update: bool = False) -> Escrow | None:
    stmt = select(Escrow).where(Escrow.milestone_id == milestone_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalars(stmt).first()


def _check_role(command: Command, actor: Actor) -> None:
    rule = TRANSITIONS[command]
    if actor.role not in rule.roles:
        raise Unauthorized(
            f"Role '{actor.role.value}' cannot perform '{command.value}'.",
            details={"command": command.value, "allowed_roles": sorted(r.value for r in rule.roles)},
        )


def _check_party(actor: Actor, *, client_id: int, freelancer_id: int) -> None:
    """Clients and freelancers may only act on their own engagements."""

    if actor.role is ActorRole.CLIENT and actor.user_id != client_id:
        raise Unauthorized("Only the workspace client can perform this action.")
    if actor.role is ActorRole.FREELANCER and actor.user_id != freelancer_id:
        raise Unauthorized("Only the workspace freelancer can perform this action.")


def _check_state(command: Command, escrow: Escrow | None, milestone: Milestone) -> None:
    rule = TRANSITIONS[command]
    escrow_status = escrow.status if escrow is not None else None
    milestone_ok = rule.milestone_from is None or milestone.status in rule.milestone_from
    if escrow_status in rule.escrow_from and milestone_ok:
        return
    message = f"Cannot '{command.value}' from the current state."
    if escrow_status is EscrowStatus.DISPUTED:
        message = f"Escrow is frozen by an open dispute; cannot '{command.value}'."
    raise InvalidTransition(message, details=_state_details(command, escrow, milestone))


def _state_details(command: Command, escrow: Escrow | None, milestone: Milestone) -> dict[str, Any]:
    return {
        "command": command.value,
        "escrow_status": escrow.status.value if escrow is not None else None,
        "milestone_status": milestone.status.value,
        "client_approval_status": escrow.client_approval_status.value if escrow is not None else None,
    }


def _cas_escrow(db: Session, escrow: Escrow, expected: EscrowStatus, **values: Any) -> None:
    result = db.execute(
        update(Escrow)
        .where(Escrow.id == escrow.id, Escrow.status == expected, Escrow.version == escrow.version)
        .values(version=Escrow.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModification(
            "Escrow was modified concurrently; refetch and retry.",
            details={"escrow_id": escrow.id, "expected_status": expected.value},
        )


def _cas_milestone(db: Session, milestone: Milestone, **values: Any) -> None:
    result = db.execute(
        update(Milestone)
        .where(
            Milestone.id == milestone.id,
            Milestone.status == milestone.status,
            Milestone.version == milestone.version,
        )
        .values(version=Milestone.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModification(
            "Milestone was modified concurrently; refetch and retry.",
            details={"milestone_id": milestone.id, "expected_status": milestone.status.value},
        )


def _emit(db: Session, *, escrow_id: int | None, milestone_id: int, kind: str, actor: Actor, data: dict[str, Any]) -> None:
    """Queue the domain event in the outbox and audit it, inside the current transaction."""

    payload = {"milestone_id": milestone_id, **data}
    db.add(
        EscrowEvent(
            milestone_id=milestone_id,
            escrow_id=escrow_id,
            kind=kind,
            data_json={**payload, "actor": actor.tag},
            at=utcnow(),
        )
    )
    log_audit(
        db,
        actor=actor.tag,
        action=kind,
        entity="Escrow" if escrow_id is not None else "Milestone",
        entity_id=escrow_id if escrow_id is not None else milestone_id,
        data=payload,
    )


def _refresh(db: Session, *objects: Any) -> None:
    for obj in objects:
        if obj is not None:
            db.refresh(obj)


def _require_text(value: str | None, field: str, *, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"'{field}' is required.", details={"field": field})
    if len(text) > max_length:
        raise ValidationError(
            f"'{field}' exceeds {max_length} characters.",
            details={"field": field, "max_length": max_length},
        )
    return text


def _optional_text(value: str | None, field: str, *, max_length: int) -> str | None:
    text = (value or "").strip()
    if len(text) > max_length:
        raise ValidationError(
            f"'{field}' exceeds {max_length} characters.",
            details={"field": field, "max_length": max_length},
        )
    return text or None


def auto_release_due(escrow: Escrow, milestone: Milestone, *, now: datetime, grace: timedelta) -> bool:
    """Whether the system may release this escrow without client approval."""

    if escrow.status is not EscrowStatus.ACTIVE or escrow.dispute_raised:
        return False
    if escrow.client_approval_status is ClientApprovalStatus.REJECTED:
        return False
    submitted_at = as_utc(escrow.deliverable_submitted_at)
    if escrow.deliverable_submitted and submitted_at is not None and now - submitted_at >= grace:
        return True
    payment_due = as_utc(milestone.payment_due_date)
    return payment_due is not None and payment_due <= now


# --------------------------------------------------------------------------
# Money movement
# --------------------------------------------------------------------------


def _transfer_key(escrow: Escrow, amount: Decimal) -> str:
    return f"escrow:{escrow.id}:transfer:{to_money(amount)}"


def _refund_key(escrow: Escrow, amount: Decimal) -> str:
    return f"escrow:{escrow.id}:refund:{to_money(amount)}"


def _payout_destination(db: Session, escrow: Escrow) -> str | None:
    freelancer = db.get(User, escrow.freelancer_id)
    return freelancer.stripe_account_id if freelancer is not None else None


def _record_unreconciled_movement(db: Session, *, escrow_id: int, actor: Actor, moved: dict[str, str], error: EscrowDomainError) -> None:
    """Persist gateway references whose transition could not be committed.

    Money left the platform but the escrow row did not change; operators
    reconcile from this audit entry. Retrying reuses the same idempotency keys.
    """

    logger.error(
        "Gateway movement not reflected in escrow state",
        extra={"escrow_id": escrow_id, "refs": moved, "error_code": error.code},
    )
    log_audit(
        db,
        actor=actor.tag,
        action="GATEWAY_MOVEMENT_UNRECORDED",
        entity="Escrow",
        entity_id=escrow_id,
        data={"refs": moved, "error_code": error.code, "error": error.message},
    )
    db.commit()


def _settle(
    db: Session,
    escrow: Escrow,
    milestone: Milestone,
    *,
    actor: Actor,
    gateway: PaymentGateway,
    moved: dict[str, str],
    transfer_amount: Decimal,
    refund_amount: Decimal,
    final_status: EscrowStatus,
    milestone_status: MilestoneStatus,
    escrow_values: dict[str, Any],
    kind: str,
    data: dict[str, Any],
) -> None:
    """Move money through the gateway, then commit the terminal state."""

    now = utcnow()
    values: dict[str, Any] = dict(escrow_values)
    if transfer_amount > 0:
        transfer_ref = gateway.transfer_to_freelancer(
            escrow.id,
            transfer_amount,
            currency=escrow.currency,
            destination=_payout_destination(db, escrow),
            idempotency_key=_transfer_key(escrow, transfer_amount),
        )
        moved["transfer_ref"] = transfer_ref
        values.update(transfer_ref=transfer_ref, released_amount=transfer_amount, released_at=now)
    if refund_amount > 0:
        refund_ref = gateway.refund_to_client(
            escrow.id,
            refund_amount,
            currency=escrow.currency,
            order_id=escrow.order_id,
            idempotency_key=_refund_key(escrow, refund_amount),
        )
        moved["refund_ref"] = refund_ref
        values.update(refund_ref=refund_ref, refunded_amount=refund_amount, refunded_at=now)

    _cas_escrow(db, escrow, escrow.status, status=final_status, **values)
    _cas_milestone(db, milestone, status=milestone_status)
    _emit(
        db,
        escrow_id=escrow.id,
        milestone_id=milestone.id,
        kind=kind,
        actor=actor,
        data={
            **data,
            "status": final_status.value,
            "transfer_amount": str(transfer_amount),
            "refund_amount": str(refund_amount),
        },
    )


# --------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------


def propose_milestone(db: Session, milestone_id: int, *, actor: Actor) -> Milestone:
    """Freelancer moves a draft milestone to ``pending`` for the client to fund."""

    _check_role(Command.PROPOSE, actor)
    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        workspace = milestone.workspace
        _check_party(actor, client_id=workspace.client_id, freelancer_id=workspace.freelancer_id)
        _check_state(Command.PROPOSE, _escrow_for_milestone(db, milestone_id), milestone)
        _cas_milestone(db, milestone, status=MilestoneStatus.PENDING)
        _emit(db, escrow_id=None, milestone_id=milestone.id, kind="MILESTONE_PROPOSED", actor=actor, data={})
    _refresh(db, milestone)
    logger.info("Milestone proposed", extra={"milestone_id": milestone.id})
    return milestone


def create_escrow_order(
    db: Session,
    milestone_id: int,
    *,
    actor: Actor,
    gateway: PaymentGateway,
    fee_policy: FeePolicy | None = None,
) -> tuple[Escrow, GatewayOrder]:
    """Open (or re-open) the funding order for a milestone's escrow."""

    _check_role(Command.CREATE_ORDER, actor)
    fee_policy = fee_policy or fee_policy_from_settings()
    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        workspace: Workspace = milestone.workspace
        _check_party(actor, client_id=workspace.client_id, freelancer_id=workspace.freelancer_id)
        escrow = _escrow_for_milestone(db, milestone_id, for_update=True)
        _check_state(Command.CREATE_ORDER, escrow, milestone)

        fees = fee_policy(milestone.amount, workspace.project_budget)
        order = gateway.create_order(fees.total_amount, milestone.currency, milestone.id)
        amounts = {
            "milestone_amount": fees.milestone_amount,
            "service_charge": fees.service_charge,
            "service_charge_percentage": fees.service_charge_percentage,
            "total_amount": fees.total_amount,
            "amount_to_freelancer": fees.amount_to_freelancer,
        }
        if escrow is None:
            escrow = Escrow(
                milestone_id=milestone.id,
                client_id=workspace.client_id,
                freelancer_id=workspace.freelancer_id,
                currency=milestone.currency,
                status=EscrowStatus.PENDING,
                order_id=order.order_id,
                **amounts,
            )
            db.add(escrow)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConcurrentModification(
                    "An escrow was opened concurrently for this milestone.",
                    details={"milestone_id": milestone.id},
                ) from exc
        else:
            _cas_escrow(db, escrow, EscrowStatus.PENDING, order_id=order.order_id, **amounts)
        _emit(
            db,
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            kind="ESCROW_ORDER_CREATED",
            actor=actor,
            data={
                "order_id": order.order_id,
                "total_amount": str(fees.total_amount),
                "service_charge": str(fees.service_charge),
                "currency": milestone.currency,
            },
        )
    _refresh(db, escrow)
    logger.info("Escrow order created", extra={"escrow_id": escrow.id, "milestone_id": milestone_id})
    return escrow, order


def _activate(db: Session, escrow: Escrow, milestone: Milestone, *, actor: Actor, payment_ref: str | None, via: str) -> None:
    _cas_escrow(
        db,
        escrow,
        EscrowStatus.PENDING,
        status=EscrowStatus.ACTIVE,
        activated_at=utcnow(),
        payment_ref=payment_ref,
    )
    if milestone.status is MilestoneStatus.PAYMENT_OVERDUE:
        _cas_milestone(db, milestone, status=MilestoneStatus.APPROVED)
    _emit(
        db,
        escrow_id=escrow.id,
        milestone_id=milestone.id,
        kind="ESCROW_FUNDED",
        actor=actor,
        data={"total_amount": str(escrow.total_amount), "payment_ref": payment_ref, "via": via},
    )


def fund_escrow(
    db: Session,
    milestone_id: int,
    payment_proof: PaymentProof,
    *,
    actor: Actor,
    gateway: PaymentGateway,
) -> Escrow:
    """Activate a pending escrow once the gateway confirms the client's payment."""

    _require_text(payment_proof.order_id, "order_id", max_length=128)
    _require_text(payment_proof.provider_signature, "provider_signature", max_length=512)
    _check_role(Command.FUND, actor)
    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        escrow = _escrow_for_milestone(db, milestone_id, for_update=True)
        if escrow is None:
            raise InvalidTransition(
                "No escrow order exists for this milestone.",
                details=_state_details(Command.FUND, None, milestone),
            )
        _check_party(actor, client_id=escrow.client_id, freelancer_id=escrow.freelancer_id)
        _check_state(Command.FUND, escrow, milestone)
        if escrow.order_id != payment_proof.order_id:
            raise ValidationError(
                "Payment proof does not match the escrow order.",
                details={"field": "order_id"},
            )
        if not gateway.verify_payment(payment_proof.order_id, payment_proof.provider_signature):
            raise GatewayError(
                "Payment could not be verified with the gateway.",
                code="PAYMENT_NOT_VERIFIED",
                details={"order_id": payment_proof.order_id},
            )
        _activate(db, escrow, milestone, actor=actor, payment_ref=payment_proof.payment_ref, via="payment_proof")
    _refresh(db, escrow, milestone)
    logger.info("Escrow funded", extra={"escrow_id": escrow.id, "milestone_id": milestone_id})
    return escrow


def activate_escrow_from_webhook(db: Session, *, order_id: str, payment_ref: str | None) -> Escrow | None:
    """Activate the escrow behind ``order_id`` after a signed PSP confirmation.

    Replays are harmless: an escrow already past ``pending`` is returned as is.
    """

    with _transaction(db):
        escrow = db.scalars(
            select(Escrow).where(Escrow.order_id == order_id).with_for_update().execution_options(populate_existing=True)
        ).first()
        if escrow is None:
            logger.warning("PSP confirmation for unknown order", extra={"order_id": order_id})
            return None
        if escrow.status is not EscrowStatus.PENDING:
            logger.info(
                "PSP confirmation for escrow already funded",
                extra={"escrow_id": escrow.id, "status": escrow.status.value},
            )
            return escrow
        milestone = _load_milestone(db, escrow.milestone_id)
        _check_state(Command.FUND, escrow, milestone)
        _activate(db, escrow, milestone, actor=PAYMENT_GATEWAY_ACTOR, payment_ref=payment_ref, via="webhook")
    _refresh(db, escrow)
    logger.info("Escrow funded from PSP webhook", extra={"escrow_id": escrow.id})
    return escrow


def start_milestone(db: Session, milestone_id: int, *, actor: Actor) -> Milestone:
    """Freelancer starts (or resumes after a rejection) work on a milestone."""

    _check_role(Command.START, actor)
    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        workspace = milestone.workspace
        _check_party(actor, client_id=workspace.client_id, freelancer_id=workspace.freelancer_id)
        escrow = _escrow_for_milestone(db, milestone_id)
        _check_state(Command.START, escrow, milestone)
        if escrow is not None and escrow.client_approval_status is ClientApprovalStatus.APPROVED:
            raise InvalidTransition(
                "Deliverable already approved; release the funds instead.",
                details=_state_details(Command.START, escrow, milestone),
            )
        _cas_milestone(db, milestone, status=MilestoneStatus.IN_PROGRESS)
        _emit(
            db,
            escrow_id=escrow.id if escrow is not None else None,
            milestone_id=milestone.id,
            kind="MILESTONE_STARTED",
            actor=actor,
            data={},
        )
    _refresh(db, milestone)
    logger.info("Milestone started", extra={"milestone_id": milestone_id})
    return milestone


def submit_deliverable(
    db: Session,
    milestone_id: int,
    *,
    notes: str | None,
    attachment_refs: list[str] | None,
    actor: Actor,
) -> Milestone:
    """Freelancer hands in the deliverable; the milestone goes to client review."""

    clean_notes = _optional_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    refs = list(attachment_refs or [])
    if any(not isinstance(ref, str) or not ref.strip() for ref in refs):
        raise ValidationError("Attachment references must be non-empty strings.", details={"field": "attachment_refs"})
    _check_role(Command.SUBMIT_DELIVERABLE, actor)

    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        escrow = _escrow_for_milestone(db, milestone_id, for_update=True)
        workspace = milestone.workspace
        _check_party(actor, client_id=workspace.client_id, freelancer_id=workspace.freelancer_id)
        _check_state(Command.SUBMIT_DELIVERABLE, escrow, milestone)
        assert escrow is not None
        if escrow.client_approval_status is ClientApprovalStatus.APPROVED:
            raise InvalidTransition(
                "Deliverable already approved; release the funds instead.",
                details=_state_details(Command.SUBMIT_DELIVERABLE, escrow, milestone),
            )
        now = utcnow()
        _cas_milestone(
            db,
            milestone,
            status=MilestoneStatus.REVIEW,
            submission_notes=clean_notes,
            submission_date=now,
            attachment_refs=[*(milestone.attachment_refs or []), *refs],
        )
        _cas_escrow(
            db,
            escrow,
            EscrowStatus.ACTIVE,
            deliverable_submitted=True,
            deliverable_submitted_at=now,
            client_approval_status=ClientApprovalStatus.NONE,
        )
        _emit(
            db,
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            kind="DELIVERABLE_SUBMITTED",
            actor=actor,
            data={"attachment_refs": refs},
        )
    _refresh(db, milestone, escrow)
    logger.info("Deliverable submitted", extra={"milestone_id": milestone_id, "escrow_id": escrow.id})
    return milestone


def review_milestone(
    db: Session,
    milestone_id: int,
    *,
    approve: bool,
    notes: str | None,
    actor: Actor,
    gateway: PaymentGateway | None = None,
    settings: Settings | None = None,
) -> Milestone:
    """Client approves or rejects a submitted deliverable.

    Rejection requires notes. With ``RELEASE_ON_CLIENT_APPROVAL`` enabled an
    approval is followed by a release attempt; a failed release leaves the
    approval committed and the escrow active.
    """

    if approve:
        clean_notes = _optional_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    else:
        clean_notes = _require_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    command = Command.APPROVE if approve else Command.REJECT
    _check_role(command, actor)

    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        escrow = _escrow_for_milestone(db, milestone_id, for_update=True)
        workspace = milestone.workspace
        _check_party(actor, client_id=workspace.client_id, freelancer_id=workspace.freelancer_id)
        _check_state(command, escrow, milestone)
        assert escrow is not None
        now = utcnow()
        if approve:
            _cas_milestone(db, milestone, status=MilestoneStatus.APPROVED, review_notes=clean_notes, review_date=now)
            _cas_escrow(
                db,
                escrow,
                EscrowStatus.ACTIVE,
                client_approval_status=ClientApprovalStatus.APPROVED,
                client_approved_at=now,
            )
        else:
            _cas_milestone(db, milestone, status=MilestoneStatus.REJECTED, review_notes=clean_notes, review_date=now)
            _cas_escrow(db, escrow, EscrowStatus.ACTIVE, client_approval_status=ClientApprovalStatus.REJECTED)
        _emit(
            db,
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            kind="DELIVERABLE_APPROVED" if approve else "DELIVERABLE_REJECTED",
            actor=actor,
            data={"notes": clean_notes},
        )
    _refresh(db, milestone, escrow)
    logger.info(
        "Milestone reviewed",
        extra={"milestone_id": milestone_id, "escrow_id": escrow.id, "approved": approve},
    )

    settings = settings or get_settings()
    if approve and settings.RELEASE_ON_CLIENT_APPROVAL and gateway is not None:
        try:
            release_funds(db, escrow.id, reason="Released on client approval", actor=actor, gateway=gateway)
        except EscrowDomainError as exc:
            logger.warning(
                "Release after approval failed; escrow stays active",
                extra={"escrow_id": escrow.id, "error_code": exc.code},
            )
        _refresh(db, milestone)
    return milestone


def release_funds(
    db: Session,
    escrow_id: int,
    *,
    reason: str | None,
    actor: Actor,
    gateway: PaymentGateway,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Escrow:
    """Pay the freelancer and close the escrow.

    Clients and admins need the client's approval on record. System actors
    (the auto-release sweep) need the auto-release deadline to have passed.
    """

    clean_reason = _optional_text(reason, "reason", max_length=MAX_NOTES_LENGTH)
    command = Command.AUTO_RELEASE if actor.role is ActorRole.SYSTEM else Command.RELEASE
    _check_role(command, actor)
    settings = settings or get_settings()
    moved: dict[str, str] = {}

    try:
        with _transaction(db):
            escrow = _load_escrow(db, escrow_id, for_update=True)
            milestone = _load_milestone(db, escrow.milestone_id, for_update=True)
            _check_party(actor, client_id=escrow.client_id, freelancer_id=escrow.freelancer_id)
            _check_state(command, escrow, milestone)
            if command is Command.RELEASE and escrow.client_approval_status is not ClientApprovalStatus.APPROVED:
                raise InvalidTransition(
                    "Funds can only be released after the client approves the deliverable.",
                    details=_state_details(command, escrow, milestone),
                )
            if command is Command.AUTO_RELEASE and not auto_release_due(
                escrow,
                milestone,
                now=now or utcnow(),
                grace=timedelta(days=settings.AUTO_RELEASE_GRACE_DAYS),
            ):
                raise InvalidTransition(
                    "Escrow is not eligible for auto-release.",
                    details=_state_details(command, escrow, milestone),
                )
            _settle(
                db,
                escrow,
                milestone,
                actor=actor,
                gateway=gateway,
                moved=moved,
                transfer_amount=escrow.amount_to_freelancer,
                refund_amount=Decimal("0"),
                final_status=EscrowStatus.RELEASED,
                milestone_status=MilestoneStatus.PAID,
                escrow_values={"release_reason": clean_reason, "released_by": actor.tag},
                kind="FUNDS_RELEASED",
                data={"reason": clean_reason},
            )
    except EscrowDomainError as exc:
        if moved:
            _record_unreconciled_movement(db, escrow_id=escrow_id, actor=actor, moved=moved, error=exc)
        raise
    _refresh(db, escrow, milestone)
    logger.info(
        "Escrow funds released",
        extra={"escrow_id": escrow.id, "amount": str(escrow.amount_to_freelancer), "actor": actor.tag},
    )
    return escrow


def raise_dispute(db: Session, escrow_id: int, *, reason: str | None, actor: Actor) -> Escrow:
    """Either party freezes the escrow pending admin review."""

    clean_reason = _require_text(reason, "reason", max_length=MAX_REASON_LENGTH)
    _check_role(Command.RAISE_DISPUTE, actor)
    with _transaction(db):
        escrow = _load_escrow(db, escrow_id, for_update=True)
        milestone = _load_milestone(db, escrow.milestone_id)
        _check_party(actor, client_id=escrow.client_id, freelancer_id=escrow.freelancer_id)
        _check_state(Command.RAISE_DISPUTE, escrow, milestone)
        _cas_escrow(
            db,
            escrow,
            EscrowStatus.ACTIVE,
            status=EscrowStatus.DISPUTED,
            dispute_raised=True,
            dispute_reason=clean_reason,
            dispute_raised_by=actor.tag,
            dispute_raised_at=utcnow(),
        )
        _emit(
            db,
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            kind="DISPUTE_RAISED",
            actor=actor,
            data={"reason": clean_reason},
        )
    _refresh(db, escrow)
    logger.info("Dispute raised", extra={"escrow_id": escrow.id, "actor": actor.tag})
    return escrow


def resolve_dispute(
    db: Session,
    escrow_id: int,
    *,
    resolution: DisputeResolution | str,
    notes: str | None,
    actor: Actor,
    gateway: PaymentGateway,
    freelancer_amount: Decimal | None = None,
) -> Escrow:
    """Admin settles a disputed escrow.

    ``release_to_freelancer`` pays the freelancer in full, ``refund_to_client``
    returns the whole funded total, ``partial`` pays ``freelancer_amount`` and
    refunds the rest of the milestone amount (the service charge is kept).
    """

    try:
        resolution = DisputeResolution(resolution)
    except ValueError as exc:
        raise ValidationError(
            "Unknown dispute resolution.",
            details={"field": "resolution", "allowed": [r.value for r in DisputeResolution]},
        ) from exc
    clean_notes = _optional_text(notes, "notes", max_length=MAX_REASON_LENGTH)
    partial_amount: Decimal | None = None
    if resolution is DisputeResolution.PARTIAL:
        if freelancer_amount is None:
            raise ValidationError("Partial resolution requires 'freelancer_amount'.", details={"field": "freelancer_amount"})
        try:
            partial_amount = to_money(freelancer_amount)
        except ValueError as exc:
            raise ValidationError("Invalid 'freelancer_amount'.", details={"field": "freelancer_amount"}) from exc
    _check_role(Command.RESOLVE_DISPUTE, actor)
    moved: dict[str, str] = {}

    try:
        with _transaction(db):
            escrow = _load_escrow(db, escrow_id, for_update=True)
            milestone = _load_milestone(db, escrow.milestone_id, for_update=True)
            _check_state(Command.RESOLVE_DISPUTE, escrow, milestone)
            resolved = {
                "dispute_resolution": resolution,
                "dispute_resolved_at": utcnow(),
                "resolution_notes": clean_notes,
            }
            data = {"resolution": resolution.value, "notes": clean_notes}

            if resolution is DisputeResolution.RELEASE_TO_FREELANCER:
                transfer, refund = escrow.amount_to_freelancer, Decimal("0")
                final_status, milestone_status = EscrowStatus.RELEASED, MilestoneStatus.PAID
                resolved.update(released_by=actor.tag, release_reason="Dispute resolved for freelancer")
            elif resolution is DisputeResolution.REFUND_TO_CLIENT:
                transfer, refund = Decimal("0"), escrow.total_amount
                final_status, milestone_status = EscrowStatus.REFUNDED, MilestoneStatus.COMPLETED
            else:
                assert partial_amount is not None
                if not Decimal("0") < partial_amount < escrow.amount_to_freelancer:
                    raise ValidationError(
                        "'freelancer_amount' must be between 0 and the freelancer payout (exclusive).",
                        details={"field": "freelancer_amount", "max": str(escrow.amount_to_freelancer)},
                    )
                transfer = partial_amount
                refund = escrow.milestone_amount - partial_amount
                final_status, milestone_status = EscrowStatus.RELEASED, MilestoneStatus.PAID
                resolved.update(released_by=actor.tag, release_reason="Dispute resolved with a split")

            _settle(
                db,
                escrow,
                milestone,
                actor=actor,
                gateway=gateway,
                moved=moved,
                transfer_amount=transfer,
                refund_amount=refund,
                final_status=final_status,
                milestone_status=milestone_status,
                escrow_values=resolved,
                kind="DISPUTE_RESOLVED",
                data=data,
            )
    except EscrowDomainError as exc:
        if moved:
            _record_unreconciled_movement(db, escrow_id=escrow_id, actor=actor, moved=moved, error=exc)
        raise
    _refresh(db, escrow, milestone)
    logger.info(
        "Dispute resolved",
        extra={"escrow_id": escrow.id, "resolution": resolution.value, "status": escrow.status.value},
    )
    return escrow


def mark_payment_overdue(db: Session, milestone_id: int, *, now: datetime | None = None) -> Milestone:
    """Flag a milestone whose payment due date passed without a funded escrow."""

    actor = OVERDUE_SWEEP_ACTOR
    now = now or utcnow()
    with _transaction(db):
        milestone = _load_milestone(db, milestone_id)
        escrow = _escrow_for_milestone(db, milestone_id)
        _check_state(Command.MARK_OVERDUE, escrow, milestone)
        payment_due = as_utc(milestone.payment_due_date)
        if payment_due is None or payment_due > now:
            raise InvalidTransition(
                "Payment is not overdue yet.",
                details=_state_details(Command.MARK_OVERDUE, escrow, milestone),
            )
        _cas_milestone(db, milestone, status=MilestoneStatus.PAYMENT_OVERDUE)
        _emit(
            db,
            escrow_id=escrow.id if escrow is not None else None,
            milestone_id=milestone.id,
            kind="PAYMENT_OVERDUE",
            actor=actor,
            data={"payment_due_date": payment_due.isoformat()},
        )
    _refresh(db, milestone)
    logger.info("Milestone payment overdue", extra={"milestone_id": milestone_id})
    return milestone


__all__ = [
    "Command",
    "PaymentProof",
    "Rule",
    "TRANSITIONS",
    "activate_escrow_from_webhook",
    "auto_release_due",
    "create_escrow_order",
    "fund_escrow",
    "mark_payment_overdue",
    "propose_milestone",
    "raise_dispute",
    "release_funds",
    "resolve_dispute",
    "review_milestone",
    "start_milestone",
    "submit_deliverable",
]
