"""Periodic sweeps: auto-release of stalled escrows and overdue payments."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from freelance_escrow.config import Settings, get_settings
from freelance_escrow.core.actors import AUTO_RELEASE_ACTOR, OVERDUE_SWEEP_ACTOR
from freelance_escrow.models import ClientApprovalStatus, Escrow, EscrowStatus, Milestone, MilestoneStatus
from freelance_escrow.services import state_machine
from freelance_escrow.services.gateway import PaymentGateway
from freelance_escrow.utils.audit import log_audit
from freelance_escrow.utils.errors import EscrowDomainError
from freelance_escrow.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SkippedEscrow:
    escrow_id: int
    error: str


@dataclass
class AutoReleaseResult:
    released_count: int = 0
    skipped: list[SkippedEscrow] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "released_count": self.released_count,
            "skipped": [{"escrow_id": item.escrow_id, "error": item.error} for item in self.skipped],
        }


@dataclass
class OverdueResult:
    marked_count: int = 0
    milestone_ids: list[int] = field(default_factory=list)


def find_auto_release_candidates(db: Session, *, now: datetime, grace: timedelta) -> list[int]:
    """Return ids of active, undisputed escrows whose release deadline passed."""

    submitted_before = now - grace
    stmt = (
        select(Escrow.id)
        .join(Milestone, Milestone.id == Escrow.milestone_id)
        .where(
            Escrow.status == EscrowStatus.ACTIVE,
            Escrow.dispute_raised.is_(False),
            Escrow.client_approval_status != ClientApprovalStatus.REJECTED,
            or_(
                and_(
                    Escrow.deliverable_submitted.is_(True),
                    Escrow.deliverable_submitted_at <= submitted_before,
                ),
                and_(
                    Milestone.payment_due_date.is_not(None),
                    Milestone.payment_due_date <= now,
                ),
            ),
        )
        .order_by(Escrow.id)
    )
    return list(db.scalars(stmt))


def _record_failure(db: Session, escrow_id: int, action: str, exc: Exception) -> str:
    if isinstance(exc, EscrowDomainError):
        error = exc.code
        message = exc.message
    else:
        error = type(exc).__name__
        message = str(exc)
    db.rollback()
    try:
        log_audit(
            db,
            actor=AUTO_RELEASE_ACTOR.tag,
            action=action,
            entity="Escrow",
            entity_id=escrow_id,
            data={"error": error, "message": message},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not audit sweep failure", extra={"escrow_id": escrow_id})
    return error


def run_auto_release_sweep(
    db: Session,
    *,
    gateway: PaymentGateway,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> AutoReleaseResult:
    """Release every escrow whose auto-release deadline has passed.

    A failing escrow is rolled back, audited and reported; the sweep moves on.
    Re-running the sweep is harmless: already released escrows no longer match
    and a raced release loses on the status guard.
    """

    settings = settings or get_settings()
    now = now or utcnow()
    grace = timedelta(days=settings.AUTO_RELEASE_GRACE_DAYS)
    result = AutoReleaseResult()

    candidates = find_auto_release_candidates(db, now=now, grace=grace)
    db.rollback()
    for escrow_id in candidates:
        try:
            state_machine.release_funds(
                db,
                escrow_id,
                reason="Auto-released after the review deadline",
                actor=AUTO_RELEASE_ACTOR,
                gateway=gateway,
                settings=settings,
                now=now,
            )
        except (EscrowDomainError, SQLAlchemyError) as exc:
            error = _record_failure(db, escrow_id, "AUTO_RELEASE_FAILED", exc)
            result.skipped.append(SkippedEscrow(escrow_id=escrow_id, error=error))
            logger.warning("Auto-release skipped escrow", extra={"escrow_id": escrow_id, "error": error})
        else:
            result.released_count += 1

    logger.info(
        "Auto-release sweep finished",
        extra={"released": result.released_count, "skipped": len(result.skipped), "candidates": len(candidates)},
    )
    return result


def mark_overdue_payments(db: Session, *, now: datetime | None = None) -> OverdueResult:
    """Flag unfunded milestones whose payment due date is in the past."""

    now = now or utcnow()
    result = OverdueResult()
    funded = select(Escrow.milestone_id).where(Escrow.status != EscrowStatus.PENDING)
    stmt = (
        select(Milestone.id)
        .where(
            Milestone.status.in_([MilestoneStatus.PENDING, MilestoneStatus.APPROVED, MilestoneStatus.IN_PROGRESS]),
            Milestone.payment_due_date.is_not(None),
            Milestone.payment_due_date <= now,
            Milestone.id.not_in(funded),
        )
        .order_by(Milestone.id)
    )
    candidates = list(db.scalars(stmt))
    db.rollback()
    for milestone_id in candidates:
        try:
            state_machine.mark_payment_overdue(db, milestone_id, now=now)
        except EscrowDomainError as exc:
            db.rollback()
            logger.info(
                "Overdue sweep skipped milestone",
                extra={"milestone_id": milestone_id, "error": exc.code, "actor": OVERDUE_SWEEP_ACTOR.tag},
            )
            continue
        result.marked_count += 1
        result.milestone_ids.append(milestone_id)
    logger.info("Overdue sweep finished", extra={"marked": result.marked_count})
    return result


__all__ = [
    "AutoReleaseResult",
    "OverdueResult",
    "SkippedEscrow",
    "find_auto_release_candidates",
    "mark_overdue_payments",
    "run_auto_release_sweep",
]
