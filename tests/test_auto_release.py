from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select

from freelance_escrow.config import Settings
from freelance_escrow.models import AuditLog, Escrow, EscrowStatus, Milestone, MilestoneStatus
from freelance_escrow.services import state_machine
from freelance_escrow.services.auto_release import (
    SkippedEscrow,
    find_auto_release_candidates,
    mark_overdue_payments,
    run_auto_release_sweep,
)
from freelance_escrow.services.gateway import SandboxGateway
from freelance_escrow.utils.errors import TransferFailed
from freelance_escrow.utils.time import utcnow

SETTINGS = Settings(AUTO_RELEASE_GRACE_DAYS=7)


@dataclass
class FailingForEscrowGateway(SandboxGateway):
    failing_escrow_id: int | None = None

    def transfer_to_freelancer(self, escrow_id, amount, **kwargs):
        if escrow_id == self.failing_escrow_id:
            raise TransferFailed("Transfer to freelancer failed.")
        return super().transfer_to_freelancer(escrow_id, amount, **kwargs)


def _status(db_session, escrow_id):
    return db_session.get(Escrow, escrow_id, populate_existing=True).status


def test_release_after_grace_period(db_session, submitted_escrow, gateway):
    _, milestone, escrow = submitted_escrow()

    result = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=utcnow() + timedelta(days=8))

    assert result.released_count == 1
    assert result.skipped == []
    released = db_session.get(Escrow, escrow.id, populate_existing=True)
    assert released.status == EscrowStatus.RELEASED
    assert released.released_by == "system:auto-release"
    assert db_session.get(Milestone, milestone.id, populate_existing=True).status == MilestoneStatus.PAID


def test_nothing_released_inside_grace_period(db_session, submitted_escrow, gateway):
    _, _, escrow = submitted_escrow()

    result = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=utcnow() + timedelta(days=6))

    assert result.released_count == 0
    assert _status(db_session, escrow.id) == EscrowStatus.ACTIVE
    assert gateway.transfers == {}


def test_sweep_is_idempotent(db_session, submitted_escrow, gateway):
    submitted_escrow()
    later = utcnow() + timedelta(days=8)

    first = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=later)
    second = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=later)

    assert first.released_count == 1
    assert second.released_count == 0
    assert len(gateway.transfers) == 1


def test_disputed_escrow_is_never_auto_released(db_session, submitted_escrow, gateway):
    engagement, _, escrow = submitted_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Missing pages", actor=engagement.client_actor)
    later = utcnow() + timedelta(days=30)

    assert find_auto_release_candidates(db_session, now=later, grace=timedelta(days=7)) == []
    result = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=later)

    assert result.released_count == 0
    assert _status(db_session, escrow.id) == EscrowStatus.DISPUTED


def test_rejected_deliverable_is_not_auto_released(db_session, submitted_escrow, gateway):
    engagement, milestone, escrow = submitted_escrow()
    state_machine.review_milestone(
        db_session, milestone.id, approve=False, notes="Wrong colours", actor=engagement.client_actor
    )

    result = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=utcnow() + timedelta(days=30))

    assert result.released_count == 0
    assert _status(db_session, escrow.id) == EscrowStatus.ACTIVE


def test_payment_due_date_triggers_release(db_session, make_engagement, make_milestone, fund_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement, payment_due_date=utcnow() - timedelta(hours=1))
    escrow = fund_milestone(engagement, milestone)

    result = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS)

    assert result.released_count == 1
    assert _status(db_session, escrow.id) == EscrowStatus.RELEASED


def test_failed_release_is_recorded_and_sweep_continues(db_session, submitted_escrow):
    _, _, failing = submitted_escrow()
    _, _, healthy = submitted_escrow()
    gateway = FailingForEscrowGateway(secret="test-gateway-secret", failing_escrow_id=failing.id)

    result = run_auto_release_sweep(db_session, gateway=gateway, settings=SETTINGS, now=utcnow() + timedelta(days=8))

    assert result.released_count == 1
    assert result.skipped == [SkippedEscrow(escrow_id=failing.id, error="TRANSFER_FAILED")]
    assert result.as_dict()["skipped"] == [{"escrow_id": failing.id, "error": "TRANSFER_FAILED"}]
    assert _status(db_session, failing.id) == EscrowStatus.ACTIVE
    assert _status(db_session, healthy.id) == EscrowStatus.RELEASED
    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "AUTO_RELEASE_FAILED", AuditLog.entity_id == failing.id)
    ).one()
    assert audit.data_json["error"] == "TRANSFER_FAILED"


def test_mark_overdue_payments(db_session, make_engagement, make_milestone, fund_milestone, gateway):
    engagement = make_engagement()
    past = utcnow() - timedelta(days=2)
    unfunded = make_milestone(engagement, payment_due_date=past)
    ordered = make_milestone(engagement, payment_due_date=past)
    funded = make_milestone(engagement, payment_due_date=past)
    not_due = make_milestone(engagement, payment_due_date=utcnow() + timedelta(days=2))
    state_machine.create_escrow_order(db_session, ordered.id, actor=engagement.client_actor, gateway=gateway)
    fund_milestone(engagement, funded)

    result = mark_overdue_payments(db_session)

    assert result.marked_count == 2
    assert sorted(result.milestone_ids) == sorted([unfunded.id, ordered.id])
    statuses = {
        m.id: m.status
        for m in db_session.scalars(
            select(Milestone).where(Milestone.workspace_id == engagement.workspace.id).execution_options(
                populate_existing=True
            )
        )
    }
    assert statuses[unfunded.id] == MilestoneStatus.PAYMENT_OVERDUE
    assert statuses[ordered.id] == MilestoneStatus.PAYMENT_OVERDUE
    assert statuses[funded.id] == MilestoneStatus.PENDING
    assert statuses[not_due.id] == MilestoneStatus.PENDING

    assert mark_overdue_payments(db_session).marked_count == 0
