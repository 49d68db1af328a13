from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable

import pytest
from sqlalchemy import select

from freelance_escrow import db as db_module
from freelance_escrow.config import Settings
from freelance_escrow.core.actors import Actor, ActorRole
from freelance_escrow.models import (
    AuditLog,
    ClientApprovalStatus,
    DisputeResolution,
    Escrow,
    EscrowEvent,
    EscrowStatus,
    Milestone,
    MilestoneStatus,
    TERMINAL_ESCROW_STATUSES,
)
from freelance_escrow.services import state_machine
from freelance_escrow.services.gateway import SandboxGateway
from freelance_escrow.services.state_machine import TRANSITIONS, Command
from freelance_escrow.utils.errors import (
    ConcurrentModification,
    GatewayError,
    InvalidTransition,
    TransferFailed,
    Unauthorized,
    ValidationError,
)
from freelance_escrow.utils.time import utcnow

ADMIN = Actor(role=ActorRole.ADMIN, name="ops")


class FailingTransferGateway(SandboxGateway):
    def transfer_to_freelancer(self, escrow_id, amount, **kwargs):
        raise TransferFailed("Transfer to freelancer failed.", details={"provider_error": "account_closed"})


class FailingRefundGateway(SandboxGateway):
    def refund_to_client(self, escrow_id, amount, **kwargs):
        raise GatewayError("Refund to client failed.", details={"provider_error": "charge_expired"})


@dataclass
class HookedTransferGateway(SandboxGateway):
    on_transfer: Callable[[], None] | None = None

    def transfer_to_freelancer(self, escrow_id, amount, **kwargs):
        if self.on_transfer is not None:
            self.on_transfer()
        return super().transfer_to_freelancer(escrow_id, amount, **kwargs)


def _events(db_session, escrow_id: int) -> list[str]:
    return list(
        db_session.scalars(select(EscrowEvent.kind).where(EscrowEvent.escrow_id == escrow_id).order_by(EscrowEvent.id))
    )


def _reload(db_session, model, pk):
    return db_session.get(model, pk, populate_existing=True)


# --------------------------------------------------------------------------
# Transition table
# --------------------------------------------------------------------------


def test_transition_table_covers_every_command():
    assert set(TRANSITIONS) == set(Command)
    for command, rule in TRANSITIONS.items():
        assert rule.roles, command
        assert rule.escrow_from, command


def test_terminal_escrows_have_no_outgoing_transitions():
    for command, rule in TRANSITIONS.items():
        assert not (rule.escrow_from & TERMINAL_ESCROW_STATUSES), command


def test_only_admins_resolve_and_only_system_auto_releases():
    assert TRANSITIONS[Command.RESOLVE_DISPUTE].roles == {ActorRole.ADMIN}
    assert TRANSITIONS[Command.AUTO_RELEASE].roles == {ActorRole.SYSTEM}
    assert ActorRole.FREELANCER not in TRANSITIONS[Command.RELEASE].roles


# --------------------------------------------------------------------------
# Orders and funding
# --------------------------------------------------------------------------


def test_escrow_order_applies_budget_tier(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement(project_budget=Decimal("10000"))
    milestone = make_milestone(engagement, amount=Decimal("1000.00"))

    escrow, order = state_machine.create_escrow_order(
        db_session, milestone.id, actor=engagement.client_actor, gateway=gateway
    )

    assert escrow.status == EscrowStatus.PENDING
    assert escrow.service_charge == Decimal("60.00")
    assert escrow.service_charge_percentage == Decimal("6")
    assert escrow.total_amount == Decimal("1060.00")
    assert escrow.amount_to_freelancer == Decimal("1000.00")
    assert order.amount == Decimal("1060.00")
    assert escrow.order_id == order.order_id
    assert order.client_secret == gateway.sign(order.order_id)


def test_reissuing_order_replaces_pending_order(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)

    escrow, first = state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.client_actor, gateway=gateway)
    again, second = state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.client_actor, gateway=gateway)

    assert again.id == escrow.id
    assert second.order_id != first.order_id
    assert again.order_id == second.order_id
    assert again.version == 2


def test_freelancer_cannot_open_order(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)

    with pytest.raises(Unauthorized):
        state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.freelancer_actor, gateway=gateway)

    assert db_session.scalar(select(Escrow).where(Escrow.milestone_id == milestone.id)) is None


def test_other_client_cannot_open_order(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    stranger = make_engagement()
    milestone = make_milestone(engagement)

    with pytest.raises(Unauthorized):
        state_machine.create_escrow_order(db_session, milestone.id, actor=stranger.client_actor, gateway=gateway)


def test_fund_activates_escrow(db_session, make_engagement, make_milestone, fund_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement)

    escrow = fund_milestone(engagement, milestone)

    assert escrow.status == EscrowStatus.ACTIVE
    assert escrow.activated_at is not None
    assert _events(db_session, escrow.id) == ["ESCROW_ORDER_CREATED", "ESCROW_FUNDED"]


def test_fund_rejects_bad_signature(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    escrow, order = state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.client_actor, gateway=gateway)

    proof = state_machine.PaymentProof(order_id=order.order_id, provider_signature="forged")
    with pytest.raises(GatewayError) as excinfo:
        state_machine.fund_escrow(db_session, milestone.id, proof, actor=engagement.client_actor, gateway=gateway)

    assert excinfo.value.code == "PAYMENT_NOT_VERIFIED"
    assert _reload(db_session, Escrow, escrow.id).status == EscrowStatus.PENDING


def test_fund_rejects_proof_for_other_order(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.client_actor, gateway=gateway)

    proof = state_machine.PaymentProof(order_id="order_other", provider_signature=gateway.sign("order_other"))
    with pytest.raises(ValidationError):
        state_machine.fund_escrow(db_session, milestone.id, proof, actor=engagement.client_actor, gateway=gateway)


def test_fund_requires_proof_fields(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)

    with pytest.raises(ValidationError):
        state_machine.fund_escrow(
            db_session,
            milestone.id,
            state_machine.PaymentProof(order_id="", provider_signature="sig"),
            actor=engagement.client_actor,
            gateway=gateway,
        )


def test_funding_twice_is_invalid(db_session, make_engagement, make_milestone, fund_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    escrow = fund_milestone(engagement, milestone)

    proof = state_machine.PaymentProof(order_id=escrow.order_id, provider_signature=gateway.sign(escrow.order_id))
    with pytest.raises(InvalidTransition) as excinfo:
        state_machine.fund_escrow(db_session, milestone.id, proof, actor=engagement.client_actor, gateway=gateway)

    assert excinfo.value.details["escrow_status"] == "active"


def test_webhook_activation_is_idempotent(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    escrow, order = state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.client_actor, gateway=gateway)

    first = state_machine.activate_escrow_from_webhook(db_session, order_id=order.order_id, payment_ref="ch_1")
    second = state_machine.activate_escrow_from_webhook(db_session, order_id=order.order_id, payment_ref="ch_1")

    assert first.status == EscrowStatus.ACTIVE
    assert second.version == first.version
    assert _events(db_session, escrow.id).count("ESCROW_FUNDED") == 1
    assert state_machine.activate_escrow_from_webhook(db_session, order_id="unknown", payment_ref=None) is None


# --------------------------------------------------------------------------
# Work and review
# --------------------------------------------------------------------------


def test_propose_moves_draft_to_pending(db_session, make_engagement, make_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement, status=MilestoneStatus.DRAFT)

    with pytest.raises(Unauthorized):
        state_machine.propose_milestone(db_session, milestone.id, actor=engagement.client_actor)

    proposed = state_machine.propose_milestone(db_session, milestone.id, actor=engagement.freelancer_actor)
    assert proposed.status == MilestoneStatus.PENDING


def test_submit_requires_funded_escrow(db_session, make_engagement, make_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    state_machine.start_milestone(db_session, milestone.id, actor=engagement.freelancer_actor)

    with pytest.raises(InvalidTransition):
        state_machine.submit_deliverable(
            db_session, milestone.id, notes="done", attachment_refs=[], actor=engagement.freelancer_actor
        )


def test_submit_sets_review_and_flags(db_session, submitted_escrow):
    engagement, milestone, escrow = submitted_escrow()

    milestone = _reload(db_session, Milestone, milestone.id)
    assert milestone.status == MilestoneStatus.REVIEW
    assert milestone.submission_notes == "First cut"
    assert milestone.attachment_refs == ["blob://deliverables/v1.zip"]
    assert escrow.deliverable_submitted is True
    assert escrow.deliverable_submitted_at is not None
    assert escrow.client_approval_status == ClientApprovalStatus.NONE


def test_submit_notes_are_limited(db_session, make_engagement, make_milestone, fund_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    fund_milestone(engagement, milestone)
    state_machine.start_milestone(db_session, milestone.id, actor=engagement.freelancer_actor)

    with pytest.raises(ValidationError):
        state_machine.submit_deliverable(
            db_session, milestone.id, notes="x" * 501, attachment_refs=[], actor=engagement.freelancer_actor
        )

    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.IN_PROGRESS


def test_client_cannot_submit(db_session, make_engagement, make_milestone, fund_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    fund_milestone(engagement, milestone)

    with pytest.raises(Unauthorized):
        state_machine.submit_deliverable(
            db_session, milestone.id, notes=None, attachment_refs=[], actor=engagement.client_actor
        )


def test_reject_requires_notes(db_session, submitted_escrow):
    engagement, milestone, _ = submitted_escrow()

    with pytest.raises(ValidationError):
        state_machine.review_milestone(db_session, milestone.id, approve=False, notes="  ", actor=engagement.client_actor)

    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.REVIEW


def test_reject_then_resubmit(db_session, submitted_escrow):
    engagement, milestone, escrow = submitted_escrow()

    rejected = state_machine.review_milestone(
        db_session, milestone.id, approve=False, notes="Logo is off-brand", actor=engagement.client_actor
    )
    assert rejected.status == MilestoneStatus.REJECTED
    assert rejected.review_notes == "Logo is off-brand"
    assert _reload(db_session, Escrow, escrow.id).client_approval_status == ClientApprovalStatus.REJECTED

    state_machine.start_milestone(db_session, milestone.id, actor=engagement.freelancer_actor)
    resubmitted = state_machine.submit_deliverable(
        db_session, milestone.id, notes="Fixed", attachment_refs=["blob://v2.zip"], actor=engagement.freelancer_actor
    )

    assert resubmitted.status == MilestoneStatus.REVIEW
    assert resubmitted.attachment_refs == ["blob://deliverables/v1.zip", "blob://v2.zip"]
    assert _reload(db_session, Escrow, escrow.id).client_approval_status == ClientApprovalStatus.NONE


def test_freelancer_cannot_review(db_session, submitted_escrow):
    engagement, milestone, _ = submitted_escrow()

    with pytest.raises(Unauthorized):
        state_machine.review_milestone(db_session, milestone.id, approve=True, notes=None, actor=engagement.freelancer_actor)


def test_approved_deliverable_cannot_be_resubmitted(db_session, approved_escrow):
    engagement, milestone, _ = approved_escrow()

    with pytest.raises(InvalidTransition):
        state_machine.submit_deliverable(
            db_session, milestone.id, notes="again", attachment_refs=[], actor=engagement.freelancer_actor
        )


def test_approved_deliverable_cannot_be_restarted(db_session, approved_escrow):
    engagement, milestone, escrow = approved_escrow()

    with pytest.raises(InvalidTransition) as excinfo:
        state_machine.start_milestone(db_session, milestone.id, actor=engagement.freelancer_actor)

    assert excinfo.value.details["client_approval_status"] == "approved"
    assert db_session.get(Milestone, milestone.id, populate_existing=True).status == MilestoneStatus.APPROVED
    assert db_session.get(Escrow, escrow.id, populate_existing=True).client_approval_status == ClientApprovalStatus.APPROVED


# --------------------------------------------------------------------------
# Release
# --------------------------------------------------------------------------


def test_fund_submit_approve_release(db_session, approved_escrow, gateway):
    engagement, milestone, escrow = approved_escrow()

    released = state_machine.release_funds(
        db_session, escrow.id, reason="Great work", actor=engagement.client_actor, gateway=gateway
    )

    assert released.status == EscrowStatus.RELEASED
    assert released.released_amount == Decimal("1000.00")
    assert released.released_by == engagement.client_actor.tag
    assert [t["id"] for t in gateway.transfers.values()] == [released.transfer_ref]
    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.PAID
    assert _events(db_session, escrow.id) == [
        "ESCROW_ORDER_CREATED",
        "ESCROW_FUNDED",
        "MILESTONE_STARTED",
        "DELIVERABLE_SUBMITTED",
        "DELIVERABLE_APPROVED",
        "FUNDS_RELEASED",
    ]


def test_release_requires_client_approval(db_session, submitted_escrow, gateway):
    engagement, _, escrow = submitted_escrow()

    with pytest.raises(InvalidTransition):
        state_machine.release_funds(db_session, escrow.id, reason=None, actor=engagement.client_actor, gateway=gateway)

    assert gateway.transfers == {}


def test_no_double_release(db_session, approved_escrow, gateway):
    engagement, _, escrow = approved_escrow()
    state_machine.release_funds(db_session, escrow.id, reason=None, actor=engagement.client_actor, gateway=gateway)

    with pytest.raises(InvalidTransition):
        state_machine.release_funds(db_session, escrow.id, reason=None, actor=ADMIN, gateway=gateway)

    assert len(gateway.transfers) == 1


def test_freelancer_cannot_release(db_session, approved_escrow, gateway):
    engagement, _, escrow = approved_escrow()

    with pytest.raises(Unauthorized):
        state_machine.release_funds(db_session, escrow.id, reason=None, actor=engagement.freelancer_actor, gateway=gateway)


def test_failed_transfer_changes_nothing(db_session, approved_escrow):
    engagement, milestone, escrow = approved_escrow()
    version_before = escrow.version
    failing = FailingTransferGateway(secret="test-gateway-secret")

    with pytest.raises(TransferFailed):
        state_machine.release_funds(db_session, escrow.id, reason=None, actor=engagement.client_actor, gateway=failing)

    escrow = _reload(db_session, Escrow, escrow.id)
    assert escrow.status == EscrowStatus.ACTIVE
    assert escrow.version == version_before
    assert escrow.transfer_ref is None
    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.APPROVED
    assert "FUNDS_RELEASED" not in _events(db_session, escrow.id)


def test_concurrent_dispute_during_transfer_wins(db_session, approved_escrow):
    engagement, _, escrow = approved_escrow()

    def _dispute_from_other_session() -> None:
        other = db_module.get_sessionmaker()()
        try:
            state_machine.raise_dispute(other, escrow.id, reason="Scope changed", actor=engagement.freelancer_actor)
        finally:
            other.close()

    racing = HookedTransferGateway(secret="test-gateway-secret", on_transfer=_dispute_from_other_session)

    with pytest.raises(ConcurrentModification):
        state_machine.release_funds(db_session, escrow.id, reason=None, actor=engagement.client_actor, gateway=racing)

    escrow = _reload(db_session, Escrow, escrow.id)
    assert escrow.status == EscrowStatus.DISPUTED
    assert escrow.transfer_ref is None
    unrecorded = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "GATEWAY_MOVEMENT_UNRECORDED", AuditLog.entity_id == escrow.id)
    ).one()
    assert unrecorded.data_json["refs"]["transfer_ref"] in {t["id"] for t in racing.transfers.values()}


def test_release_on_approval_setting_chains_release(db_session, submitted_escrow, gateway):
    engagement, milestone, escrow = submitted_escrow()

    reviewed = state_machine.review_milestone(
        db_session,
        milestone.id,
        approve=True,
        notes=None,
        actor=engagement.client_actor,
        gateway=gateway,
        settings=Settings(RELEASE_ON_CLIENT_APPROVAL=True),
    )

    assert reviewed.status == MilestoneStatus.PAID
    assert _reload(db_session, Escrow, escrow.id).status == EscrowStatus.RELEASED


def test_chained_release_failure_keeps_approval(db_session, submitted_escrow):
    engagement, milestone, escrow = submitted_escrow()

    reviewed = state_machine.review_milestone(
        db_session,
        milestone.id,
        approve=True,
        notes=None,
        actor=engagement.client_actor,
        gateway=FailingTransferGateway(secret="test-gateway-secret"),
        settings=Settings(RELEASE_ON_CLIENT_APPROVAL=True),
    )

    assert reviewed.status == MilestoneStatus.APPROVED
    escrow = _reload(db_session, Escrow, escrow.id)
    assert escrow.status == EscrowStatus.ACTIVE
    assert escrow.client_approval_status == ClientApprovalStatus.APPROVED


def test_system_release_requires_deadline(db_session, submitted_escrow, gateway):
    _, _, escrow = submitted_escrow()

    with pytest.raises(InvalidTransition):
        state_machine.release_funds(
            db_session, escrow.id, reason=None, actor=Actor.system("auto-release"), gateway=gateway
        )

    released = state_machine.release_funds(
        db_session,
        escrow.id,
        reason=None,
        actor=Actor.system("auto-release"),
        gateway=gateway,
        now=utcnow() + timedelta(days=8),
    )
    assert released.status == EscrowStatus.RELEASED
    assert released.released_by == "system:auto-release"


# --------------------------------------------------------------------------
# Disputes
# --------------------------------------------------------------------------


def test_dispute_freezes_release(db_session, approved_escrow, gateway):
    engagement, _, escrow = approved_escrow()

    disputed = state_machine.raise_dispute(
        db_session, escrow.id, reason="Deliverable incomplete", actor=engagement.client_actor
    )
    assert disputed.status == EscrowStatus.DISPUTED
    assert disputed.dispute_raised is True
    assert disputed.dispute_raised_by == engagement.client_actor.tag

    with pytest.raises(InvalidTransition) as excinfo:
        state_machine.release_funds(db_session, escrow.id, reason=None, actor=engagement.client_actor, gateway=gateway)
    assert excinfo.value.details["escrow_status"] == "disputed"
    assert gateway.transfers == {}


def test_dispute_requires_reason(db_session, approved_escrow):
    engagement, _, escrow = approved_escrow()

    with pytest.raises(ValidationError):
        state_machine.raise_dispute(db_session, escrow.id, reason="", actor=engagement.freelancer_actor)


def test_dispute_on_pending_escrow_is_invalid(db_session, make_engagement, make_milestone, gateway):
    engagement = make_engagement()
    milestone = make_milestone(engagement)
    escrow, _ = state_machine.create_escrow_order(db_session, milestone.id, actor=engagement.client_actor, gateway=gateway)

    with pytest.raises(InvalidTransition):
        state_machine.raise_dispute(db_session, escrow.id, reason="Never paid", actor=engagement.freelancer_actor)


@pytest.mark.parametrize("who", ["client", "freelancer"])
def test_only_admin_resolves_dispute(db_session, approved_escrow, gateway, who):
    engagement, _, escrow = approved_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Disagreement", actor=engagement.client_actor)
    actor = engagement.client_actor if who == "client" else engagement.freelancer_actor

    with pytest.raises(Unauthorized):
        state_machine.resolve_dispute(
            db_session,
            escrow.id,
            resolution=DisputeResolution.RELEASE_TO_FREELANCER,
            notes=None,
            actor=actor,
            gateway=gateway,
        )

    assert _reload(db_session, Escrow, escrow.id).status == EscrowStatus.DISPUTED


def test_dispute_resolved_for_freelancer(db_session, approved_escrow, gateway):
    engagement, milestone, escrow = approved_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Late sign-off", actor=engagement.freelancer_actor)

    resolved = state_machine.resolve_dispute(
        db_session,
        escrow.id,
        resolution="release_to_freelancer",
        notes="Work delivered as agreed",
        actor=ADMIN,
        gateway=gateway,
    )

    assert resolved.status == EscrowStatus.RELEASED
    assert resolved.dispute_resolution == DisputeResolution.RELEASE_TO_FREELANCER
    assert resolved.released_amount == Decimal("1000.00")
    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.PAID


def test_dispute_refunded_to_client(db_session, submitted_escrow, gateway):
    engagement, milestone, escrow = submitted_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Nothing usable", actor=engagement.client_actor)

    resolved = state_machine.resolve_dispute(
        db_session,
        escrow.id,
        resolution=DisputeResolution.REFUND_TO_CLIENT,
        notes=None,
        actor=ADMIN,
        gateway=gateway,
    )

    assert resolved.status == EscrowStatus.REFUNDED
    assert resolved.refunded_amount == Decimal("1060.00")
    assert gateway.transfers == {}
    assert [r["amount"] for r in gateway.refunds.values()] == [Decimal("1060.00")]
    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.COMPLETED


def test_partial_resolution_splits_milestone_amount(db_session, submitted_escrow, gateway):
    engagement, milestone, escrow = submitted_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Half done", actor=engagement.client_actor)

    resolved = state_machine.resolve_dispute(
        db_session,
        escrow.id,
        resolution=DisputeResolution.PARTIAL,
        notes="Split",
        actor=ADMIN,
        gateway=gateway,
        freelancer_amount=Decimal("400"),
    )

    assert resolved.status == EscrowStatus.RELEASED
    assert resolved.released_amount == Decimal("400.00")
    assert resolved.refunded_amount == Decimal("600.00")
    assert [t["amount"] for t in gateway.transfers.values()] == [Decimal("400.00")]
    assert [r["amount"] for r in gateway.refunds.values()] == [Decimal("600.00")]


def test_partial_resolution_refund_failure_keeps_dispute(db_session, submitted_escrow):
    engagement, milestone, escrow = submitted_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Half done", actor=engagement.client_actor)
    gateway = FailingRefundGateway(secret="test-gateway-secret")

    with pytest.raises(GatewayError):
        state_machine.resolve_dispute(
            db_session,
            escrow.id,
            resolution=DisputeResolution.PARTIAL,
            notes="Split",
            actor=ADMIN,
            gateway=gateway,
            freelancer_amount=Decimal("400"),
        )

    assert len(gateway.transfers) == 1
    unresolved = _reload(db_session, Escrow, escrow.id)
    assert unresolved.status == EscrowStatus.DISPUTED
    assert unresolved.transfer_ref is None
    assert _reload(db_session, Milestone, milestone.id).status != MilestoneStatus.PAID
    assert "DISPUTE_RESOLVED" not in _events(db_session, escrow.id)
    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "GATEWAY_MOVEMENT_UNRECORDED", AuditLog.entity_id == escrow.id)
    ).one()
    assert audit.data_json["error_code"] == "GATEWAY_ERROR"
    assert "transfer_ref" in audit.data_json["refs"]
    assert "refund_ref" not in audit.data_json["refs"]
    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.PAID


@pytest.mark.parametrize("amount", [None, Decimal("0"), Decimal("1000.00"), Decimal("1500")])
def test_partial_resolution_bounds(db_session, submitted_escrow, gateway, amount):
    engagement, _, escrow = submitted_escrow()
    state_machine.raise_dispute(db_session, escrow.id, reason="Half done", actor=engagement.client_actor)

    with pytest.raises(ValidationError):
        state_machine.resolve_dispute(
            db_session,
            escrow.id,
            resolution=DisputeResolution.PARTIAL,
            notes=None,
            actor=ADMIN,
            gateway=gateway,
            freelancer_amount=amount,
        )

    assert _reload(db_session, Escrow, escrow.id).status == EscrowStatus.DISPUTED


def test_resolving_undisputed_escrow_is_invalid(db_session, approved_escrow, gateway):
    _, _, escrow = approved_escrow()

    with pytest.raises(InvalidTransition):
        state_machine.resolve_dispute(
            db_session,
            escrow.id,
            resolution=DisputeResolution.REFUND_TO_CLIENT,
            notes=None,
            actor=ADMIN,
            gateway=gateway,
        )


# --------------------------------------------------------------------------
# Overdue payments
# --------------------------------------------------------------------------


def test_overdue_milestone_returns_to_approved_when_funded(db_session, make_engagement, make_milestone, fund_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement, payment_due_date=utcnow() - timedelta(days=1))

    overdue = state_machine.mark_payment_overdue(db_session, milestone.id)
    assert overdue.status == MilestoneStatus.PAYMENT_OVERDUE

    fund_milestone(engagement, milestone)
    assert _reload(db_session, Milestone, milestone.id).status == MilestoneStatus.APPROVED


def test_mark_overdue_requires_past_due_date(db_session, make_engagement, make_milestone):
    engagement = make_engagement()
    milestone = make_milestone(engagement, payment_due_date=utcnow() + timedelta(days=3))

    with pytest.raises(InvalidTransition):
        state_machine.mark_payment_overdue(db_session, milestone.id)
