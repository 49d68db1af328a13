"""Escrow related models."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class EscrowStatus(str, PyEnum):
    """Fund custody state of an escrow."""

    PENDING = "pending"
    ACTIVE = "active"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"


TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})


class ClientApprovalStatus(str, PyEnum):
    NONE = "none"
    APPROVED = "approved"
    REJECTED = "rejected"


class DisputeResolution(str, PyEnum):
    RELEASE_TO_FREELANCER = "release_to_freelancer"
    REFUND_TO_CLIENT = "refund_to_client"
    PARTIAL = "partial"


class Escrow(Base):
    """Custody record holding client funds for exactly one milestone."""

    __tablename__ = "escrows"
    __table_args__ = (
        CheckConstraint("milestone_amount > 0", name="ck_escrow_milestone_amount_positive"),
        CheckConstraint("service_charge >= 0", name="ck_escrow_service_charge_non_negative"),
        CheckConstraint("total_amount >= milestone_amount", name="ck_escrow_total_covers_milestone"),
        CheckConstraint("amount_to_freelancer >= 0", name="ck_escrow_payout_non_negative"),
        Index("ix_escrows_status", "status"),
        Index("ix_escrows_client_status", "client_id", "status"),
        Index("ix_escrows_freelancer_status", "freelancer_id", "status"),
    )

    milestone_id: Mapped[int] = mapped_column(ForeignKey("milestones.id"), nullable=False, unique=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    freelancer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    milestone_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    service_charge: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    service_charge_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    amount_to_freelancer: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[EscrowStatus] = mapped_column(SqlEnum(EscrowStatus), nullable=False, default=EscrowStatus.PENDING)

    deliverable_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deliverable_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    client_approval_status: Mapped[ClientApprovalStatus] = mapped_column(
        SqlEnum(ClientApprovalStatus), nullable=False, default=ClientApprovalStatus.NONE
    )
    client_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_raised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    dispute_raised_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    dispute_raised_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_resolution: Mapped[DisputeResolution | None] = mapped_column(SqlEnum(DisputeResolution), nullable=True)
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    released_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    refunded_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    milestone = relationship("Milestone", back_populates="escrow")
    events = relationship("EscrowEvent", back_populates="escrow", order_by="EscrowEvent.id")


class EscrowEvent(Base):
    """Outbox entry for a domain event emitted by a milestone or escrow transition.

    Events raised before an escrow exists (proposal, overdue payment) carry only
    the milestone id.
    """

    __tablename__ = "escrow_events"
    __table_args__ = (Index("ix_escrow_events_undispatched", "dispatched_at", "id"),)

    milestone_id: Mapped[int] = mapped_column(ForeignKey("milestones.id"), nullable=False, index=True)
    escrow_id: Mapped[int | None] = mapped_column(ForeignKey("escrows.id"), nullable=True, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)

    escrow = relationship("Escrow", back_populates="events")
