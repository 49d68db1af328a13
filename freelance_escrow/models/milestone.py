"""Milestone model definitions."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class MilestoneStatus(str, PyEnum):
    """Possible statuses for a milestone."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    REJECTED = "rejected"
    COMPLETED = "completed"
    PAID = "paid"
    PAYMENT_OVERDUE = "payment-overdue"


SUPPORTED_CURRENCIES = ("INR", "USD", "EUR", "GBP")


class Milestone(Base):
    """A unit of contracted work with its own amount, due date and approval status."""

    __tablename__ = "milestones"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        CheckConstraint("position > 0", name="ck_milestone_positive_position"),
        Index("ix_milestones_workspace_position", "workspace_id", "position"),
        Index("ix_milestones_status", "status"),
        Index("ix_milestones_payment_due", "payment_due_date"),
    )

    workspace_id: Mapped[int] = mapped_column(ForeignKey("workspaces.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payment_due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[MilestoneStatus] = mapped_column(
        SqlEnum(MilestoneStatus), nullable=False, default=MilestoneStatus.PENDING
    )

    submission_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    submission_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    review_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Opaque references handed out by the blob storage service
    attachment_refs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    workspace = relationship("Workspace", back_populates="milestones")
    escrow = relationship("Escrow", back_populates="milestone", uselist=False)
