"""Workspace model: the contract between one client and one freelancer."""
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class Workspace(Base):
    """Project workspace grouping the milestones of a hired engagement."""

    __tablename__ = "workspaces"
    __table_args__ = (
        CheckConstraint("client_id <> freelancer_id", name="ck_workspace_distinct_parties"),
        CheckConstraint(
            "project_budget IS NULL OR project_budget >= 0",
            name="ck_workspace_budget_non_negative",
        ),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    freelancer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    project_budget: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    milestones = relationship(
        "Milestone",
        back_populates="workspace",
        cascade="all, delete-orphan",
        order_by="Milestone.position",
    )
