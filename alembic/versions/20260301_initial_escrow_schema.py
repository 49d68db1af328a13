"""initial escrow schema

Revision ID: 20260301_initial
Revises:
Create Date: 2026-03-01 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260301_initial"
down_revision = None
branch_labels = None
depends_on = None


MILESTONE_STATUS = sa.Enum(
    "DRAFT",
    "PENDING",
    "APPROVED",
    "IN_PROGRESS",
    "REVIEW",
    "REJECTED",
    "COMPLETED",
    "PAID",
    "PAYMENT_OVERDUE",
    name="milestonestatus",
)
ESCROW_STATUS = sa.Enum("PENDING", "ACTIVE", "DISPUTED", "RELEASED", "REFUNDED", name="escrowstatus")
APPROVAL_STATUS = sa.Enum("NONE", "APPROVED", "REJECTED", name="clientapprovalstatus")
DISPUTE_RESOLUTION = sa.Enum(
    "RELEASE_TO_FREELANCER", "REFUND_TO_CLIENT", "PARTIAL", name="disputeresolution"
)
API_SCOPE = sa.Enum("client", "freelancer", "admin", name="apiscope")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("stripe_account_id", sa.String(length=64), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("scope", API_SCOPE, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])

    op.create_table(
        "workspaces",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("freelancer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("project_budget", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="INR"),
        *_timestamps(),
        sa.CheckConstraint("client_id <> freelancer_id", name="ck_workspace_distinct_parties"),
        sa.CheckConstraint(
            "project_budget IS NULL OR project_budget >= 0",
            name="ck_workspace_budget_non_negative",
        ),
    )
    op.create_index("ix_workspaces_client_id", "workspaces", ["client_id"])
    op.create_index("ix_workspaces_freelancer_id", "workspaces", ["freelancer_id"])

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("workspace_id", sa.Integer, sa.ForeignKey("workspaces.id"), nullable=False),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="INR"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", MILESTONE_STATUS, nullable=False),
        sa.Column("submission_notes", sa.String(length=500), nullable=True),
        sa.Column("submission_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.String(length=500), nullable=True),
        sa.Column("review_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attachment_refs", sa.JSON, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        sa.CheckConstraint("position > 0", name="ck_milestone_positive_position"),
    )
    op.create_index("ix_milestones_workspace_id", "milestones", ["workspace_id"])
    op.create_index("ix_milestones_workspace_position", "milestones", ["workspace_id", "position"])
    op.create_index("ix_milestones_status", "milestones", ["status"])
    op.create_index("ix_milestones_payment_due", "milestones", ["payment_due_date"])

    op.create_table(
        "escrows",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("milestone_id", sa.Integer, sa.ForeignKey("milestones.id"), nullable=False, unique=True),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("freelancer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("milestone_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("service_charge", sa.Numeric(18, 2), nullable=False),
        sa.Column("service_charge_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_to_freelancer", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", ESCROW_STATUS, nullable=False),
        sa.Column("deliverable_submitted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("deliverable_submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("client_approval_status", APPROVAL_STATUS, nullable=False),
        sa.Column("client_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_raised", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dispute_reason", sa.String(length=1000), nullable=True),
        sa.Column("dispute_raised_by", sa.String(length=100), nullable=True),
        sa.Column("dispute_raised_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_resolution", DISPUTE_RESOLUTION, nullable=True),
        sa.Column("dispute_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.String(length=1000), nullable=True),
        sa.Column("order_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("payment_ref", sa.String(length=128), nullable=True),
        sa.Column("transfer_ref", sa.String(length=128), nullable=True),
        sa.Column("refund_ref", sa.String(length=128), nullable=True),
        sa.Column("released_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("release_reason", sa.String(length=500), nullable=True),
        sa.Column("released_by", sa.String(length=100), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("milestone_amount > 0", name="ck_escrow_milestone_amount_positive"),
        sa.CheckConstraint("service_charge >= 0", name="ck_escrow_service_charge_non_negative"),
        sa.CheckConstraint("total_amount >= milestone_amount", name="ck_escrow_total_covers_milestone"),
        sa.CheckConstraint("amount_to_freelancer >= 0", name="ck_escrow_payout_non_negative"),
    )
    op.create_index("ix_escrows_status", "escrows", ["status"])
    op.create_index("ix_escrows_client_status", "escrows", ["client_id", "status"])
    op.create_index("ix_escrows_freelancer_status", "escrows", ["freelancer_id", "status"])

    op.create_table(
        "escrow_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("milestone_id", sa.Integer, sa.ForeignKey("milestones.id"), nullable=False),
        sa.Column("escrow_id", sa.Integer, sa.ForeignKey("escrows.id"), nullable=True),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_escrow_events_milestone_id", "escrow_events", ["milestone_id"])
    op.create_index("ix_escrow_events_escrow_id", "escrow_events", ["escrow_id"])
    op.create_index("ix_escrow_events_undispatched", "escrow_events", ["dispatched_at", "id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "psp_webhook_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False, server_default="stripe"),
        sa.Column("event_id", sa.String(length=100), nullable=False),
        sa.Column("kind", sa.String(length=80), nullable=False),
        sa.Column("psp_ref", sa.String(length=128), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_json", sa.JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("provider", "event_id", name="uq_psp_webhook_events_provider_event_id"),
    )
    op.create_index("ix_psp_webhook_events_kind", "psp_webhook_events", ["kind"])


def downgrade() -> None:
    op.drop_index("ix_psp_webhook_events_kind", table_name="psp_webhook_events")
    op.drop_table("psp_webhook_events")
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_escrow_events_undispatched", table_name="escrow_events")
    op.drop_index("ix_escrow_events_escrow_id", table_name="escrow_events")
    op.drop_index("ix_escrow_events_milestone_id", table_name="escrow_events")
    op.drop_table("escrow_events")
    op.drop_index("ix_escrows_freelancer_status", table_name="escrows")
    op.drop_index("ix_escrows_client_status", table_name="escrows")
    op.drop_index("ix_escrows_status", table_name="escrows")
    op.drop_table("escrows")
    op.drop_index("ix_milestones_payment_due", table_name="milestones")
    op.drop_index("ix_milestones_status", table_name="milestones")
    op.drop_index("ix_milestones_workspace_position", table_name="milestones")
    op.drop_index("ix_milestones_workspace_id", table_name="milestones")
    op.drop_table("milestones")
    op.drop_index("ix_workspaces_freelancer_id", table_name="workspaces")
    op.drop_index("ix_workspaces_client_id", table_name="workspaces")
    op.drop_table("workspaces")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("users")
    for enum_type in (API_SCOPE, DISPUTE_RESOLUTION, APPROVAL_STATUS, ESCROW_STATUS, MILESTONE_STATUS):
        enum_type.drop(op.get_bind(), checkfirst=True)
