"""initial marketplace schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

PROJECT_STATUSES = (
    "draft",
    "open",
    "quote_received",
    "quote_accepted",
    "payment_pending",
    "in_progress",
    "completion_requested",
    "disputed",
    "completed",
    "expired",
    "cancelled",
)
QUOTE_STATUSES = ("pending", "viewed", "accepted", "rejected", "expired", "abandoned")
ESCROW_STATUSES = ("pending", "held", "advance_paid", "released", "frozen", "refunded")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        *_timestamps(),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
    )

    op.create_table(
        "api_keys",
        *_timestamps(),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False),
        sa.Column("scope", sa.Enum("client", "artisan", "admin", name="apiscope"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])

    op.create_table(
        "projects",
        *_timestamps(),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("location", sa.String(length=200), nullable=True),
        sa.Column("is_urgent", sa.Boolean(), nullable=False),
        sa.Column("status", sa.Enum(*PROJECT_STATUSES, name="projectstatus"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_requested_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("completion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("client_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_projects_client_id", "projects", ["client_id"])
    op.create_index("ix_projects_status", "projects", ["status"])
    op.create_index("ix_projects_expires_at", "projects", ["expires_at"])

    op.create_table(
        "quotes",
        *_timestamps(),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("urgent_surcharge_percent", sa.Integer(), nullable=False),
        sa.Column("labor_cost", sa.Integer(), nullable=True),
        sa.Column("materials_cost", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("estimated_duration", sa.String(length=100), nullable=True),
        sa.Column("revision_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.Enum(*QUOTE_STATUSES, name="quotestatus"), nullable=False),
        sa.Column("rejection_reason", sa.String(length=500), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_quote_amount_positive"),
        sa.CheckConstraint("urgent_surcharge_percent >= 0", name="ck_quote_surcharge_non_negative"),
    )
    op.create_index("ix_quotes_project_id", "quotes", ["project_id"])
    op.create_index("ix_quotes_provider_id", "quotes", ["provider_id"])
    op.create_index("ix_quotes_project_status", "quotes", ["project_id", "status"])

    op.create_table(
        "escrows",
        *_timestamps(),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False, unique=True),
        sa.Column("base_amount", sa.Integer(), nullable=False),
        sa.Column("urgent_surcharge", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("commission_percent", sa.Integer(), nullable=False),
        sa.Column("commission_amount", sa.Integer(), nullable=False),
        sa.Column("tva_percent", sa.Integer(), nullable=False),
        sa.Column("tva_amount", sa.Integer(), nullable=False),
        sa.Column("artisan_payout", sa.Integer(), nullable=False),
        sa.Column("advance_percent", sa.Integer(), nullable=False),
        sa.Column("advance_amount", sa.Integer(), nullable=False),
        sa.Column("advance_paid", sa.Integer(), nullable=False),
        sa.Column("released_amount", sa.Integer(), nullable=False),
        sa.Column("refunded_amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.Enum(*ESCROW_STATUSES, name="escrowstatus"), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("gateway_fees", sa.Integer(), nullable=False),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("base_amount > 0", name="ck_escrow_base_amount_positive"),
        sa.CheckConstraint("total_amount = base_amount + urgent_surcharge", name="ck_escrow_total_matches"),
        sa.CheckConstraint(
            "artisan_payout + commission_amount + tva_amount = total_amount",
            name="ck_escrow_breakdown_sums_to_total",
        ),
        sa.CheckConstraint(
            "urgent_surcharge >= 0 AND commission_amount >= 0 AND tva_amount >= 0 "
            "AND artisan_payout >= 0 AND advance_amount >= 0 AND advance_paid >= 0",
            name="ck_escrow_amounts_non_negative",
        ),
        sa.CheckConstraint("advance_paid <= advance_amount", name="ck_escrow_advance_within_amount"),
        sa.CheckConstraint("status != 'pending' OR advance_paid = 0", name="ck_escrow_pending_has_no_advance"),
    )
    op.create_index("ix_escrows_status", "escrows", ["status"])

    op.create_table(
        "escrow_events",
        *_timestamps(),
        sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrows.id"), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_escrow_events_escrow_id", "escrow_events", ["escrow_id"])

    op.create_table(
        "disputes",
        *_timestamps(),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrows.id"), nullable=False),
        sa.Column("raised_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.Enum("open", "resolved", name="disputestatus"), nullable=False),
        sa.Column(
            "resolution",
            sa.Enum("refund_client", "pay_artisan", "split", name="resolutionmode"),
            nullable=True,
        ),
        sa.Column("client_share_percent", sa.Integer(), nullable=True),
        sa.Column("client_refund", sa.Integer(), nullable=True),
        sa.Column("artisan_payment", sa.Integer(), nullable=True),
        sa.Column("platform_retained", sa.Integer(), nullable=True),
        sa.Column("resolution_note", sa.String(length=1000), nullable=True),
        sa.Column("resolved_by", sa.String(length=100), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "client_share_percent IS NULL OR (client_share_percent >= 0 AND client_share_percent <= 100)",
            name="ck_dispute_share_range",
        ),
    )
    op.create_index("ix_disputes_project_id", "disputes", ["project_id"])
    op.create_index("ix_disputes_escrow_id", "disputes", ["escrow_id"])

    op.create_table(
        "notifications",
        *_timestamps(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("template", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "audit_logs",
        *_timestamps(),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        *_timestamps(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    for table in (
        "scheduler_locks",
        "audit_logs",
        "notifications",
        "disputes",
        "escrow_events",
        "escrows",
        "quotes",
        "projects",
        "api_keys",
        "users",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in ("resolutionmode", "disputestatus", "escrowstatus", "quotestatus", "projectstatus", "apiscope"):
            sa.Enum(name=enum_name).drop(bind, checkfirst=True)
