"""free days engine: riders, audit log, rules and beneficiaries

Revision ID: 0001_free_days_engine
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_free_days_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "riders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True, unique=True),
        sa.Column("phone", sa.Text(), nullable=True, unique=True),
        sa.Column("role", sa.Text(), nullable=False, server_default="USER"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("role in ('USER','ADMIN')", name="ck_rider_role"),
    )
    op.create_index("ix_riders_role_created", "riders", ["role", "created_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("actor_user_id", sa.Uuid(), sa.ForeignKey("riders.id", ondelete="SET NULL"), nullable=True),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("action in ('CREATE','UPDATE','DELETE')", name="ck_audit_action"),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_actor_created", "audit_log", ["actor_user_id", "created_at"])

    op.create_table(
        "free_days_rules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("number_of_days", sa.Integer(), nullable=False),
        sa.Column("target_type", sa.Text(), nullable=False, server_default="NEW_USERS"),
        sa.Column("target_days_since_registration", sa.Integer(), nullable=True),
        sa.Column("target_min_spend", sa.Numeric(12, 2), nullable=True),
        sa.Column("start_hour", sa.Integer(), nullable=True),
        sa.Column("end_hour", sa.Integer(), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_beneficiaries", sa.Integer(), nullable=True),
        sa.Column("current_beneficiaries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "target_type IN ('NEW_USERS','EXISTING_BY_DAYS','EXISTING_BY_SPEND','MANUAL')",
            name="ck_free_days_rules_target_type",
        ),
        sa.CheckConstraint("number_of_days >= 1", name="ck_free_days_rules_days"),
        sa.CheckConstraint("start_hour IS NULL OR (start_hour >= 0 AND start_hour < 24)", name="ck_free_days_rules_start_hour"),
        sa.CheckConstraint("end_hour IS NULL OR (end_hour >= 0 AND end_hour < 24)", name="ck_free_days_rules_end_hour"),
        sa.CheckConstraint(
            "max_beneficiaries IS NULL OR current_beneficiaries <= max_beneficiaries",
            name="ck_free_days_rules_capacity",
        ),
        sa.CheckConstraint("current_beneficiaries >= 0", name="ck_free_days_rules_counter"),
    )
    op.create_index("ix_free_days_rules_active_target", "free_days_rules", ["is_active", "target_type"])

    op.create_table(
        "free_days_beneficiaries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("rule_id", sa.Uuid(), sa.ForeignKey("free_days_rules.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("riders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("days_granted", sa.Integer(), nullable=False),
        sa.Column("days_remaining", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("rule_id", "user_id", name="uq_free_days_beneficiaries_rule_user"),
        sa.CheckConstraint(
            "days_remaining >= 0 AND days_remaining <= days_granted",
            name="ck_free_days_beneficiaries_balance",
        ),
        sa.CheckConstraint(
            "(start_date IS NULL AND expires_at IS NULL) OR (start_date IS NOT NULL AND expires_at IS NOT NULL)",
            name="ck_free_days_beneficiaries_state",
        ),
    )
    op.create_index(
        "ix_free_days_beneficiaries_user_active_exp",
        "free_days_beneficiaries",
        ["user_id", "is_active", "expires_at"],
    )


def downgrade():
    op.drop_index("ix_free_days_beneficiaries_user_active_exp", table_name="free_days_beneficiaries")
    op.drop_table("free_days_beneficiaries")
    op.drop_index("ix_free_days_rules_active_target", table_name="free_days_rules")
    op.drop_table("free_days_rules")
    op.drop_index("ix_audit_actor_created", table_name="audit_log")
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_riders_role_created", table_name="riders")
    op.drop_table("riders")
