"""create entitlement, payment and moderation schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("free_window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "generation_attempts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("network_address", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("cost_class", sa.String(), nullable=False),
        sa.Column("funding_pool", sa.String(), nullable=False),
        sa.Column("half_units_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("mode", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("user_id IS NOT NULL OR network_address IS NOT NULL", name="ck_generation_attempts_requester"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generation_attempts_user_id"), "generation_attempts", ["user_id"], unique=False)
    op.create_index(op.f("ix_generation_attempts_status"), "generation_attempts", ["status"], unique=False)
    op.create_index(op.f("ix_generation_attempts_created_at"), "generation_attempts", ["created_at"], unique=False)
    op.create_index(
        "ix_generation_attempts_address_status",
        "generation_attempts",
        ["network_address", "status"],
        unique=False,
    )
    op.create_index(
        "ix_generation_attempts_user_pool_created",
        "generation_attempts",
        ["user_id", "funding_pool", "created_at"],
        unique=False,
    )

    op.create_table(
        "paid_credit_balances",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance_half_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance_half_units >= 0", name="ck_paid_credit_balances_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_paid_credit_balances_user_id"), "paid_credit_balances", ["user_id"], unique=True)

    op.create_table(
        "pending_payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("processor_reference", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("payer_email", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("half_units", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credited_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_pending_payments_processor_reference"),
        "pending_payments",
        ["processor_reference"],
        unique=True,
    )
    op.create_index(op.f("ix_pending_payments_user_id"), "pending_payments", ["user_id"], unique=False)
    op.create_index(op.f("ix_pending_payments_payer_email"), "pending_payments", ["payer_email"], unique=False)
    op.create_index(op.f("ix_pending_payments_status"), "pending_payments", ["status"], unique=False)
    op.create_index(op.f("ix_pending_payments_created_at"), "pending_payments", ["created_at"], unique=False)

    op.create_table(
        "block_entries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("blocked_by", sa.String(), nullable=False),
        sa.Column("blocked_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("deactivated_by", sa.String(), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("user_id IS NOT NULL OR email IS NOT NULL OR session_id IS NOT NULL", name="ck_block_entries_identifier"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_block_entries_user_id"), "block_entries", ["user_id"], unique=False)
    op.create_index(op.f("ix_block_entries_email"), "block_entries", ["email"], unique=False)
    op.create_index(op.f("ix_block_entries_session_id"), "block_entries", ["session_id"], unique=False)
    op.create_index(op.f("ix_block_entries_is_active"), "block_entries", ["is_active"], unique=False)

    op.create_table(
        "admin_users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_admin_users_username"), "admin_users", ["username"], unique=True)


def downgrade() -> None:
    op.drop_index(op.f("ix_admin_users_username"), table_name="admin_users")
    op.drop_table("admin_users")

    op.drop_index(op.f("ix_block_entries_is_active"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_session_id"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_email"), table_name="block_entries")
    op.drop_index(op.f("ix_block_entries_user_id"), table_name="block_entries")
    op.drop_table("block_entries")

    op.drop_index(op.f("ix_pending_payments_created_at"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_status"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_payer_email"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_user_id"), table_name="pending_payments")
    op.drop_index(op.f("ix_pending_payments_processor_reference"), table_name="pending_payments")
    op.drop_table("pending_payments")

    op.drop_index(op.f("ix_paid_credit_balances_user_id"), table_name="paid_credit_balances")
    op.drop_table("paid_credit_balances")

    op.drop_index("ix_generation_attempts_user_pool_created", table_name="generation_attempts")
    op.drop_index("ix_generation_attempts_address_status", table_name="generation_attempts")
    op.drop_index(op.f("ix_generation_attempts_created_at"), table_name="generation_attempts")
    op.drop_index(op.f("ix_generation_attempts_status"), table_name="generation_attempts")
    op.drop_index(op.f("ix_generation_attempts_user_id"), table_name="generation_attempts")
    op.drop_table("generation_attempts")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
