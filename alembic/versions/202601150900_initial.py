"""initial schema

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "owners",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=254)),
        sa.Column("phone", sa.String(length=40)),
        sa.Column("apartment_id", sa.String(length=20), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "transaction_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=False),
        sa.Column("total_transactions", sa.Integer(), nullable=False),
        sa.Column("new_transactions", sa.Integer(), nullable=False),
        sa.Column("duplicated_transactions", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "transaction_tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=80), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("color", sa.String(length=9)),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("transaction_tags.id", ondelete="SET NULL"),
        ),
        sa.Column("month_year", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "month_year IS NULL OR (month_year % 100 BETWEEN 1 AND 12)",
            name="ck_tag_month_year_valid",
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "type", sa.Enum("debit", "credit", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("bank_description", sa.Text()),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column(
            "owner_id", sa.Integer(), sa.ForeignKey("owners.id", ondelete="SET NULL")
        ),
        sa.Column("bank_account", sa.String(length=64)),
        sa.Column("reference", sa.String(length=120)),
        sa.Column("category", sa.String(length=120)),
        sa.Column("serial", sa.String(length=120)),
        sa.Column(
            "batch_id", sa.Integer(), sa.ForeignKey("transaction_batches.id")
        ),
        sa.Column(
            "is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_dup_date", "transactions", ["is_duplicate", "date"]
    )
    op.create_index(
        "ix_transactions_owner_type", "transactions", ["owner_id", "type"]
    )

    op.create_table(
        "transaction_to_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("transaction_tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transaction_to_tags_tag", "transaction_to_tags", ["tag_id"])

    op.create_table(
        "tag_patterns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("transaction_tags.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pattern", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "owner_patterns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "owner_id",
            sa.Integer(),
            sa.ForeignKey("owners.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pattern", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "lpg_refills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bill_amount_cents", sa.Integer(), nullable=False),
        sa.Column("gallons_refilled", sa.Float(), nullable=False),
        sa.Column("refill_date", sa.DateTime(), nullable=False),
        sa.Column(
            "efficiency_percentage", sa.Float(), nullable=False, server_default="0"
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("transaction_tags.id")),
        *_timestamps(),
        sa.CheckConstraint("bill_amount_cents >= 0", name="ck_refill_bill_positive"),
    )

    op.create_table(
        "lpg_refill_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "refill_id",
            sa.Integer(),
            sa.ForeignKey("lpg_refills.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "owner_id",
            sa.Integer(),
            sa.ForeignKey("owners.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("previous_reading", sa.Float(), nullable=False),
        sa.Column("current_reading", sa.Float(), nullable=False),
        sa.Column("consumption", sa.Float(), nullable=False),
        sa.Column("percentage", sa.Float(), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "attachments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "refill_id",
            sa.Integer(),
            sa.ForeignKey("lpg_refills.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "refill_entry_id",
            sa.Integer(),
            sa.ForeignKey("lpg_refill_entries.id", ondelete="CASCADE"),
        ),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("storage_key", sa.String(length=512), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("mime_type", sa.String(length=120), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("entity_type", sa.String(length=30), nullable=False),
        sa.Column("entity_id", sa.String(length=64)),
        sa.Column("user_id", sa.String(length=64)),
        sa.Column("user_email", sa.String(length=254)),
        sa.Column("details", sa.Text()),
        sa.Column("ip_address", sa.String(length=64)),
        sa.Column("user_agent", sa.String(length=512)),
        sa.Column(
            "is_system_event", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_logs_created", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])

    op.create_table(
        "kv_store",
        sa.Column("key", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("kv_store")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_created", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("attachments")
    op.drop_table("lpg_refill_entries")
    op.drop_table("lpg_refills")
    op.drop_table("owner_patterns")
    op.drop_table("tag_patterns")
    op.drop_index("ix_transaction_to_tags_tag", table_name="transaction_to_tags")
    op.drop_table("transaction_to_tags")
    op.drop_index("ix_transactions_owner_type", table_name="transactions")
    op.drop_index("ix_transactions_dup_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("transaction_tags")
    op.drop_table("transaction_batches")
    op.drop_table("owners")
