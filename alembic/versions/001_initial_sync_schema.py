"""Initial schema: sellers, buyers, employees and sync tables.

Revision ID: 001_initial_sync_schema
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _bookkeeping_columns() -> list[sa.Column]:
    return [
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("sheet_snapshot", JSON(), server_default=sa.text("'{}'::json")),
    ]


def upgrade() -> None:
    op.execute("CREATE SEQUENCE IF NOT EXISTS seller_number_seq")
    op.execute("CREATE SEQUENCE IF NOT EXISTS buyer_number_seq")

    op.create_table(
        "sellers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("seller_number", sa.String(20), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("property_address", sa.String(500), nullable=True),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("site", sa.String(100), nullable=True),
        sa.Column("status", sa.String(100), nullable=True),
        sa.Column("confidence", sa.String(20), nullable=True),
        sa.Column("valuation_amount_1", sa.BigInteger(), nullable=True),
        sa.Column("valuation_amount_2", sa.BigInteger(), nullable=True),
        sa.Column("valuation_amount_3", sa.BigInteger(), nullable=True),
        sa.Column("visit_date", sa.Date(), nullable=True),
        sa.Column("visit_time", sa.String(20), nullable=True),
        sa.Column("visit_acquirer", sa.String(20), nullable=True),
        sa.Column("phone_assignee", sa.String(20), nullable=True),
        sa.Column("contact_method", sa.String(50), nullable=True),
        sa.Column("inquiry_date", sa.Date(), nullable=True),
        *_bookkeeping_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "buyers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("buyer_number", sa.String(20), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("property_number", sa.String(50), nullable=True),
        sa.Column("latest_status", sa.String(200), nullable=True),
        sa.Column("inquiry_source", sa.String(100), nullable=True),
        sa.Column("reception_date", sa.Date(), nullable=True),
        sa.Column("desired_area", sa.String(200), nullable=True),
        sa.Column("price", sa.BigInteger(), nullable=True),
        sa.Column("budget", sa.BigInteger(), nullable=True),
        sa.Column("next_call_date", sa.Date(), nullable=True),
        sa.Column("viewing_date", sa.Date(), nullable=True),
        sa.Column("initial_assignee", sa.String(20), nullable=True),
        sa.Column("inquiry_notes", sa.Text(), nullable=True),
        *_bookkeeping_columns(),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "employees",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("initials", sa.String(20), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )

    op.create_table(
        "pending_sync_changes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_key", sa.String(50), nullable=False),
        sa.Column("field_name", sa.String(100), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_pending_sync_changes_status_created",
        "pending_sync_changes",
        ["status", "created_at"],
    )

    op.create_table(
        "sync_outbox",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("task_type", sa.String(20), nullable=False),
        sa.Column("payload", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("attempts", sa.Integer(), server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_outbox_status_id", "sync_outbox", ["status", "id"])


def downgrade() -> None:
    op.drop_index("ix_sync_outbox_status_id", table_name="sync_outbox")
    op.drop_table("sync_outbox")
    op.drop_index("ix_pending_sync_changes_status_created", table_name="pending_sync_changes")
    op.drop_table("pending_sync_changes")
    op.drop_table("employees")
    op.drop_table("buyers")
    op.drop_table("sellers")
    op.execute("DROP SEQUENCE IF EXISTS buyer_number_seq")
    op.execute("DROP SEQUENCE IF EXISTS seller_number_seq")
