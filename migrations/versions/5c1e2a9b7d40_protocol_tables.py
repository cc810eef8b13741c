"""protocol tables

Revision ID: 5c1e2a9b7d40
Revises:
Create Date: 2026-10-19 09:12:44.318205

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c1e2a9b7d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the session registry, purchase ledger and entitlement tables."""
    op.create_table(
        "session_record",
        sa.Column("token_digest", sa.String(length=64), nullable=False),
        sa.Column("jti", sa.String(length=64), nullable=False),
        sa.Column("subject_id", sa.Text(), nullable=False),
        sa.Column("device_id", sa.Text(), nullable=True),
        sa.Column("issued_at", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("token_digest"),
        sa.UniqueConstraint("jti"),
    )
    op.create_index("ix_session_record_subject_id", "session_record", ["subject_id"])
    op.create_index("ix_session_record_expires_at", "session_record", ["expires_at"])

    op.create_table(
        "purchase_transaction",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("device_id", sa.Text(), nullable=True),
        sa.Column("subject_id", sa.Text(), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_token", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
    )
    op.create_index(
        "ix_purchase_transaction_subject_id", "purchase_transaction", ["subject_id"]
    )
    op.create_index(
        "ix_purchase_transaction_purchase_token", "purchase_transaction", ["purchase_token"]
    )

    op.create_table(
        "entitlement",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("holder_kind", sa.String(length=16), nullable=False),
        sa.Column("holder_id", sa.Text(), nullable=False),
        sa.Column("tier", sa.String(length=32), nullable=False),
        sa.Column("source_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("holder_kind", "holder_id", name="uq_entitlement_holder"),
    )


def downgrade() -> None:
    """Drop the protocol tables."""
    op.drop_table("entitlement")
    op.drop_index("ix_purchase_transaction_purchase_token", table_name="purchase_transaction")
    op.drop_index("ix_purchase_transaction_subject_id", table_name="purchase_transaction")
    op.drop_table("purchase_transaction")
    op.drop_index("ix_session_record_expires_at", table_name="session_record")
    op.drop_index("ix_session_record_subject_id", table_name="session_record")
    op.drop_table("session_record")
