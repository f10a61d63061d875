"""donor and abuse event tables

Revision ID: 3b1f6c2d9a4e
Revises:
Create Date: 2026-10-18 09:12:40.418211

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3b1f6c2d9a4e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create donor accounts and the abuse event log."""
    op.create_table(
        "donor",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("phone"),
    )
    op.create_index(op.f("ix_donor_email"), "donor", ["email"], unique=True)

    op.create_table(
        "abuse_event",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_abuse_event_ip"), "abuse_event", ["ip"], unique=False)
    op.create_index(op.f("ix_abuse_event_category"), "abuse_event", ["category"], unique=False)
    op.create_index(op.f("ix_abuse_event_created_at"), "abuse_event", ["created_at"], unique=False)


def downgrade() -> None:
    """Drop the abuse event log and donor accounts."""
    op.drop_index(op.f("ix_abuse_event_created_at"), table_name="abuse_event")
    op.drop_index(op.f("ix_abuse_event_category"), table_name="abuse_event")
    op.drop_index(op.f("ix_abuse_event_ip"), table_name="abuse_event")
    op.drop_table("abuse_event")
    op.drop_index(op.f("ix_donor_email"), table_name="donor")
    op.drop_table("donor")
