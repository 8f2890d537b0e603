"""Add pin and archive columns to conversations.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    columns = {c["name"] for c in insp.get_columns("conversations")}

    if "is_pinned" not in columns:
        op.add_column(
            "conversations",
            sa.Column("is_pinned", sa.Boolean(), nullable=True, server_default=sa.false()),
        )
    if "archived_at" not in columns:
        op.add_column("conversations", sa.Column("archived_at", sa.DateTime(), nullable=True))
    indexes = {i["name"] for i in insp.get_indexes("conversations")}
    if "ix_conversations_status" not in indexes:
        op.create_index("ix_conversations_status", "conversations", ["status"])


def downgrade() -> None:
    op.drop_index("ix_conversations_status", table_name="conversations")
    op.drop_column("conversations", "archived_at")
    op.drop_column("conversations", "is_pinned")
