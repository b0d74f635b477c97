"""Order chat messages by per-session sequence

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Adds chat_messages.sequence, backfilled from creation order, so a user
message and its reply keep their order when timestamps tie.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add and backfill chat_messages.sequence."""
    op.add_column(
        "chat_messages",
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
    )
    op.execute(
        """
        UPDATE chat_messages
        SET sequence = ordered.position
        FROM (
            SELECT message_id,
                   row_number() OVER (
                       PARTITION BY session_id ORDER BY created_at, message_id
                   ) AS position
            FROM chat_messages
        ) AS ordered
        WHERE chat_messages.message_id = ordered.message_id
        """
    )
    op.alter_column("chat_messages", "sequence", server_default=None)
    op.create_unique_constraint(
        "uq_chat_message_sequence", "chat_messages", ["session_id", "sequence"]
    )


def downgrade() -> None:
    """Drop chat_messages.sequence."""
    op.drop_constraint("uq_chat_message_sequence", "chat_messages", type_="unique")
    op.drop_column("chat_messages", "sequence")
