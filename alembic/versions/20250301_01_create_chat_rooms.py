"""Create chat room summary and participant tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20250301_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chat_rooms",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("chat_room_id", sa.String(length=64), nullable=False),
        sa.Column("last_message", sa.Text(), nullable=True),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_chat_rooms_chat_room_id", "chat_rooms", ["chat_room_id"], unique=True)

    op.create_table(
        "chat_room_participants",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("room_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=True),
        sa.Column("profile", sa.String(length=512), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["room_id"], ["chat_rooms.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("room_id", "user_id", name="uq_chat_room_participant"),
        sa.CheckConstraint("unread_count >= 0", name="ck_chat_room_participant_unread"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_chat_room_participants_user", "chat_room_participants", ["user_id"])

    op.alter_column("chat_room_participants", "unread_count", server_default=None)


def downgrade() -> None:
    op.drop_index("ix_chat_room_participants_user", table_name="chat_room_participants")
    op.drop_table("chat_room_participants")
    op.drop_index("ix_chat_rooms_chat_room_id", table_name="chat_rooms")
    op.drop_table("chat_rooms")
