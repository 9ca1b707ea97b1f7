"""Create conversation, message, queue and agent tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "handoff_conversations",
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("channel_routing_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="bot"),
        sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("bot_session_id", sa.String(length=256), nullable=True),
        sa.Column("bot_token", sa.Text(), nullable=True),
        sa.Column("token_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("conversation_id"),
    )
    op.create_index("ix_handoff_conversations_status", "handoff_conversations", ["status"], unique=False)
    op.create_index(
        "ix_handoff_conversations_last_activity", "handoff_conversations", ["last_activity"], unique=False
    )

    op.create_table(
        "handoff_messages",
        sa.Column("sequence", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("sender", sa.String(length=16), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("agent_id", sa.String(length=128), nullable=True),
        sa.Column("attachment_url", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("sequence"),
        sa.UniqueConstraint("message_id"),
    )
    op.create_index("ix_handoff_messages_conversation_id", "handoff_messages", ["conversation_id"], unique=False)
    op.create_index("ix_handoff_messages_timestamp", "handoff_messages", ["timestamp"], unique=False)

    op.create_table(
        "handoff_queue",
        sa.Column("conversation_id", sa.String(length=128), nullable=False),
        sa.Column("channel_routing_id", sa.String(length=128), nullable=False),
        sa.Column("recipient", sa.String(length=128), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("assigned_agent", sa.String(length=128), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("conversation_id"),
    )
    op.create_index("ix_handoff_queue_start_time", "handoff_queue", ["start_time"], unique=False)
    op.create_index("ix_handoff_queue_assigned_agent", "handoff_queue", ["assigned_agent"], unique=False)

    op.create_table(
        "handoff_agents",
        sa.Column("agent_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("max_concurrent_chats", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("active_conversations_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_handoff_agents_status", "handoff_agents", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_handoff_agents_status", table_name="handoff_agents")
    op.drop_table("handoff_agents")

    op.drop_index("ix_handoff_queue_assigned_agent", table_name="handoff_queue")
    op.drop_index("ix_handoff_queue_start_time", table_name="handoff_queue")
    op.drop_table("handoff_queue")

    op.drop_index("ix_handoff_messages_timestamp", table_name="handoff_messages")
    op.drop_index("ix_handoff_messages_conversation_id", table_name="handoff_messages")
    op.drop_table("handoff_messages")

    op.drop_index("ix_handoff_conversations_last_activity", table_name="handoff_conversations")
    op.drop_index("ix_handoff_conversations_status", table_name="handoff_conversations")
    op.drop_table("handoff_conversations")
