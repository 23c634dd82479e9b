"""Initial support schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import core.config as config


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return sa.JSON()


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    uuid_type = postgresql.UUID(as_uuid=True) if is_postgres else sa.String(length=36)

    op.create_table(
        "contact_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_contact_sessions_organization_id", "contact_sessions", ["organization_id"])
    op.create_index("ix_contact_sessions_expires_at", "contact_sessions", ["expires_at"])

    op.create_table(
        "threads",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("thread_id", sa.String(length=36), sa.ForeignKey("threads.id"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tool_name", sa.String(length=100)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("thread_id", "seq", name="uq_messages_thread_seq"),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("thread_id", sa.String(length=36), sa.ForeignKey("threads.id"), nullable=False),
        sa.Column("organization_id", sa.String(length=255), nullable=False),
        sa.Column(
            "contact_session_id",
            sa.String(length=36),
            sa.ForeignKey("contact_sessions.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="unresolved"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("thread_id", name="uq_conversations_thread_id"),
    )
    op.create_index("ix_conversations_organization_id", "conversations", ["organization_id"])
    op.create_index("ix_conversations_contact_session_id", "conversations", ["contact_session_id"])
    op.create_index(
        "ix_conversations_status_organization_id",
        "conversations",
        ["status", "organization_id"],
    )

    op.create_table(
        "knowledge_namespaces",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("namespace", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("namespace", name="uq_knowledge_namespaces_namespace"),
    )

    op.create_table(
        "knowledge_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "namespace_id",
            sa.Integer(),
            sa.ForeignKey("knowledge_namespaces.id"),
            nullable=False,
        ),
        sa.Column("key", sa.String(length=500)),
        sa.Column("title", sa.String(length=500)),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("storage_id", sa.String(length=255)),
        sa.Column("uploaded_by", sa.String(length=255), nullable=False),
        sa.Column("filename", sa.String(length=500)),
        sa.Column("category", sa.String(length=100)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint(
            "namespace_id",
            "content_hash",
            name="uq_knowledge_entries_namespace_hash",
        ),
    )
    op.create_index(
        "ix_knowledge_entries_namespace_id",
        "knowledge_entries",
        ["namespace_id", "id"],
    )

    op.create_table(
        "knowledge_chunks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "entry_id",
            sa.Integer(),
            sa.ForeignKey("knowledge_entries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "namespace_id",
            sa.Integer(),
            sa.ForeignKey("knowledge_namespaces.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("embedding", _embedding_type(is_postgres)),
        sa.Column("model_version", sa.String(length=100)),
        sa.UniqueConstraint("entry_id", "position", name="uq_knowledge_chunks_entry_position"),
    )
    op.create_index("ix_knowledge_chunks_namespace_id", "knowledge_chunks", ["namespace_id"])

    op.create_table(
        "plugins",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(length=255), nullable=False),
        sa.Column("service", sa.String(length=50), nullable=False),
        sa.Column("secret_name", sa.String(length=500), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("organization_id", "service", name="uq_plugins_organization_service"),
    )

    op.create_table(
        "widget_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(length=255), nullable=False),
        sa.Column("greet_message", sa.Text(), nullable=False),
        sa.Column("default_suggestions", json_type),
        sa.Column("vapi_settings", json_type),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("organization_id", name="uq_widget_settings_organization_id"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("max_allowed_memberships", sa.Integer()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("organization_id", name="uq_subscriptions_organization_id"),
    )

    op.create_table(
        "background_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.String(length=255)),
        sa.Column("task_type", sa.String(length=100), nullable=False),
        sa.Column("payload", json_type, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("idempotency_key", sa.String(length=255)),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("idempotency_key", name="uq_background_tasks_idempotency_key"),
    )
    op.create_index(
        "ix_background_tasks_status_run_at",
        "background_tasks",
        ["status", "run_at"],
    )

    op.create_table(
        "audit_events",
        sa.Column("event_id", uuid_type, primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255)),
        sa.Column("org_id", sa.String(length=255)),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_ids", json_type, nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("request_id", sa.String(length=255)),
        sa.Column("metadata", json_type),
    )
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_org_id", "audit_events", ["org_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_org_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_background_tasks_status_run_at", table_name="background_tasks")
    op.drop_table("background_tasks")
    op.drop_table("subscriptions")
    op.drop_table("widget_settings")
    op.drop_table("plugins")
    op.drop_index("ix_knowledge_chunks_namespace_id", table_name="knowledge_chunks")
    op.drop_table("knowledge_chunks")
    op.drop_index("ix_knowledge_entries_namespace_id", table_name="knowledge_entries")
    op.drop_table("knowledge_entries")
    op.drop_table("knowledge_namespaces")
    op.drop_index("ix_conversations_status_organization_id", table_name="conversations")
    op.drop_index("ix_conversations_contact_session_id", table_name="conversations")
    op.drop_index("ix_conversations_organization_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("messages")
    op.drop_table("threads")
    op.drop_index("ix_contact_sessions_expires_at", table_name="contact_sessions")
    op.drop_index("ix_contact_sessions_organization_id", table_name="contact_sessions")
    op.drop_table("contact_sessions")
