"""
Echo Database Models
PostgreSQL (+ optional pgvector) or SQLite schema
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime, ForeignKey,
    Index, UniqueConstraint, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship, declarative_base

import core.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except ImportError:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND_EFFECTIVE == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON(none_as_null=True)

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=True) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def _uuid_default() -> str | uuid.UUID:
    value = uuid.uuid4()
    return value if DB_BACKEND_EFFECTIVE == "postgres" else str(value)


def _string_id() -> str:
    return str(uuid.uuid4())


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class ConversationStatus(str, PyEnum):
    unresolved = "unresolved"
    escalated = "escalated"
    resolved = "resolved"


class EntryStatus(str, PyEnum):
    ready = "ready"
    pending = "pending"
    error = "error"


class MessageRole(str, PyEnum):
    user = "user"
    assistant = "assistant"
    tool = "tool"


class TaskStatus(str, PyEnum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


PLUGIN_SERVICES = {"vapi"}


# =============================================================================
# Contact Sessions (anonymous widget visitors)
# =============================================================================

class ContactSession(Base):
    __tablename__ = "contact_sessions"

    id = Column(String(36), primary_key=True, default=_string_id)
    organization_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    expires_at = Column(BigInteger, nullable=False)  # epoch ms
    metadata_ = Column("metadata", JSON_TYPE)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    conversations = relationship("Conversation", back_populates="contact_session")

    __table_args__ = (
        Index("ix_contact_sessions_organization_id", "organization_id"),
        Index("ix_contact_sessions_expires_at", "expires_at"),
    )


# =============================================================================
# Threads and Messages
# =============================================================================

class Thread(Base):
    __tablename__ = "threads"

    id = Column(String(36), primary_key=True, default=_string_id)
    organization_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    messages = relationship("Message", back_populates="thread", order_by="Message.seq")


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    thread_id = Column(String(36), ForeignKey("threads.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    tool_name = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    thread = relationship("Thread", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("thread_id", "seq", name="uq_messages_thread_seq"),
    )


# =============================================================================
# Conversations
# =============================================================================

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_string_id)
    thread_id = Column(String(36), ForeignKey("threads.id"), nullable=False)
    organization_id = Column(String(255), nullable=False)
    contact_session_id = Column(String(36), ForeignKey("contact_sessions.id"), nullable=False)
    status = Column(String(20), nullable=False, default=ConversationStatus.unresolved.value)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    contact_session = relationship("ContactSession", back_populates="conversations")

    __table_args__ = (
        UniqueConstraint("thread_id", name="uq_conversations_thread_id"),
        Index("ix_conversations_organization_id", "organization_id"),
        Index("ix_conversations_contact_session_id", "contact_session_id"),
        Index("ix_conversations_status_organization_id", "status", "organization_id"),
    )


# =============================================================================
# Knowledge Store
# =============================================================================

class KnowledgeNamespace(Base):
    __tablename__ = "knowledge_namespaces"

    id = Column(Integer, primary_key=True)
    namespace = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("namespace", name="uq_knowledge_namespaces_namespace"),
    )


class KnowledgeEntry(Base):
    __tablename__ = "knowledge_entries"

    id = Column(Integer, primary_key=True)
    namespace_id = Column(Integer, ForeignKey("knowledge_namespaces.id"), nullable=False)
    key = Column(String(500))
    title = Column(String(500))
    text = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=EntryStatus.pending.value)

    # Typed metadata
    storage_id = Column(String(255))
    uploaded_by = Column(String(255), nullable=False)
    filename = Column(String(500))
    category = Column(String(100))

    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    namespace = relationship("KnowledgeNamespace")
    chunks = relationship(
        "KnowledgeChunk",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="KnowledgeChunk.position",
    )

    __table_args__ = (
        UniqueConstraint("namespace_id", "content_hash", name="uq_knowledge_entries_namespace_hash"),
        Index("ix_knowledge_entries_namespace_id", "namespace_id", "id"),
    )


class KnowledgeChunk(Base):
    __tablename__ = "knowledge_chunks"

    id = Column(Integer, primary_key=True)
    entry_id = Column(Integer, ForeignKey("knowledge_entries.id", ondelete="CASCADE"), nullable=False)
    namespace_id = Column(Integer, ForeignKey("knowledge_namespaces.id"), nullable=False)
    position = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    model_version = Column(String(100))

    entry = relationship("KnowledgeEntry", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("entry_id", "position", name="uq_knowledge_chunks_entry_position"),
        Index("ix_knowledge_chunks_namespace_id", "namespace_id"),
    )


# =============================================================================
# Per-organization records
# =============================================================================

class Plugin(Base):
    __tablename__ = "plugins"

    id = Column(Integer, primary_key=True)
    organization_id = Column(String(255), nullable=False)
    service = Column(String(50), nullable=False)
    secret_name = Column(String(500), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "service", name="uq_plugins_organization_service"),
    )


class WidgetSettings(Base):
    __tablename__ = "widget_settings"

    id = Column(Integer, primary_key=True)
    organization_id = Column(String(255), nullable=False)
    greet_message = Column(Text, nullable=False)
    default_suggestions = Column(JSON_TYPE, default=dict)
    vapi_settings = Column(JSON_TYPE, default=dict)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_widget_settings_organization_id"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    organization_id = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False)
    max_allowed_memberships = Column(Integer)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_subscriptions_organization_id"),
    )


# =============================================================================
# Background Tasks
# =============================================================================

class BackgroundTask(Base):
    __tablename__ = "background_tasks"

    id = Column(Integer, primary_key=True)
    organization_id = Column(String(255))
    task_type = Column(String(100), nullable=False)
    payload = Column(JSON_TYPE, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=TaskStatus.pending.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    idempotency_key = Column(String(255))
    run_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_background_tasks_idempotency_key"),
        Index("ix_background_tasks_status_run_at", "status", "run_at"),
    )


# =============================================================================
# Audit Events
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(Integer, default=1, nullable=False)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    org_id = Column(String(255))
    target_type = Column(String(50), nullable=False)
    target_ids = Column(JSON_TYPE, nullable=False)
    reason = Column(Text)
    request_id = Column(String(255))
    metadata_ = Column("metadata", JSON_TYPE)

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_org_id", "org_id"),
    )
