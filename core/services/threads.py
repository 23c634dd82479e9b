"""
Thread and message storage.
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.errors import ValidationIssue
from core.models import Message, MessageRole, Thread
from core.services.shared import logger

SEQ_RETRY_MAX = 5


def serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "thread_id": message.thread_id,
        "seq": message.seq,
        "role": message.role,
        "content": message.content,
        "tool_name": message.tool_name,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


def create_thread(db, organization_id: str) -> Thread:
    """Add a thread to the caller's transaction."""
    thread = Thread(organization_id=organization_id)
    db.add(thread)
    db.flush()
    return thread


def _next_seq(db, thread_id: str) -> int:
    current = db.query(func.max(Message.seq)).filter(Message.thread_id == thread_id).scalar()
    return (current or 0) + 1


def save_message(
    db,
    thread_id: str,
    role: MessageRole,
    content: str,
    tool_name: Optional[str] = None,
) -> Message:
    """
    Append a message and commit.

    Concurrent writers on one thread can pick the same seq; the unique
    constraint rejects the loser, which retries with a fresh seq.
    """
    if not isinstance(content, str):
        raise ValidationIssue("content must be a string", field="content", error_type="invalid_type")
    role_value = MessageRole(role).value
    for attempt in range(SEQ_RETRY_MAX):
        message = Message(
            thread_id=thread_id,
            seq=_next_seq(db, thread_id),
            role=role_value,
            content=content,
            tool_name=tool_name,
        )
        db.add(message)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("message_seq_conflict", extra={"thread_id": thread_id, "attempt": attempt})
            continue
        return message
    raise RuntimeError(f"Could not append message to thread {thread_id}")


def list_thread_messages(
    db,
    thread_id: str,
    *,
    after_seq: int = 0,
    limit: int = 50,
) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.thread_id == thread_id, Message.seq > after_seq)
        .order_by(Message.seq.asc())
        .limit(limit)
        .all()
    )


def recent_messages(db, thread_id: str, limit: int = 20) -> List[Message]:
    """Last `limit` messages in chronological order."""
    rows = (
        db.query(Message)
        .filter(Message.thread_id == thread_id)
        .order_by(Message.seq.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))
