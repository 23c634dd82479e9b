"""
Conversation lifecycle and session-to-conversation authorization.

States: unresolved (initial), escalated, resolved. Agent tools move a
conversation forward; only an operator can move it back out of resolved.
Every status change is a compare-and-set on (status, version), so a
transition that raced with another one reports that it did not apply.
"""

from __future__ import annotations

from typing import Iterable, Optional

from core.audit import log_event
from core.audit_constants import EVENT_CONVERSATION_STATUS_CHANGED
from core.context import RequestContext, check_identity_and_get_org_id
from core.db import DB
from core.errors import NotFound, Unauthorized, ValidationIssue
from core.models import Conversation, ConversationStatus, MessageRole
from core.services import contact_sessions, threads
from core.services.shared import (
    _validate_limit,
    _validate_required_text,
    logger,
    MAX_RESULT_LIMIT,
    MAX_SHORT_TEXT_LENGTH,
)
from core.services.widget_settings import get_widget_settings_record
from core.validators import validate_conversation_status
import core.config as config


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "status": conversation.status,
        "thread_id": conversation.thread_id,
    }


def _serialize_for_operator(conversation: Conversation) -> dict:
    payload = serialize_conversation(conversation)
    payload.update(
        {
            "organization_id": conversation.organization_id,
            "contact_session_id": conversation.contact_session_id,
            "version": conversation.version,
            "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
            "updated_at": conversation.updated_at.isoformat() if conversation.updated_at else None,
        }
    )
    return payload


def get_by_thread_id(db, thread_id: str) -> Optional[Conversation]:
    if not thread_id:
        return None
    return db.query(Conversation).filter(Conversation.thread_id == thread_id).first()


def get_by_id(db, conversation_id: str) -> Optional[Conversation]:
    if not conversation_id:
        return None
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def transition_status(
    db,
    conversation_id: str,
    from_statuses: Iterable[ConversationStatus],
    to_status: ConversationStatus,
) -> bool:
    """Move to to_status only if the current status is one of from_statuses."""
    allowed = [ConversationStatus(status).value for status in from_statuses]
    updated = (
        db.query(Conversation)
        .filter(
            Conversation.id == conversation_id,
            Conversation.status.in_(allowed),
        )
        .update(
            {
                Conversation.status: ConversationStatus(to_status).value,
                Conversation.version: Conversation.version + 1,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def create_conversation(contact_session_id: str, organization_id: str) -> dict:
    """Open a conversation for a live session and seed the thread with a greeting."""
    _validate_required_text(organization_id, "organization_id", MAX_SHORT_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        session = contact_sessions.get_valid_session(db, contact_session_id)
        if session is None or session.organization_id != organization_id:
            raise Unauthorized("Invalid session")

        settings = get_widget_settings_record(db, organization_id)
        greeting = settings.greet_message if settings and settings.greet_message else config.DEFAULT_GREETING

        thread = threads.create_thread(db, organization_id)
        conversation = Conversation(
            thread_id=thread.id,
            organization_id=organization_id,
            contact_session_id=session.id,
            status=ConversationStatus.unresolved.value,
            version=1,
        )
        db.add(conversation)
        db.commit()
        threads.save_message(db, thread.id, MessageRole.assistant, greeting)
        logger.info(
            "conversation_created",
            extra={"conversation_id": conversation.id, "organization_id": organization_id},
        )
        return {"status": "created", "conversation_id": conversation.id, "thread_id": thread.id}
    finally:
        db.close()


def get_conversation(conversation_id: str, contact_session_id: str) -> dict:
    db = DB.SessionLocal()
    try:
        session = contact_sessions.get_valid_session(db, contact_session_id)
        if session is None:
            raise Unauthorized("Invalid session")
        conversation = get_by_id(db, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation.contact_session_id != session.id:
            raise Unauthorized("Incorrect session")
        return serialize_conversation(conversation)
    finally:
        db.close()


def _parse_offset_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        value = int(cursor)
    except (TypeError, ValueError) as exc:
        raise ValidationIssue("cursor is invalid", field="cursor", error_type="invalid_cursor") from exc
    if value < 0:
        raise ValidationIssue("cursor is invalid", field="cursor", error_type="invalid_cursor")
    return value


def list_conversations(
    status: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = 20,
    context: Optional[RequestContext] = None,
) -> dict:
    """Operator inbox, newest first."""
    organization_id = check_identity_and_get_org_id(context)
    _validate_limit(page_size, "page_size", MAX_RESULT_LIMIT)
    offset = _parse_offset_cursor(cursor)

    db = DB.SessionLocal()
    try:
        query = db.query(Conversation).filter(Conversation.organization_id == organization_id)
        if status:
            query = query.filter(Conversation.status == validate_conversation_status(status).value)
        rows = (
            query.order_by(Conversation.created_at.desc(), Conversation.id.desc())
            .offset(offset)
            .limit(page_size + 1)
            .all()
        )
        page = rows[:page_size]
        is_done = len(rows) <= page_size
        return {
            "page": [_serialize_for_operator(row) for row in page],
            "is_done": is_done,
            "continue_cursor": "" if is_done else str(offset + len(page)),
        }
    finally:
        db.close()


def get_conversation_for_operator(
    conversation_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    organization_id = check_identity_and_get_org_id(context)
    db = DB.SessionLocal()
    try:
        conversation = get_by_id(db, conversation_id)
        if conversation is None or conversation.organization_id != organization_id:
            raise NotFound("Conversation not found")
        return _serialize_for_operator(conversation)
    finally:
        db.close()


def update_conversation_status(
    conversation_id: str,
    status: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Operator status change. This is the only path out of resolved, so it
    doubles as reopen (resolved -> unresolved or escalated).
    """
    organization_id = check_identity_and_get_org_id(context)
    target = validate_conversation_status(status)

    db = DB.SessionLocal()
    try:
        conversation = get_by_id(db, conversation_id)
        if conversation is None or conversation.organization_id != organization_id:
            raise NotFound("Conversation not found")
        previous = ConversationStatus(conversation.status)
        if previous == target:
            return {"status": "unchanged", "conversation": _serialize_for_operator(conversation)}

        applied = transition_status(db, conversation.id, [previous], target)
        if not applied:
            raise ValidationIssue(
                "Conversation status changed concurrently; reload and retry",
                field="status",
                error_type="conflict",
            )
        log_event(
            db,
            event_type=EVENT_CONVERSATION_STATUS_CHANGED,
            context=context,
            org_id=organization_id,
            target_type="conversation",
            target_ids=[conversation.id],
            metadata={"from_status": previous.value, "to_status": target.value},
        )
        db.commit()
        db.refresh(conversation)
        return {"status": "updated", "conversation": _serialize_for_operator(conversation)}
    finally:
        db.close()
