"""
Message router: authorizes an inbound visitor message and decides whether
the support agent answers it or it is stored for a human operator.
"""

from __future__ import annotations

from typing import Optional

from core.audit import log_event
from core.audit_constants import EVENT_CONVERSATION_ESCALATED
from core.context import RequestContext, check_identity_and_get_org_id
from core.db import DB
from core.errors import BadRequest, NotFound, Unauthorized, ValidationIssue
from core.models import Conversation, ConversationStatus, MessageRole
from core.services import contact_sessions, support_agent, threads
from core.services.conversations import get_by_thread_id, transition_status
from core.services.shared import (
    _validate_limit,
    _validate_required_text,
    logger,
    MAX_MESSAGE_LENGTH,
    MAX_RESULT_LIMIT,
)
from core.services.subscriptions import ACTIVE_STATUS, get_subscription


def should_trigger_agent(conversation_status: Optional[str], subscription_status: Optional[str]) -> bool:
    """The agent only answers unresolved conversations of active subscribers."""
    return (
        conversation_status == ConversationStatus.unresolved.value
        and subscription_status == ACTIVE_STATUS
    )


def _authorize(db, thread_id: str, contact_session_id: str) -> Conversation:
    session = contact_sessions.get_valid_session(db, contact_session_id)
    if session is None:
        raise Unauthorized("Invalid session")
    conversation = get_by_thread_id(db, thread_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    if conversation.contact_session_id != session.id:
        raise Unauthorized("Incorrect session")
    return conversation


def post_message(prompt: str, thread_id: str, contact_session_id: str) -> dict:
    """Accept a visitor message; returns {"status": "answered" | "stored", ...}."""
    db = DB.SessionLocal()
    try:
        conversation = _authorize(db, thread_id, contact_session_id)
        if conversation.status == ConversationStatus.resolved.value:
            raise BadRequest("Conversation is resolved")
        _validate_required_text(prompt, "prompt", MAX_MESSAGE_LENGTH)

        try:
            contact_sessions.refresh_contact_session(db, contact_session_id)
        except Exception as exc:
            db.rollback()
            logger.warning(
                "contact_session_refresh_failed",
                extra={"contact_session_id": contact_session_id, "detail": str(exc)},
            )

        subscription = get_subscription(db, conversation.organization_id)
        subscription_status = subscription.status if subscription else None
        trigger = should_trigger_agent(conversation.status, subscription_status)

        if not trigger:
            threads.save_message(db, thread_id, MessageRole.user, prompt)
            logger.info(
                "message_stored",
                extra={"thread_id": thread_id, "conversation_status": conversation.status},
            )
            return {"status": "stored", "agent_triggered": False}
    finally:
        db.close()

    result = support_agent.run_agent(thread_id, prompt)
    return {"status": "answered", "agent_triggered": True, "reply": result["reply"]}


def _operator_conversation(db, conversation_id: str, organization_id: str) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None or conversation.organization_id != organization_id:
        raise NotFound("Conversation not found")
    return conversation


def post_operator_message(
    conversation_id: str,
    prompt: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Operator reply on a conversation. Replying to an unresolved conversation
    takes it over from the agent (unresolved -> escalated).
    """
    organization_id = check_identity_and_get_org_id(context)
    _validate_required_text(prompt, "prompt", MAX_MESSAGE_LENGTH)

    db = DB.SessionLocal()
    try:
        conversation = _operator_conversation(db, conversation_id, organization_id)
        if conversation.status == ConversationStatus.resolved.value:
            raise BadRequest("Conversation is resolved")
        if conversation.status == ConversationStatus.unresolved.value:
            if transition_status(
                db,
                conversation.id,
                [ConversationStatus.unresolved],
                ConversationStatus.escalated,
            ):
                log_event(
                    db,
                    event_type=EVENT_CONVERSATION_ESCALATED,
                    context=context,
                    org_id=organization_id,
                    target_type="conversation",
                    target_ids=[conversation.id],
                    metadata={"to_status": ConversationStatus.escalated.value},
                )
                db.commit()
        message = threads.save_message(db, conversation.thread_id, MessageRole.assistant, prompt)
        return {"status": "stored", "message": threads.serialize_message(message)}
    finally:
        db.close()


def list_operator_messages(
    conversation_id: str,
    cursor: Optional[str] = None,
    page_size: int = 50,
    context: Optional[RequestContext] = None,
) -> dict:
    organization_id = check_identity_and_get_org_id(context)
    _validate_limit(page_size, "page_size", MAX_RESULT_LIMIT)
    after_seq = _parse_seq_cursor(cursor)

    db = DB.SessionLocal()
    try:
        conversation = _operator_conversation(db, conversation_id, organization_id)
        return _message_page(db, conversation.thread_id, after_seq, page_size)
    finally:
        db.close()


def _message_page(db, thread_id: str, after_seq: int, page_size: int) -> dict:
    rows = threads.list_thread_messages(db, thread_id, after_seq=after_seq, limit=page_size + 1)
    page = rows[:page_size]
    is_done = len(rows) <= page_size
    return {
        "page": [threads.serialize_message(row) for row in page],
        "is_done": is_done,
        "continue_cursor": "" if is_done or not page else str(page[-1].seq),
    }


def _parse_seq_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        value = int(cursor)
    except (TypeError, ValueError) as exc:
        raise ValidationIssue("cursor is invalid", field="cursor", error_type="invalid_cursor") from exc
    if value < 0:
        raise ValidationIssue("cursor is invalid", field="cursor", error_type="invalid_cursor")
    return value


def list_messages(
    thread_id: str,
    contact_session_id: str,
    cursor: Optional[str] = None,
    page_size: int = 50,
) -> dict:
    """Messages on the visitor's own thread, oldest first, paginated by seq."""
    _validate_limit(page_size, "page_size", MAX_RESULT_LIMIT)
    after_seq = _parse_seq_cursor(cursor)

    db = DB.SessionLocal()
    try:
        _authorize(db, thread_id, contact_session_id)
        return _message_page(db, thread_id, after_seq, page_size)
    finally:
        db.close()
