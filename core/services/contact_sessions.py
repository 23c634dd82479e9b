"""
Contact sessions: short-lived identities for anonymous widget visitors.

A session is valid while now < expires_at. Validation never mutates; only
the message router refreshes a session, and only when it is close to expiry.
"""

from __future__ import annotations

from typing import Optional

import core.config as config
from core.context import RequestContext, check_identity_and_get_org_id
from core.db import DB
from core.errors import NotFound
from core.models import ContactSession, Conversation
from core.services.shared import (
    _validate_email,
    _validate_required_text,
    logger,
    now_ms,
    MAX_SHORT_TEXT_LENGTH,
)
from core.validators import validate_contact_metadata

REASON_NOT_FOUND = "Contact session not found"
REASON_EXPIRED = "Contact session has expired"


def serialize_contact_session(record: ContactSession) -> dict:
    return {
        "id": record.id,
        "name": record.name,
        "email": record.email,
        "organization_id": record.organization_id,
        "expires_at": record.expires_at,
        "metadata": record.metadata_,
    }


def is_session_valid(record: Optional[ContactSession], at_ms: Optional[int] = None) -> bool:
    if record is None:
        return False
    current = now_ms() if at_ms is None else at_ms
    return current < record.expires_at


def get_contact_session(db, contact_session_id: str) -> Optional[ContactSession]:
    if not contact_session_id:
        return None
    return db.query(ContactSession).filter(ContactSession.id == contact_session_id).first()


def get_valid_session(db, contact_session_id: str) -> Optional[ContactSession]:
    record = get_contact_session(db, contact_session_id)
    return record if is_session_valid(record) else None


def create_contact_session(
    name: str,
    email: str,
    organization_id: str,
    metadata: Optional[dict] = None,
) -> dict:
    _validate_required_text(name, "name", MAX_SHORT_TEXT_LENGTH)
    _validate_email(email)
    _validate_required_text(organization_id, "organization_id", MAX_SHORT_TEXT_LENGTH)
    cleaned_metadata = validate_contact_metadata(metadata)

    db = DB.SessionLocal()
    try:
        record = ContactSession(
            name=name.strip(),
            email=email.strip(),
            organization_id=organization_id,
            expires_at=now_ms() + config.SESSION_DURATION_MS,
            metadata_=cleaned_metadata,
        )
        db.add(record)
        db.commit()
        logger.info(
            "contact_session_created",
            extra={"contact_session_id": record.id, "organization_id": organization_id},
        )
        return {"status": "created", "contact_session_id": record.id, "expires_at": record.expires_at}
    finally:
        db.close()


def validate_contact_session(contact_session_id: str) -> dict:
    """Report validity without touching the session."""
    db = DB.SessionLocal()
    try:
        record = get_contact_session(db, contact_session_id)
        if record is None:
            return {"valid": False, "reason": REASON_NOT_FOUND}
        if not is_session_valid(record):
            return {"valid": False, "reason": REASON_EXPIRED}
        return {"valid": True, "contact_session": serialize_contact_session(record)}
    finally:
        db.close()


def refresh_contact_session(db, contact_session_id: str) -> bool:
    """
    Extend a live session to a full duration once it is inside the refresh
    window. Returns True when expires_at moved.
    """
    record = get_contact_session(db, contact_session_id)
    if record is None:
        return False
    current = now_ms()
    if current >= record.expires_at:
        return False
    if record.expires_at - current >= config.AUTO_REFRESH_THRESHOLD_MS:
        return False
    record.expires_at = current + config.SESSION_DURATION_MS
    db.commit()
    return True


def get_contact_session_by_conversation(
    conversation_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """Operator view of the visitor behind a conversation in the caller's org."""
    organization_id = check_identity_and_get_org_id(context)
    db = DB.SessionLocal()
    try:
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if conversation is None or conversation.organization_id != organization_id:
            raise NotFound("Conversation not found")
        record = get_contact_session(db, conversation.contact_session_id)
        if record is None:
            raise NotFound("Contact session not found")
        return serialize_contact_session(record)
    finally:
        db.close()
