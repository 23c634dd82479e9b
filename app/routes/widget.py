"""
Public widget endpoints. Visitors authenticate with a contact session id.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query

from app.schemas import (
    ContactSessionCreate,
    ContactSessionValidate,
    ConversationCreate,
    MessageCreate,
    OrganizationValidate,
)
from core.errors import NotFound
from core.services import (
    contact_sessions,
    conversations,
    messages,
    organizations,
    voice,
    widget_settings,
)


router = APIRouter(prefix="/widget", tags=["widget"])


@router.post("/organizations/validate")
def validate_organization(body: OrganizationValidate):
    return organizations.validate_organization(body.organization_id)


@router.post("/contact-sessions")
def create_contact_session(body: ContactSessionCreate):
    return contact_sessions.create_contact_session(
        body.name,
        body.email,
        body.organization_id,
        metadata=body.metadata,
    )


@router.post("/contact-sessions/validate")
def validate_contact_session(body: ContactSessionValidate):
    return contact_sessions.validate_contact_session(body.contact_session_id)


@router.get("/settings/{organization_id}")
def get_widget_settings(organization_id: str):
    settings = widget_settings.get_widget_settings(organization_id)
    if settings is None:
        raise NotFound("Widget settings not found")
    return settings


@router.get("/voice/{organization_id}")
def get_voice_key(organization_id: str):
    key = voice.get_public_voice_key(organization_id)
    if key is None:
        raise NotFound("Plugin not found")
    return key


@router.post("/conversations")
def create_conversation(body: ConversationCreate):
    return conversations.create_conversation(body.contact_session_id, body.organization_id)


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, contact_session_id: str = Query(...)):
    return conversations.get_conversation(conversation_id, contact_session_id)


@router.post("/messages")
def post_message(body: MessageCreate):
    return messages.post_message(body.prompt, body.thread_id, body.contact_session_id)


@router.get("/messages")
def list_messages(
    thread_id: str = Query(...),
    contact_session_id: str = Query(...),
    cursor: Optional[str] = None,
    page_size: int = 50,
):
    return messages.list_messages(thread_id, contact_session_id, cursor=cursor, page_size=page_size)
