"""
Dashboard endpoints for signed-in operators. Every call is scoped to the
organization in the caller's session token.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from app.deps import get_db_session, require_org_context
from app.schemas import (
    ConversationStatusUpdate,
    OperatorMessageCreate,
    SecretUpsert,
    WidgetSettingsUpsert,
)
from core.audit import list_audit_events
from core.context import RequestContext, check_identity_and_get_org_id
from core.errors import NotFound
from core.services import (
    contact_sessions,
    conversations,
    files,
    messages,
    plugins,
    voice,
    widget_settings,
)
from core.services.shared import _validate_limit, MAX_RESULT_LIMIT
import core.config as config


router = APIRouter(prefix="/dashboard", tags=["dashboard"])


# =============================================================================
# Files
# =============================================================================

@router.post("/files")
def upload_file(
    file: UploadFile = File(...),
    category: Optional[str] = Form(None),
    context: RequestContext = Depends(require_org_context),
):
    data = file.file.read(config.MAX_UPLOAD_BYTES + 1)
    return files.add_file(
        file.filename or "",
        data,
        mime_type=file.content_type if file.content_type not in (None, "", "application/octet-stream") else None,
        category=category or None,
        context=context,
    )


@router.get("/files")
def list_files(
    category: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = 20,
    context: RequestContext = Depends(require_org_context),
):
    return files.list_files(category=category, cursor=cursor, page_size=page_size, context=context)


@router.delete("/files/{entry_id}")
def delete_file(entry_id: str, context: RequestContext = Depends(require_org_context)):
    return files.delete_file(entry_id, context=context)


# =============================================================================
# Conversations
# =============================================================================

@router.get("/conversations")
def list_conversations(
    status: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = 20,
    context: RequestContext = Depends(require_org_context),
):
    return conversations.list_conversations(
        status=status,
        cursor=cursor,
        page_size=page_size,
        context=context,
    )


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str, context: RequestContext = Depends(require_org_context)):
    return conversations.get_conversation_for_operator(conversation_id, context=context)


@router.patch("/conversations/{conversation_id}/status")
def update_conversation_status(
    conversation_id: str,
    body: ConversationStatusUpdate,
    context: RequestContext = Depends(require_org_context),
):
    return conversations.update_conversation_status(conversation_id, body.status, context=context)


@router.get("/conversations/{conversation_id}/contact-session")
def get_contact_session(conversation_id: str, context: RequestContext = Depends(require_org_context)):
    return contact_sessions.get_contact_session_by_conversation(conversation_id, context=context)


@router.get("/conversations/{conversation_id}/messages")
def list_conversation_messages(
    conversation_id: str,
    cursor: Optional[str] = None,
    page_size: int = 50,
    context: RequestContext = Depends(require_org_context),
):
    return messages.list_operator_messages(
        conversation_id,
        cursor=cursor,
        page_size=page_size,
        context=context,
    )


@router.post("/conversations/{conversation_id}/messages")
def post_conversation_message(
    conversation_id: str,
    body: OperatorMessageCreate,
    context: RequestContext = Depends(require_org_context),
):
    return messages.post_operator_message(conversation_id, body.prompt, context=context)


# =============================================================================
# Plugins and secrets
# =============================================================================

@router.get("/plugins/{service}")
def get_plugin(service: str, context: RequestContext = Depends(require_org_context)):
    plugin = plugins.get_plugin(service, context=context)
    if plugin is None:
        raise NotFound("Plugin not found")
    return plugin


@router.delete("/plugins/{service}")
def remove_plugin(service: str, context: RequestContext = Depends(require_org_context)):
    return plugins.remove_plugin(service, context=context)


@router.post("/secrets", status_code=202)
def upsert_secret(body: SecretUpsert, context: RequestContext = Depends(require_org_context)):
    return plugins.upsert_secret(body.service, body.value, context=context)


@router.get("/vapi/phone-numbers")
def list_phone_numbers(context: RequestContext = Depends(require_org_context)):
    return voice.get_phone_numbers(context=context)


@router.get("/vapi/assistants")
def list_assistants(context: RequestContext = Depends(require_org_context)):
    return voice.get_assistants(context=context)


# =============================================================================
# Widget settings
# =============================================================================

@router.get("/widget-settings")
def get_widget_settings(context: RequestContext = Depends(require_org_context)):
    return {"widget_settings": widget_settings.get_own_widget_settings(context=context)}


@router.put("/widget-settings")
def upsert_widget_settings(
    body: WidgetSettingsUpsert,
    context: RequestContext = Depends(require_org_context),
):
    return widget_settings.upsert_widget_settings(
        body.greet_message,
        default_suggestions=body.default_suggestions,
        vapi_settings=body.vapi_settings,
        context=context,
    )


# =============================================================================
# Audit
# =============================================================================

@router.get("/audit-events")
def get_audit_events(
    event_type: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = 50,
    context: RequestContext = Depends(require_org_context),
    db=Depends(get_db_session),
):
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    return list_audit_events(
        db,
        org_id=check_identity_and_get_org_id(context),
        event_type=event_type,
        limit=limit,
        cursor=cursor,
    )
