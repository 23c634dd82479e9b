"""
Request bodies for the HTTP routes. Field rules live in the services;
these models only shape the JSON.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ContactSessionCreate(BaseModel):
    name: str
    email: str
    organization_id: str
    metadata: Optional[dict[str, Any]] = None


class ContactSessionValidate(BaseModel):
    contact_session_id: str


class ConversationCreate(BaseModel):
    contact_session_id: str
    organization_id: str


class MessageCreate(BaseModel):
    prompt: str
    thread_id: str
    contact_session_id: str


class OrganizationValidate(BaseModel):
    organization_id: str


class ConversationStatusUpdate(BaseModel):
    status: str


class SecretUpsert(BaseModel):
    service: str
    value: dict[str, Any] = Field(default_factory=dict)


class WidgetSettingsUpsert(BaseModel):
    greet_message: str
    default_suggestions: Optional[dict[str, Optional[str]]] = None
    vapi_settings: Optional[dict[str, Optional[str]]] = None


class OperatorMessageCreate(BaseModel):
    prompt: str
