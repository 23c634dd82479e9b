"""
Widget settings (greeting, suggestions, voice options), one row per organization.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.audit import log_event
from core.audit_constants import EVENT_WIDGET_SETTINGS_UPDATED
from core.context import RequestContext, check_identity_and_get_org_id
from core.db import DB
from core.errors import ValidationIssue
from core.models import WidgetSettings
from core.services.shared import (
    _validate_optional_text,
    _validate_required_text,
    MAX_GREETING_LENGTH,
    MAX_SHORT_TEXT_LENGTH,
)

SUGGESTION_KEYS = ("suggestion1", "suggestion2", "suggestion3")
VAPI_SETTING_KEYS = ("assistant_id", "phone_number")


def _clean_optional_map(value: Optional[dict], allowed: tuple, field: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    cleaned = {}
    for key, item in value.items():
        if key not in allowed:
            raise ValidationIssue(f"Unknown {field} key: {key}", field=field, error_type="invalid_key")
        _validate_optional_text(item, f"{field}.{key}", MAX_SHORT_TEXT_LENGTH)
        if item:
            cleaned[key] = item
    return cleaned


def serialize_widget_settings(record: WidgetSettings) -> dict:
    return {
        "organization_id": record.organization_id,
        "greet_message": record.greet_message,
        "default_suggestions": record.default_suggestions or {},
        "vapi_settings": record.vapi_settings or {},
    }


def get_widget_settings_record(db, organization_id: str) -> Optional[WidgetSettings]:
    return db.query(WidgetSettings).filter(WidgetSettings.organization_id == organization_id).first()


def get_widget_settings(organization_id: str) -> Optional[dict]:
    """Public read used by the widget; the organization id comes from the embed."""
    _validate_required_text(organization_id, "organization_id", MAX_SHORT_TEXT_LENGTH)
    db = DB.SessionLocal()
    try:
        record = get_widget_settings_record(db, organization_id)
        return serialize_widget_settings(record) if record else None
    finally:
        db.close()


def get_own_widget_settings(context: Optional[RequestContext] = None) -> Optional[dict]:
    return get_widget_settings(check_identity_and_get_org_id(context))


def upsert_widget_settings(
    greet_message: str,
    default_suggestions: Optional[dict] = None,
    vapi_settings: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    organization_id = check_identity_and_get_org_id(context)
    _validate_required_text(greet_message, "greet_message", MAX_GREETING_LENGTH)
    suggestions = _clean_optional_map(default_suggestions, SUGGESTION_KEYS, "default_suggestions")
    vapi = _clean_optional_map(vapi_settings, VAPI_SETTING_KEYS, "vapi_settings")

    db = DB.SessionLocal()
    try:
        for _ in range(2):
            record = get_widget_settings_record(db, organization_id)
            if record is None:
                record = WidgetSettings(organization_id=organization_id)
                db.add(record)
            record.greet_message = greet_message
            record.default_suggestions = suggestions
            record.vapi_settings = vapi
            log_event(
                db,
                event_type=EVENT_WIDGET_SETTINGS_UPDATED,
                context=context,
                org_id=organization_id,
                target_type="widget_settings",
                target_ids=[organization_id],
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                continue
            return {"status": "upserted", "widget_settings": serialize_widget_settings(record)}
        raise RuntimeError(f"Could not upsert widget settings for {organization_id}")
    finally:
        db.close()
