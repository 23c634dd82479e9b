"""
Shared validation helpers for Echo services.
"""

from __future__ import annotations

import json
from typing import Optional

from core.config import (
    MAX_EMBEDDING_TEXT_LENGTH,
    MAX_METADATA_BYTES,
)
from core.errors import ValidationIssue
from core.models import ConversationStatus, PLUGIN_SERVICES


CONTACT_METADATA_FIELDS = {
    "user_agent": str,
    "platform": str,
    "language": str,
    "languages": str,
    "vendor": str,
    "screen_resolution": str,
    "viewport_size": str,
    "timezone": str,
    "timezone_offset": (int, float),
    "cookie_enabled": bool,
    "referrer": str,
    "current_url": str,
}


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_email(value: str, field: str = "email") -> None:
    validate_required_text(value, field, 255)
    local, _, domain = value.strip().partition("@")
    if not local or "." not in domain:
        raise ValidationIssue(f"{field} must be a valid email address", field=field, error_type="invalid_format")


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_contact_metadata(metadata: Optional[dict]) -> Optional[dict]:
    """Drop unset keys and reject unknown or mistyped environment fields."""
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise ValidationIssue("metadata must be an object", field="metadata", error_type="invalid_type")
    validate_metadata(metadata, "metadata")
    cleaned = {}
    for key, value in metadata.items():
        expected = CONTACT_METADATA_FIELDS.get(key)
        if expected is None:
            raise ValidationIssue(f"Unknown metadata field: {key}", field="metadata", error_type="invalid_key")
        if value is None:
            continue
        if expected is not bool and isinstance(value, bool):
            raise ValidationIssue(f"metadata.{key} has the wrong type", field="metadata", error_type="invalid_type")
        if not isinstance(value, expected):
            raise ValidationIssue(f"metadata.{key} has the wrong type", field="metadata", error_type="invalid_type")
        cleaned[key] = value
    return cleaned


def validate_conversation_status(value: str, field: str = "status") -> ConversationStatus:
    try:
        return ConversationStatus(value)
    except ValueError as exc:
        allowed = ", ".join(status.value for status in ConversationStatus)
        raise ValidationIssue(
            f"{field} must be one of: {allowed}",
            field=field,
            error_type="invalid_value",
        ) from exc


def validate_plugin_service(value: str) -> str:
    if value not in PLUGIN_SERVICES:
        raise ValidationIssue(
            f"service must be one of: {', '.join(sorted(PLUGIN_SERVICES))}",
            field="service",
            error_type="invalid_value",
        )
    return value


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)
