"""
Audit trail for tenant-visible changes.

Events record who changed what (ids, statuses, sizes) and never the text
involved: no message bodies, document text, credentials or visitor emails.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Optional

from sqlalchemy import and_, or_

from core.context import RequestContext
from core.models import AuditEvent

ALLOWED_ACTOR_TYPES = {"user", "contact", "agent", "system", "integration"}
ALLOWED_TARGET_TYPES = {"file", "conversation", "plugin", "subscription", "widget_settings"}

# matched as substrings of the lower-cased key
FORBIDDEN_KEY_FRAGMENTS = (
    "content",
    "prompt",
    "text",
    "secret",
    "apikey",
    "api_key",
    "private_key",
    "password",
    "token",
    "embedding",
    "email",
)
MAX_METADATA_STRING_LENGTH = 500
MAX_METADATA_DEPTH = 4
MAX_TARGET_ID_LENGTH = 200


def _walk_metadata(value: Any, path: str = "", depth: int = 0) -> Iterator[tuple[str, Any]]:
    """Yield (dotted path, leaf) pairs; dict keys are checked on the way down."""
    if depth > MAX_METADATA_DEPTH:
        raise ValueError(f"metadata nested too deeply at '{path}'")
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError("metadata keys must be strings")
            normalized = key.strip().lower().replace("-", "_")
            if any(fragment in normalized for fragment in FORBIDDEN_KEY_FRAGMENTS):
                raise ValueError(f"metadata key '{key}' is not allowed")
            yield from _walk_metadata(item, f"{path}.{key}" if path else key, depth + 1)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_metadata(item, path, depth + 1)
    else:
        yield path, value


def _check_metadata(metadata: Optional[dict]) -> Optional[dict]:
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be a dict")
    for path, leaf in _walk_metadata(metadata):
        if isinstance(leaf, str) and len(leaf) > MAX_METADATA_STRING_LENGTH:
            raise ValueError(f"metadata value too long at '{path or 'value'}'")
        if leaf is not None and not isinstance(leaf, (str, int, float, bool)):
            raise ValueError(f"metadata value at '{path}' must be a scalar")
    return metadata


def _check_target_ids(target_ids: Any) -> list:
    if not isinstance(target_ids, (list, tuple)):
        raise ValueError("target_ids must be a list")
    for item in target_ids:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise ValueError("target_ids must contain strings or integers")
        if isinstance(item, str) and len(item) > MAX_TARGET_ID_LENGTH:
            raise ValueError("target_id value too long")
    return list(target_ids)


def log_event(
    db,
    *,
    event_type: str,
    target_type: str,
    target_ids: list,
    context: Optional[RequestContext] = None,
    actor_type: Optional[str] = None,
    actor_id: Optional[str] = None,
    org_id: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEvent:
    """
    Add an audit event to the caller's transaction (caller commits).

    With a request context the actor defaults to the signed-in user and the
    organization and request id come from the context. Background tasks and
    webhooks pass actor_type/org_id explicitly instead.
    """
    if context is not None and context.auth is not None:
        actor_type = actor_type or "user"
        actor_id = actor_id or context.auth.user_id
        org_id = org_id or context.auth.organization_id
    actor_type = actor_type or "system"
    if not event_type or not isinstance(event_type, str):
        raise ValueError("event_type must be a non-empty string")
    if actor_type not in ALLOWED_ACTOR_TYPES:
        raise ValueError("actor_type must be one of: " + "|".join(sorted(ALLOWED_ACTOR_TYPES)))
    if target_type not in ALLOWED_TARGET_TYPES:
        raise ValueError("target_type must be one of: " + "|".join(sorted(ALLOWED_TARGET_TYPES)))

    event = AuditEvent(
        created_at=datetime.utcnow(),
        event_type=event_type,
        actor_type=actor_type,
        actor_id=actor_id,
        org_id=org_id,
        target_type=target_type,
        target_ids=_check_target_ids(target_ids),
        reason=reason,
        request_id=context.request_id if context is not None else None,
        metadata_=_check_metadata(metadata),
    )
    db.add(event)
    return event


def _serialize_event(row: AuditEvent) -> dict:
    return {
        "event_id": str(row.event_id),
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "event_type": row.event_type,
        "actor_type": row.actor_type,
        "actor_id": row.actor_id,
        "target_type": row.target_type,
        "target_ids": row.target_ids,
        "reason": row.reason,
        "metadata": row.metadata_,
    }


def list_audit_events(
    db,
    *,
    org_id: str,
    event_type: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> dict:
    """An organization's events, newest first. The cursor is the last event id seen."""
    if limit <= 0:
        raise ValueError("limit must be positive")

    query = db.query(AuditEvent).filter(AuditEvent.org_id == org_id)
    if event_type:
        query = query.filter(AuditEvent.event_type == event_type)

    anchor = None
    if cursor:
        anchor = (
            db.query(AuditEvent)
            .filter(AuditEvent.event_id == cursor, AuditEvent.org_id == org_id)
            .first()
        )
    if anchor is not None:
        query = query.filter(
            or_(
                AuditEvent.created_at < anchor.created_at,
                and_(
                    AuditEvent.created_at == anchor.created_at,
                    AuditEvent.event_id < anchor.event_id,
                ),
            )
        )

    rows = (
        query.order_by(AuditEvent.created_at.desc(), AuditEvent.event_id.desc())
        .limit(limit)
        .all()
    )
    return {
        "status": "ok",
        "count": len(rows),
        "events": [_serialize_event(row) for row in rows],
        "next_cursor": str(rows[-1].event_id) if len(rows) == limit else None,
    }


__all__ = [
    "AuditEvent",
    "log_event",
    "list_audit_events",
    "ALLOWED_ACTOR_TYPES",
    "ALLOWED_TARGET_TYPES",
]
