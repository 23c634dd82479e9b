"""
Third-party integrations (plugins) and their credentials.

A plugin row links (organization, service) to a secret name. Credentials are
written to the secret store by a background task so the request returns
without waiting on AWS; the plugin row is upserted once the write succeeds.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.audit import log_event
from core.audit_constants import EVENT_PLUGIN_CONNECTED, EVENT_PLUGIN_REMOVED
from core.context import RequestContext, check_identity_and_get_org_id
from core.db import DB
from core.errors import NotFound, ValidationIssue
from core.models import Plugin
from core.services import secret_store
from core.services.shared import logger
from core.services.tasks import register_task, schedule_task
from core.validators import validate_plugin_service

SECRET_UPSERT_TASK_TYPE = "secret.upsert"
MAX_SECRET_FIELDS = 20
MAX_SECRET_VALUE_LENGTH = 4096


def serialize_plugin(plugin: Plugin) -> dict:
    return {
        "id": plugin.id,
        "organization_id": plugin.organization_id,
        "service": plugin.service,
        "secret_name": plugin.secret_name,
        "updated_at": plugin.updated_at.isoformat() if plugin.updated_at else None,
    }


def get_plugin_record(db, organization_id: str, service: str) -> Optional[Plugin]:
    return (
        db.query(Plugin)
        .filter(Plugin.organization_id == organization_id, Plugin.service == service)
        .first()
    )


def get_plugin(service: str, context: Optional[RequestContext] = None) -> Optional[dict]:
    organization_id = check_identity_and_get_org_id(context)
    validate_plugin_service(service)
    db = DB.SessionLocal()
    try:
        plugin = get_plugin_record(db, organization_id, service)
        return serialize_plugin(plugin) if plugin else None
    finally:
        db.close()


def remove_plugin(service: str, context: Optional[RequestContext] = None) -> dict:
    """Drop the plugin link. The secret itself is left in the secret store."""
    organization_id = check_identity_and_get_org_id(context)
    validate_plugin_service(service)
    db = DB.SessionLocal()
    try:
        plugin = get_plugin_record(db, organization_id, service)
        if plugin is None:
            raise NotFound("Plugin not found")
        db.delete(plugin)
        log_event(
            db,
            event_type=EVENT_PLUGIN_REMOVED,
            context=context,
            org_id=organization_id,
            target_type="plugin",
            target_ids=[service],
        )
        db.commit()
        return {"status": "removed", "service": service}
    finally:
        db.close()


def upsert_plugin(db, *, organization_id: str, service: str, secret_name: str) -> Plugin:
    """Keyed upsert on (organization_id, service); commits."""
    for _ in range(2):
        plugin = get_plugin_record(db, organization_id, service)
        if plugin is None:
            plugin = Plugin(organization_id=organization_id, service=service)
            db.add(plugin)
        plugin.secret_name = secret_name
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue
        return plugin
    raise RuntimeError(f"Could not upsert plugin {service} for {organization_id}")


def _validate_secret_value(value) -> dict:
    if not isinstance(value, dict) or not value:
        raise ValidationIssue("value must be a non-empty object", field="value", error_type="invalid_type")
    if len(value) > MAX_SECRET_FIELDS:
        raise ValidationIssue("value has too many fields", field="value", error_type="max_items")
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            raise ValidationIssue("value fields must be strings", field="value", error_type="invalid_type")
        if len(item) > MAX_SECRET_VALUE_LENGTH:
            raise ValidationIssue(f"value.{key} is too long", field="value", error_type="max_length")
    return value


def upsert_secret(service: str, value: dict, context: Optional[RequestContext] = None) -> dict:
    """
    Queue a credentials write for the caller's organization.

    Repeated calls before the worker runs collapse into one task carrying the
    latest value.
    """
    organization_id = check_identity_and_get_org_id(context)
    validate_plugin_service(service)
    cleaned = _validate_secret_value(value)

    db = DB.SessionLocal()
    try:
        task = schedule_task(
            db,
            SECRET_UPSERT_TASK_TYPE,
            {
                "organization_id": organization_id,
                "service": service,
                "user_id": context.auth.user_id if context else None,
                "value": cleaned,
            },
            organization_id=organization_id,
            idempotency_key=f"{SECRET_UPSERT_TASK_TYPE}:{organization_id}:{service}",
        )
        db.commit()
        logger.info(
            "secret_upsert_scheduled",
            extra={"organization_id": organization_id, "service": service, "task_id": task.id},
        )
        return {"status": "scheduled", "task_id": task.id}
    finally:
        db.close()


@register_task(SECRET_UPSERT_TASK_TYPE)
def secret_upsert_task(payload: dict) -> None:
    organization_id = payload["organization_id"]
    service = payload["service"]
    secret_name = secret_store.secret_name_for(organization_id, service)

    secret_store.upsert_secret(secret_name, payload["value"])

    db = DB.SessionLocal()
    try:
        plugin = upsert_plugin(
            db,
            organization_id=organization_id,
            service=service,
            secret_name=secret_name,
        )
        log_event(
            db,
            event_type=EVENT_PLUGIN_CONNECTED,
            actor_type="user" if payload.get("user_id") else "system",
            actor_id=payload.get("user_id"),
            org_id=organization_id,
            target_type="plugin",
            target_ids=[service],
        )
        db.commit()
        logger.info(
            "plugin_connected",
            extra={"organization_id": organization_id, "service": service, "plugin_id": plugin.id},
        )
    finally:
        db.close()


def get_plugin_credentials(organization_id: str, service: str) -> dict:
    """Resolve an org's stored credentials for `service` or raise NotFound."""
    db = DB.SessionLocal()
    try:
        plugin = get_plugin_record(db, organization_id, service)
        if plugin is None:
            raise NotFound("Plugin not found")
        secret_name = plugin.secret_name
    finally:
        db.close()

    secret_data = secret_store.parse_secret_string(secret_store.get_secret_value(secret_name))
    if not secret_data:
        raise NotFound("Credentials not found")
    return secret_data
