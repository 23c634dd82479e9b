"""
Per-organization subscription status, written by the billing webhook.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.audit import log_event
from core.audit_constants import EVENT_SUBSCRIPTION_UPDATED
from core.db import DB
from core.models import Subscription
from core.services.shared import _validate_required_text, logger, MAX_SHORT_TEXT_LENGTH

ACTIVE_STATUS = "active"


def serialize_subscription(record: Subscription) -> dict:
    return {
        "organization_id": record.organization_id,
        "status": record.status,
        "max_allowed_memberships": record.max_allowed_memberships,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


def get_subscription(db, organization_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.organization_id == organization_id).first()


def get_by_organization_id(organization_id: str) -> Optional[dict]:
    db = DB.SessionLocal()
    try:
        record = get_subscription(db, organization_id)
        return serialize_subscription(record) if record else None
    finally:
        db.close()


def upsert_subscription(
    organization_id: str,
    status: str,
    max_allowed_memberships: Optional[int] = None,
) -> dict:
    """Insert-or-update keyed by organization id."""
    _validate_required_text(organization_id, "organization_id", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(status, "status", 50)

    db = DB.SessionLocal()
    try:
        for _ in range(2):
            record = get_subscription(db, organization_id)
            if record is None:
                record = Subscription(organization_id=organization_id)
                db.add(record)
            record.status = status
            record.max_allowed_memberships = max_allowed_memberships
            log_event(
                db,
                event_type=EVENT_SUBSCRIPTION_UPDATED,
                actor_type="integration",
                org_id=organization_id,
                target_type="subscription",
                target_ids=[organization_id],
                metadata={"status": status},
            )
            try:
                db.commit()
            except IntegrityError:
                # lost the insert race; the next pass updates the winner's row
                db.rollback()
                continue
            logger.info(
                "subscription_upserted",
                extra={"organization_id": organization_id, "status": status},
            )
            return {"status": "upserted", "subscription": serialize_subscription(record)}
        raise RuntimeError(f"Could not upsert subscription for {organization_id}")
    finally:
        db.close()
