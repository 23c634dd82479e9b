"""
Billing webhook from the identity provider (delivered through Svix).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time

from fastapi import APIRouter, HTTPException, Request

import core.config as config
from core.services import subscriptions

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SUBSCRIPTION_UPDATED = "subscription.updated"
ACTIVE_MEMBERSHIP_LIMIT = 5
INACTIVE_MEMBERSHIP_LIMIT = 1


def _decode_secret(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        encoded = secret[len("whsec_"):]
        return base64.b64decode(encoded + "=" * (-len(encoded) % 4))
    return secret.encode("utf-8")


def verify_svix_signature(body: bytes, headers, secret: str, now: float | None = None) -> bool:
    """Check svix-signature against HMAC-SHA256 of "{id}.{timestamp}.{body}"."""
    svix_id = headers.get("svix-id", "")
    svix_timestamp = headers.get("svix-timestamp", "")
    svix_signature = headers.get("svix-signature", "")
    if not svix_id or not svix_timestamp or not svix_signature:
        return False

    try:
        timestamp = int(svix_timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - timestamp) > config.WEBHOOK_TOLERANCE_SECONDS:
        return False

    try:
        secret_bytes = _decode_secret(secret)
    except (binascii.Error, ValueError):
        config.logger.warning("Billing webhook secret is not valid base64")
        return False

    signed_payload = f"{svix_id}.{svix_timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(
        hmac.new(secret_bytes, signed_payload, hashlib.sha256).digest()
    ).decode("utf-8")

    for entry in svix_signature.split(" "):
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return True
    return False


@router.post("/billing")
async def billing_webhook(request: Request):
    body = await request.body()
    secret = config.BILLING_WEBHOOK_SECRET
    if not secret or not verify_svix_signature(body, request.headers, secret):
        config.logger.warning("billing_webhook_rejected")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc

    event_type = event.get("type") if isinstance(event, dict) else None
    if event_type != SUBSCRIPTION_UPDATED:
        config.logger.info("billing_webhook_ignored", extra={"event_type": event_type})
        return {"status": "ignored"}

    data = event.get("data") or {}
    organization_id = (data.get("payer") or {}).get("organization_id")
    if not organization_id:
        raise HTTPException(status_code=400, detail="Missing Organization ID")

    status = data.get("status") or "inactive"
    max_allowed = ACTIVE_MEMBERSHIP_LIMIT if status == "active" else INACTIVE_MEMBERSHIP_LIMIT
    # membership limits live with the identity provider; stored here for reference
    subscriptions.upsert_subscription(organization_id, status, max_allowed_memberships=max_allowed)
    return {"status": "ok"}
