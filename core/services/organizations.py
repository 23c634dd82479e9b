"""
Organization existence checks against the identity provider's backend API.
"""

from __future__ import annotations

import httpx

import core.config as config
from core.errors import ConfigurationError
from core.services.shared import _validate_required_text, logger, MAX_SHORT_TEXT_LENGTH

INVALID_REASON = "Organization not valid"
IDENTITY_TIMEOUT_SECONDS = 10.0


def validate_organization(organization_id: str) -> dict:
    """Returns {"valid": True} or {"valid": False, "reason": ...}."""
    _validate_required_text(organization_id, "organization_id", MAX_SHORT_TEXT_LENGTH)
    if not config.IDENTITY_SECRET_KEY:
        raise ConfigurationError("CLERK_SECRET_KEY environment variable is required")

    try:
        response = httpx.get(
            f"{config.IDENTITY_API_URL}/v1/organizations/{organization_id}",
            headers={"Authorization": f"Bearer {config.IDENTITY_SECRET_KEY}"},
            timeout=IDENTITY_TIMEOUT_SECONDS,
        )
    except httpx.RequestError as exc:
        logger.warning(
            "organization_validate_failed",
            extra={"organization_id": organization_id, "detail": str(exc)},
        )
        return {"valid": False, "reason": INVALID_REASON}

    if response.status_code == 200:
        return {"valid": True}
    logger.info(
        "organization_invalid",
        extra={"organization_id": organization_id, "status": response.status_code},
    )
    return {"valid": False, "reason": INVALID_REASON}
