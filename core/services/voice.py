"""
Voice provider (Vapi) lookups made with each organization's own API keys.
"""

from __future__ import annotations

from typing import Optional

import httpx

import core.config as config
from core.context import RequestContext, check_identity_and_get_org_id
from core.errors import BadRequest, ConfigurationError, NotFound
from core.services.plugins import get_plugin_credentials
from core.services.shared import _validate_required_text, logger, MAX_SHORT_TEXT_LENGTH

VAPI_SERVICE = "vapi"
VOICE_TIMEOUT_SECONDS = 15.0
INCOMPLETE_CREDENTIALS = "Credentials incomplete. Please reconnect your Vapi account."


def _credentials(organization_id: str) -> dict:
    secret_data = get_plugin_credentials(organization_id, VAPI_SERVICE)
    if not secret_data.get("privateApiKey") or not secret_data.get("publicApiKey"):
        raise BadRequest(INCOMPLETE_CREDENTIALS)
    return secret_data


def _vapi_get(path: str, private_api_key: str) -> list:
    with httpx.Client(
        base_url=config.VAPI_BASE_URL,
        timeout=httpx.Timeout(VOICE_TIMEOUT_SECONDS),
        headers={"Authorization": f"Bearer {private_api_key}"},
    ) as client:
        try:
            response = client.get(path)
        except httpx.RequestError as exc:
            logger.warning("vapi_request_failed", extra={"path": path, "detail": str(exc)})
            raise ConfigurationError("Voice provider is unreachable") from exc
    if response.status_code in (401, 403):
        raise BadRequest(INCOMPLETE_CREDENTIALS)
    if response.status_code >= 400:
        logger.warning("vapi_request_failed", extra={"path": path, "status": response.status_code})
        raise ConfigurationError(f"Voice provider returned status {response.status_code}")
    return response.json()


def get_phone_numbers(context: Optional[RequestContext] = None) -> list:
    organization_id = check_identity_and_get_org_id(context)
    credentials = _credentials(organization_id)
    return _vapi_get("/phone-number", credentials["privateApiKey"])


def get_assistants(context: Optional[RequestContext] = None) -> list:
    organization_id = check_identity_and_get_org_id(context)
    credentials = _credentials(organization_id)
    return _vapi_get("/assistant", credentials["privateApiKey"])


def get_public_voice_key(organization_id: str) -> Optional[dict]:
    """Public key the widget needs to start browser calls; None if not connected."""
    _validate_required_text(organization_id, "organization_id", MAX_SHORT_TEXT_LENGTH)
    try:
        credentials = get_plugin_credentials(organization_id, VAPI_SERVICE)
    except NotFound:
        return None
    public_key = credentials.get("publicApiKey")
    return {"public_api_key": public_key} if public_key else None
