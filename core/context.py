"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.errors import Unauthorized


@dataclass(frozen=True)
class AuthContext:
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    actor: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    auth: AuthContext
    request_id: Optional[str] = None
    source: Optional[str] = None

    @staticmethod
    def for_organization(
        organization_id: Optional[str],
        user_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> "RequestContext":
        return RequestContext(
            auth=AuthContext(organization_id=organization_id, user_id=user_id, actor="user"),
            source=source,
        )


def check_identity_and_get_org_id(context: Optional[RequestContext]) -> str:
    """Return the caller's organization id or raise Unauthorized."""
    if context is None or context.auth is None:
        raise Unauthorized("Identity not found")
    organization_id = context.auth.organization_id
    if not organization_id:
        raise Unauthorized("Organization not found")
    return organization_id


__all__ = [
    "AuthContext",
    "RequestContext",
    "check_identity_and_get_org_id",
]
