"""
Dashboard authentication: identity provider session JWTs verified with PyJWT.

Tokens are RS256 against the provider's JWKS in production, or HS256 with a
shared secret for local development and tests.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Request

import core.config as config
from core.context import AuthContext

logger = config.logger


@lru_cache(maxsize=1)
def _jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_session_token(token: str) -> dict:
    """Verify a session token; raises jwt.InvalidTokenError on any failure."""
    options = {"require": ["exp", "sub"]}
    issuer = config.IDENTITY_ISSUER or None
    if config.IDENTITY_JWKS_URL:
        signing_key = _jwks_client(config.IDENTITY_JWKS_URL).get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=issuer,
            options=options,
        )
    if config.IDENTITY_JWT_SECRET:
        return jwt.decode(
            token,
            config.IDENTITY_JWT_SECRET,
            algorithms=["HS256"],
            issuer=issuer,
            options=options,
        )
    raise jwt.InvalidTokenError("no verification key configured")


def organization_from_claims(claims: dict) -> Optional[str]:
    """Active organization id: `org_id`, or the nested `o.id` of newer tokens."""
    org_id = claims.get("org_id")
    if org_id:
        return org_id
    nested = claims.get("o")
    if isinstance(nested, dict) and nested.get("id"):
        return nested["id"]
    return None


def get_auth_context_from_request(request: Request) -> Optional[AuthContext]:
    """None when the request carries no valid session token."""
    token = _bearer_token(request)
    if token is None:
        return None
    try:
        claims = decode_session_token(token)
    except jwt.PyJWKClientError as exc:
        logger.warning("identity_jwks_error", extra={"detail": str(exc)})
        return None
    except jwt.InvalidTokenError as exc:
        logger.info("identity_token_rejected", extra={"detail": str(exc)})
        return None
    return AuthContext(
        organization_id=organization_from_claims(claims),
        user_id=claims.get("sub"),
        actor="user",
    )
