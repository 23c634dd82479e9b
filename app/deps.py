"""
Dependency helpers for the FastAPI app.
"""

from __future__ import annotations

import uuid
from typing import Generator

from fastapi import Depends, Request

from core.context import AuthContext, RequestContext, check_identity_and_get_org_id
from core.db import DB
from app.auth import get_auth_context_from_request


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_auth_context(request: Request) -> AuthContext:
    auth = get_auth_context_from_request(request)
    return auth if auth is not None else AuthContext(actor="anonymous")


def get_request_context(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
) -> RequestContext:
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    return RequestContext(auth=auth, request_id=request_id, source="dashboard")


def require_org_context(
    context: RequestContext = Depends(get_request_context),
) -> RequestContext:
    """Reject the request early when the caller has no identity or organization."""
    if context.auth.actor == "anonymous":
        check_identity_and_get_org_id(None)
    check_identity_and_get_org_id(context)
    return context
