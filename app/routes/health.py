"""
Health and dependency endpoints.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import core.config as config
from core.db import DB, schema_revisions
from core.errors import ModelProviderError
from core.services import llm


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            ext_version = None
            pgvector_installed = True
            if config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
                ext_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
                pgvector_installed = bool(ext_version)
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "pgvector_installed": pgvector_installed,
        "pgvector_version": ext_version,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _check_model_health(check_external: bool) -> dict:
    breaker_status = llm.model_circuit_breaker.status()
    model_status = {
        "status": "unknown",
        "provider": config.MODEL_PROVIDER,
        "circuit_breaker": breaker_status,
        "checked": False,
    }

    if config.MODEL_PROVIDER == "none":
        model_status["status"] = "disabled"
        return model_status

    if breaker_status.get("open"):
        model_status["status"] = "cooldown"
        return model_status

    if check_external:
        model_status["checked"] = True
        start = time.time()
        try:
            llm.embed_text_sync("healthcheck")
            model_status["status"] = "ok"
            model_status["latency_ms"] = int((time.time() - start) * 1000)
        except ModelProviderError as exc:
            model_status["status"] = "error"
            model_status["error"] = str(exc)
        return model_status

    model_status["status"] = "ready"
    return model_status


def _vector_required() -> bool:
    return config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"


@router.get("/health")
def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    model_status = _check_model_health(check_external=False)
    if not db_health.get("ok") or (_vector_required() and not db_health.get("pgvector_installed")):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "model_provider": model_status},
        )

    return {
        "status": "healthy",
        "service": "Echo",
        "version": config.SERVICE_VERSION,
        "instance_id": config.INSTANCE_ID,
        "database": db_health,
        "model_provider": model_status,
        "storage_backend": config.STORAGE_BACKEND,
    }


@router.get("/health/deps")
def health_deps():
    """Dependency health checks (probes the model provider)."""
    db_health = _check_db_health()
    if not db_health.get("ok") or (_vector_required() and not db_health.get("pgvector_installed")):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "Echo",
        "database": db_health,
        "model_provider": _check_model_health(check_external=True),
    }
