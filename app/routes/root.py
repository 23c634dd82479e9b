"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Echo",
        "version": config.SERVICE_VERSION,
        "description": "Customer support backend: knowledge base, widget chat and AI agent",
        "agent_model": config.AGENT_MODEL,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "widget": "/widget",
            "dashboard": "/dashboard",
            "billing_webhook": "/webhooks/billing",
        },
    }
