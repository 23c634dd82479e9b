"""
Middleware configuration for the FastAPI app.
"""

from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

import core.config as config


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def configure_middleware(app) -> None:
    """Configure host allowlist and CORS for the dashboard and widget origins."""
    trusted_hosts = _split_csv(config.TRUSTED_HOSTS)
    if trusted_hosts:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=trusted_hosts,
        )

    allow_origins = _split_csv(config.CORS_ALLOWED_ORIGINS)
    if not allow_origins:
        allow_origins = [
            config.FRONTEND_URL,
            config.WIDGET_URL,
            "http://localhost:3000",
            "http://localhost:3001",
        ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
