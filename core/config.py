"""
Shared configuration for Echo core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("echo")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "none"} else "none"
    if db_effective == "sqlite":
        vector_effective = "none"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/echo.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Model provider settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
MODEL_PROVIDER = os.environ.get("MODEL_PROVIDER", "openai").strip().lower()
AGENT_MODEL = os.environ.get("ECHO_AGENT_MODEL", "gpt-4o-mini")
EXTRACTION_MODEL = os.environ.get("ECHO_EXTRACTION_MODEL", "gpt-4o-mini")
SEARCH_MODEL = os.environ.get("ECHO_SEARCH_MODEL", "gpt-4o-mini")
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIM = 1536

# Model provider retry/backoff
MODEL_TIMEOUT_SECONDS = _get_float("MODEL_TIMEOUT_SECONDS", 60.0)
MODEL_RETRY_MAX = _get_int("MODEL_RETRY_MAX", 2)
MODEL_RETRY_BACKOFF_SECONDS = _get_float("MODEL_RETRY_BACKOFF_SECONDS", 0.5)
MODEL_RETRY_JITTER_SECONDS = _get_float("MODEL_RETRY_JITTER_SECONDS", 0.25)
MODEL_FAILURE_THRESHOLD = _get_int("MODEL_FAILURE_THRESHOLD", 5)
MODEL_COOLDOWN_SECONDS = _get_int("MODEL_COOLDOWN_SECONDS", 60)
EMBEDDING_BACKFILL_ENABLED = _get_bool("EMBEDDING_BACKFILL_ENABLED", True)
EMBEDDING_BACKFILL_INTERVAL_SECONDS = _get_int("EMBEDDING_BACKFILL_INTERVAL_SECONDS", 300)
EMBEDDING_BACKFILL_BATCH_LIMIT = _get_int("EMBEDDING_BACKFILL_BATCH_LIMIT", 50)

# Contact sessions (milliseconds)
SESSION_DURATION_MS = _get_int("ECHO_SESSION_DURATION_MS", 24 * 60 * 60 * 1000)
AUTO_REFRESH_THRESHOLD_MS = _get_int("ECHO_AUTO_REFRESH_THRESHOLD_MS", 4 * 60 * 60 * 1000)

# Agent and knowledge search
AGENT_MAX_STEPS = _get_int("ECHO_AGENT_MAX_STEPS", 6)
SEARCH_RESULT_LIMIT = _get_int("ECHO_SEARCH_RESULT_LIMIT", 5)
CHUNK_MAX_CHARS = _get_int("ECHO_CHUNK_MAX_CHARS", 2000)
DEFAULT_GREETING = os.environ.get("ECHO_DEFAULT_GREETING", "Hello, how can I help you today?")

# Raw blob storage
STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "local").strip().lower()
LOCAL_STORAGE_PATH = os.environ.get("LOCAL_STORAGE_PATH", "/data/blobs")
LOCAL_STORAGE_URL_PREFIX = os.environ.get("LOCAL_STORAGE_URL_PREFIX", "/blobs")
S3_BUCKET = os.environ.get("S3_BUCKET", "echo-files")
S3_ENDPOINT_URL = os.environ.get("S3_ENDPOINT_URL") or None
SIGNED_URL_EXPIRY_SECONDS = _get_int("SIGNED_URL_EXPIRY_SECONDS", 3600)
MAX_UPLOAD_BYTES = _get_int("ECHO_MAX_UPLOAD_BYTES", 25 * 1024 * 1024)

# AWS (Secrets Manager, S3)
AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")
SECRETS_PREFIX = os.environ.get("ECHO_SECRETS_PREFIX", "tenant")

# Identity provider
IDENTITY_JWKS_URL = os.environ.get("IDENTITY_JWKS_URL")
IDENTITY_ISSUER = os.environ.get("IDENTITY_ISSUER")
IDENTITY_JWT_SECRET = os.environ.get("IDENTITY_JWT_SECRET")
IDENTITY_API_URL = os.environ.get("IDENTITY_API_URL", "https://api.clerk.com").rstrip("/")
IDENTITY_SECRET_KEY = os.environ.get("CLERK_SECRET_KEY")

# Billing webhook
BILLING_WEBHOOK_SECRET = os.environ.get("CLERK_WEBHOOK_SECRET")
WEBHOOK_TOLERANCE_SECONDS = _get_int("WEBHOOK_TOLERANCE_SECONDS", 300)

# Voice provider
VAPI_BASE_URL = os.environ.get("VAPI_BASE_URL", "https://api.vapi.ai").rstrip("/")

# Background tasks
TASK_WORKER_ENABLED = _get_bool("TASK_WORKER_ENABLED", True)
TASK_WORKER_INTERVAL_SECONDS = _get_float("TASK_WORKER_INTERVAL_SECONDS", 2.0)
TASK_WORKER_BATCH_LIMIT = _get_int("TASK_WORKER_BATCH_LIMIT", 10)
TASK_MAX_ATTEMPTS = _get_int("TASK_MAX_ATTEMPTS", 3)

# HTTP surface
SERVICE_VERSION = "0.1.0"
INSTANCE_ID = os.environ.get("ECHO_INSTANCE_ID", "echo-1")
CORS_ALLOWED_ORIGINS = os.environ.get("CORS_ALLOWED_ORIGINS", "")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")
WIDGET_URL = os.environ.get("WIDGET_URL", "http://localhost:3001")
TRUSTED_HOSTS = os.environ.get("TRUSTED_HOSTS", "")

# Request/input limits
MAX_RESULT_LIMIT = _get_int("ECHO_MAX_RESULT_LIMIT", 100)
MAX_QUERY_LENGTH = _get_int("ECHO_MAX_QUERY_LENGTH", 4000)
MAX_MESSAGE_LENGTH = _get_int("ECHO_MAX_MESSAGE_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("ECHO_MAX_SHORT_TEXT_LENGTH", 255)
MAX_FILENAME_LENGTH = _get_int("ECHO_MAX_FILENAME_LENGTH", 500)
MAX_GREETING_LENGTH = _get_int("ECHO_MAX_GREETING_LENGTH", 1000)
MAX_METADATA_BYTES = _get_int("ECHO_MAX_METADATA_BYTES", 20000)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("ECHO_MAX_EMBEDDING_TEXT_LENGTH", 8000)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if MODEL_PROVIDER not in {"openai", "none"}:
        errors.append("MODEL_PROVIDER must be 'openai' or 'none'")
    if MODEL_PROVIDER == "openai" and not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; model calls will fail")

    if VECTOR_BACKEND_EFFECTIVE == "pgvector" and MODEL_PROVIDER == "none":
        errors.append("VECTOR_BACKEND=pgvector requires MODEL_PROVIDER to be set")

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from core.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if STORAGE_BACKEND not in {"local", "s3"}:
        errors.append("STORAGE_BACKEND must be 'local' or 's3'")

    if AUTO_REFRESH_THRESHOLD_MS >= SESSION_DURATION_MS:
        errors.append("ECHO_AUTO_REFRESH_THRESHOLD_MS must be below ECHO_SESSION_DURATION_MS")

    if not IDENTITY_JWKS_URL and not IDENTITY_JWT_SECRET:
        logger.warning("No identity verification key configured; dashboard routes will reject requests")

    if not BILLING_WEBHOOK_SECRET:
        logger.warning("CLERK_WEBHOOK_SECRET is not set; billing webhooks will be rejected")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
