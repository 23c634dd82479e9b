"""
Shared helpers and configuration for support services.
"""

from __future__ import annotations

import time
from functools import wraps
from typing import Callable

import core.config as config
from core.errors import ServiceError, ValidationIssue
from core.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_email as _validate_email,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_QUERY_LENGTH = config.MAX_QUERY_LENGTH
MAX_MESSAGE_LENGTH = config.MAX_MESSAGE_LENGTH
MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH
MAX_FILENAME_LENGTH = config.MAX_FILENAME_LENGTH
MAX_GREETING_LENGTH = config.MAX_GREETING_LENGTH
SEARCH_RESULT_LIMIT = config.SEARCH_RESULT_LIMIT

__all__ = [
    "logger",
    "now_ms",
    "agent_tool",
    "_vector_search_enabled",
    "_validate_required_text",
    "_validate_optional_text",
    "_validate_limit",
    "_validate_email",
]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _vector_search_enabled() -> bool:
    return config.DB_BACKEND_EFFECTIVE == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"


# =============================================================================
# Agent tool error handling
# =============================================================================

def _log_tool_issue(tool_name: str, exc: Exception, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": getattr(exc, "field", None),
        "error_type": getattr(exc, "error_type", None) or getattr(exc, "code", None),
        "detail": str(exc),
    }
    if warn:
        logger.warning("agent_tool_error", extra=payload)
    else:
        logger.info("agent_tool_error", extra=payload)


def agent_tool(fn: Callable[..., str]) -> Callable[..., str]:
    """Tools run inside the model loop, so expected failures come back as text."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_tool_issue(fn.__name__, exc, warn=False)
            return f"Invalid {exc.field}: {exc}"
        except ServiceError as exc:
            _log_tool_issue(fn.__name__, exc, warn=True)
            return exc.message
    return wrapper
