"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class ServiceError(Exception):
    """Base class for errors surfaced verbatim to dashboard and widget callers."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, data: dict | None = None):
        super().__init__(message)
        self.message = message
        self.data = data


class Unauthorized(ServiceError):
    code = "UNAUTHORIZED"


class NotFound(ServiceError):
    code = "NOT_FOUND"


class BadRequest(ServiceError):
    code = "BAD_REQUEST"


class UnsupportedType(ServiceError):
    code = "UNSUPPORTED_TYPE"


class ExtractionFailed(ServiceError):
    code = "EXTRACTION_FAILED"


class AgentError(ServiceError):
    code = "AGENT_ERROR"


class ConfigurationError(ServiceError):
    code = "CONFIGURATION_ERROR"


class ModelProviderError(RuntimeError):
    """Raised when the model provider is unavailable."""
