"""
Custom exception classes and error handling.

Two families live here:
- `APIException` subclasses: HTTP-facing errors with a consistent body.
- Ingestion errors: raised by services, mapped to HTTP by the routers.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Missing or malformed request parameters."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )


class ServiceUnavailableError(APIException):
    """A dependency is not configured or not reachable."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE"
        )


class BadGatewayError(APIException):
    """An upstream provider call failed."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
            error_code="UPSTREAM_ERROR"
        )


# --- Ingestion errors (service layer) ---


class IngestionError(Exception):
    """Base class for health-data ingestion failures."""


class WebhookAuthenticationError(IngestionError):
    """Signature missing or mismatched while a webhook secret is configured."""


class PayloadValidationError(IngestionError):
    """Webhook body has the wrong shape. Acknowledged, never retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UpstreamError(IngestionError):
    """Call to the aggregation provider failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderNotConfiguredError(UpstreamError):
    """Developer id / API key pair is missing."""


class PersistenceError(IngestionError):
    """Store write failed. The sender is expected to retry the whole webhook."""


class ConnectionNotFoundError(IngestionError):
    """No connection record exists for the (user, provider) pair."""

    def __init__(self, user_id: str, provider: str):
        super().__init__(f"No {provider} connection for user {user_id}")
        self.user_id = user_id
        self.provider = provider
