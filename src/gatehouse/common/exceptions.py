"""Gatehouse exception hierarchy.

Every error carries the HTTP status it surfaces as; the app-level handler
turns it into the ``{"error", "message"?, "details"?, "retryAfter"?}``
envelope.
"""

from typing import Any, Optional


class GatehouseError(Exception):
    """Base exception for all Gatehouse errors."""

    status_code = 500

    def __init__(
        self,
        message: str = "",
        code: str = "GATEHOUSE_ERROR",
        detail: Optional[str] = None,
        details: Optional[list[Any]] = None,
    ):
        self.message = message
        self.code = code
        self.detail = detail
        self.details = details
        super().__init__(message)

    def to_envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.detail:
            body["message"] = self.detail
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(GatehouseError):
    """Raised when request data fails field-level validation."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[list[Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class InvalidTenantError(GatehouseError):
    """Raised when the resolved tenant does not exist or is not active."""

    status_code = 400

    def __init__(self, detail: str = "Tenant not found"):
        super().__init__("Invalid tenant", code="INVALID_TENANT", detail=detail)


class InvalidChallengeError(GatehouseError):
    """Raised when a wallet challenge is unknown, already used, or expired."""

    status_code = 400

    def __init__(self, message: str = "Invalid or expired challenge", reason: str = "not_found"):
        self.reason = reason
        super().__init__(message, code="INVALID_CHALLENGE")


class Unauthorized(GatehouseError):
    """Missing or invalid credentials."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", code: str = "UNAUTHORIZED"):
        super().__init__(message, code=code)


class InvalidCredentials(Unauthorized):
    """Login failure. The message is identical for unknown user and bad password."""

    def __init__(self):
        super().__init__("Invalid email or password", code="INVALID_CREDENTIALS")


class InvalidSignatureError(Unauthorized):
    """Raised when a wallet signature does not recover to the claimed address."""

    def __init__(self):
        super().__init__("Invalid signature", code="INVALID_SIGNATURE")


class InvalidTokenError(Unauthorized):
    """Raised when a bearer token is malformed, forged, expired or revoked."""

    def __init__(self, message: str = "Invalid or expired token", reason: str = ""):
        self.reason = reason
        super().__init__(message, code="INVALID_TOKEN")


class SessionInvalidError(Unauthorized):
    """Raised when the server-side session is gone or belongs to another login."""

    def __init__(self, message: str = "Session expired"):
        super().__init__(message, code="INVALID_SESSION")


class Forbidden(GatehouseError):
    """Valid credentials, but not for this tenant or resource."""

    status_code = 403

    def __init__(self, message: str = "Tenant access denied"):
        super().__init__(message, code="FORBIDDEN")


class NotFound(GatehouseError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND")


class Conflict(GatehouseError):
    """Raised on a uniqueness violation within a tenant."""

    status_code = 409

    def __init__(self, message: str = "User already exists with this email or wallet address"):
        super().__init__(message, code="CONFLICT")


class RateLimited(GatehouseError):
    status_code = 429

    def __init__(self, retry_after: int, limit: int, message: str = "Too many requests from this IP"):
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(message, code="RATE_LIMITED")

    def to_envelope(self) -> dict[str, Any]:
        body = super().to_envelope()
        body["retryAfter"] = self.retry_after
        return body


class ServiceError(GatehouseError):
    """Downstream store failure. The envelope never includes internals."""

    status_code = 500

    def __init__(self, message: str = "Service error", operation: str = ""):
        self.operation = operation
        super().__init__(message, code="SERVICE_ERROR")
