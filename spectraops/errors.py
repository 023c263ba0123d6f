"""Error taxonomy shared by the API, the services and the SDK."""

from typing import Any, Dict, List, Optional


class SpectraOpsError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "error", "message": self.message}


class ValidationError(SpectraOpsError):
    """Malformed or missing fields."""

    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(SpectraOpsError):
    """
    Missing or invalid credential.

    A missing credential maps to 401, a presented but unknown one to 403.
    """

    status_code = 401
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class AuthorizationScopeError(SpectraOpsError):
    """Authenticated, but no project context could be resolved."""

    status_code = 403
    default_message = "Project scope required"


class NotFoundError(SpectraOpsError):
    """Target missing or not owned by the caller."""

    status_code = 404
    default_message = "Not found"


class ConflictError(SpectraOpsError):
    status_code = 409
    default_message = "Already exists"


class RateLimitExceeded(SpectraOpsError):
    """Too many requests from one client address within the window."""

    status_code = 429
    default_message = "Too many requests"

    def __init__(self, reset_at: float, message: Optional[str] = None):
        super().__init__(message)
        self.reset_at = reset_at


class StorageError(SpectraOpsError):
    """Query or transaction failure. The caller only sees a generic message."""

    status_code = 500
    default_message = "Storage failure"


class TransportError(SpectraOpsError):
    """SDK-side network or response failure. Never raised into host code."""

    default_message = "Failed to deliver errors"

    def __init__(self, message: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
