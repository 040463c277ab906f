"""
Custom exception classes and error handling.

Two families live here:
- APIException and subclasses: HTTP-facing errors with a stable error_code.
- PlanSyncError and subclasses: plan synchronization engine errors, classified
  as retryable (transient) or permanent so queues know whether to try again.
"""
from datetime import datetime
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
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
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """Plan was modified by someone else since the client last fetched it."""

    def __init__(self, detail: str, server_updated_at: Optional[datetime] = None):
        payload: Dict[str, Any] = {"message": detail}
        if server_updated_at is not None:
            payload["server_updated_at"] = server_updated_at.isoformat()
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=payload,
            error_code="CONFLICT"
        )


class ServiceUnavailableError(APIException):
    """Canonical store temporarily unavailable; client should retry."""

    def __init__(self, detail: str = "Service temporarily unavailable"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="UNAVAILABLE",
            headers={"Retry-After": "2"},
        )


# ---------------------------------------------------------------------------
# Plan synchronization engine errors
# ---------------------------------------------------------------------------

class PlanSyncError(Exception):
    """Base class for plan synchronization failures."""

    retryable = False

    def __init__(self, message: str, code: str = "plan_sync_error"):
        super().__init__(message)
        self.code = code


class InvalidDiffError(PlanSyncError):
    """Malformed diff or reference to a parent that does not exist. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, code="invalid_diff")


class PlanNotFoundError(PlanSyncError):
    """Diff targets a plan that does not exist and carries nothing to create it from."""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id}", code="plan_not_found")
        self.plan_id = plan_id


class PlanConflictError(PlanSyncError):
    """Optimistic timestamp mismatch; the user decides how to resolve it."""

    def __init__(
        self,
        plan_id: str,
        server_updated_at: Optional[datetime],
        client_updated_at: Optional[datetime] = None,
    ):
        super().__init__(
            f"Plan {plan_id} has been modified since last fetch",
            code="conflict",
        )
        self.plan_id = plan_id
        self.server_updated_at = server_updated_at
        self.client_updated_at = client_updated_at


class TransientSyncError(PlanSyncError):
    """Storage or transport failure expected to clear up on its own."""

    retryable = True

    def __init__(self, message: str, code: str = "transient"):
        super().__init__(message, code=code)


class DependencyNotReadyError(TransientSyncError):
    """A child mutation arrived before its parent plan exists."""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id} (dependency not ready)", code="dependency_not_ready")
        self.plan_id = plan_id


class OperationSendError(PlanSyncError):
    """A queued client operation was rejected by the apply boundary."""

    def __init__(self, message: str, code: str = "operation_failed", retryable: bool = False):
        super().__init__(message, code=code)
        self.retryable = retryable
