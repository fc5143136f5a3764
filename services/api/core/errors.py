"""
Unified error hierarchy for the order engine.

Every engine failure derives from BaseAppException and carries:
- type:        error class identifier (validation_error / conflict / network / ...)
- code:        machine-readable code (REQUIRED_FIELDS_MISSING / VERSION_CONFLICT / ...)
- message:     human readable text shown to the user
- detail:      optional extra payload (dict / list / None)
- http_status: status code used by the HTTP layer

Engine code raises; the exception handler in main.py formats the response.
None of these are fatal for a session: the form always stays intact.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class BaseAppException(Exception):
    """Base class for every engine error."""

    type = "error"
    code = "UNKNOWN_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None, detail: Any = None, http_status: Optional[int] = None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationFailure(BaseAppException):
    """Local input problem. Blocks submit and never reaches the network."""

    type = "validation_error"
    code = "VALIDATION_ERROR"
    http_status = 422

    def __init__(self, message: str, violations: Optional[List[Any]] = None, **kwargs):
        self.violations = list(violations or [])
        if "detail" not in kwargs and self.violations:
            kwargs["detail"] = [
                {"field": v.field, "code": v.code, "message": v.message} for v in self.violations
            ]
        super().__init__(message, **kwargs)


class InvalidTransition(ValidationFailure):
    """Status/assignment event not allowed from the current status."""

    code = "INVALID_TRANSITION"
    http_status = 400


class VersionConflict(BaseAppException):
    """
    The record changed since it was loaded.

    `latest` holds the authoritative record when the store could return it.
    Recoverable by refetching.
    """

    type = "conflict"
    code = "VERSION_CONFLICT"
    http_status = 409

    def __init__(self, message: str = "Order was changed by someone else", latest: Any = None, **kwargs):
        self.latest = latest
        super().__init__(message, **kwargs)


class NetworkFailure(BaseAppException):
    """Transient transport or server failure. The user may retry."""

    type = "network"
    code = "NETWORK_ERROR"
    http_status = 503


class PermissionDenied(BaseAppException):
    """Authorization rejected by the store. Surfaced, never retried."""

    type = "permission"
    code = "PERMISSION_DENIED"
    http_status = 403


class OrderNotFound(BaseAppException):
    type = "not_found"
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: Any, **kwargs):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found", **kwargs)


class SubmitInProgress(BaseAppException):
    """A second submit arrived while the first one is still in flight."""

    type = "busy"
    code = "SUBMIT_IN_PROGRESS"
    http_status = 409

    def __init__(self, message: str = "Save already in progress", **kwargs):
        super().__init__(message, **kwargs)


class PartialAttachmentFailure(BaseAppException):
    """
    Storage and the order row disagree after an attachment operation.

    stage:
        "db"   - blob written, order patch failed (orphan blob)
        "blob" - order patched, blob removal failed (dangling blob)
    """

    type = "partial_attachment"
    code = "PARTIAL_ATTACHMENT_FAILURE"
    http_status = 207

    def __init__(self, message: str, stage: str, path: Optional[str] = None, cause: Optional[BaseException] = None, order: Any = None, **kwargs):
        self.stage = stage
        self.path = path
        self.cause = cause
        # Order as it stands after the half-finished operation (None when unchanged)
        self.order = order
        kwargs.setdefault("detail", {"stage": stage, "path": path})
        super().__init__(message, **kwargs)
