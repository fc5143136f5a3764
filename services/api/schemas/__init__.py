"""
Pydantic schemas for API request/response validation.
"""
from typing import Optional

from pydantic import BaseModel

from .order import (
    AcceptOut,
    AttachmentsOut,
    ConflictOut,
    OrderOut,
    OrderPatchRequest,
    SchemaOut,
    StatusChangeRequest,
    UploadOut,
    ViolationOut,
)


# ============ Health Check ============


class HealthCheck(BaseModel):
    """Health check response."""
    ok: bool = True
    backend: Optional[str] = None


# Re-export all
__all__ = [
    "AcceptOut",
    "AttachmentsOut",
    "ConflictOut",
    "OrderOut",
    "OrderPatchRequest",
    "SchemaOut",
    "StatusChangeRequest",
    "UploadOut",
    "ViolationOut",
    "HealthCheck",
]
