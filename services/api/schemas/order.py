"""
Pydantic schemas for order endpoints.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from models import FieldDefinition, Order, OrderStatus


class OrderOut(Order):
    """Order as returned to clients, with display helpers."""
    phone_display: str = Field("", description="Phone formatted as +7 (XXX) XXX-XX-XX")
    assignee_name: Optional[str] = Field(None, description="Executor display name, if resolved")


class OrderPatchRequest(BaseModel):
    """
    Partial edit of an order.

    `values` holds form values keyed by field; only fields the caller owns
    are accepted. `expected_updated_at` is the token the client loaded.
    """
    values: Dict[str, Any] = Field(default_factory=dict, description="Field values to write")
    expected_updated_at: Optional[str] = Field(None, description="Concurrency token from the last read")
    to_feed: Optional[bool] = Field(None, description="Send the order to the feed (clears the assignee)")

    @field_validator("values")
    @classmethod
    def validate_keys(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for key in v:
            if not key or not str(key).strip():
                raise ValueError("Empty field key")
        return v


class StatusChangeRequest(BaseModel):
    status: OrderStatus
    expected_updated_at: Optional[str] = None


class ConflictOut(BaseModel):
    """409 body: the caller's token is stale; `latest` is the current record."""
    type: str = "conflict"
    code: str = "VERSION_CONFLICT"
    message: str
    latest: Optional[OrderOut] = None


class ViolationOut(BaseModel):
    field: str
    code: str
    message: str


class AcceptOut(BaseModel):
    outcome: str
    order: Optional[OrderOut] = None


class SchemaOut(BaseModel):
    context: str
    fields: List[FieldDefinition]


class AttachmentsOut(BaseModel):
    order_id: str
    attachments: Dict[str, List[str]]


class UploadOut(BaseModel):
    url: str
    order: OrderOut
