from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    """Order status exactly as stored in the `orders.status` column."""

    NEW = "Новый"
    IN_FEED = "В ленте"
    IN_PROGRESS = "В работе"
    COMPLETED = "Завершённая"


class Role(str, Enum):
    ADMIN = "admin"
    DISPATCHER = "dispatcher"
    WORKER = "worker"


class FieldKind(str, Enum):
    """Closed set of field kinds the form engine knows how to render and validate."""

    TEXT = "text"
    DATE = "date"
    DATETIME = "datetime"
    SELECT = "select"
    PHONE = "phone"
    MONEY = "money"
    NUMBER = "number"
    TAGS = "tags"
    BOOLEAN = "boolean"


ATTACHMENT_FIELDS = ("contract_file", "photo_before", "photo_after", "act_file")


class Order(BaseModel):
    """
    Domain model for a row of the `orders` table.

    `updated_at` is the optimistic-concurrency token: it is opaque to the
    engine and only compared for equality.
    """

    model_config = ConfigDict(use_enum_values=False)

    id: str
    title: str = ""
    comment: str = ""

    region: str = ""
    city: str = ""
    street: str = ""
    house: str = ""

    fio: str = ""
    # Normalized "+7XXXXXXXXXX" (or "" when unknown)
    phone: str = ""

    time_window_start: Optional[datetime] = None
    assigned_to: Optional[str] = None
    status: OrderStatus = OrderStatus.NEW
    urgent: bool = False

    department_id: Optional[str] = None
    price: Optional[Decimal] = None
    fuel_cost: Optional[Decimal] = None
    work_type_id: Optional[str] = None
    company_id: Optional[str] = None

    updated_at: Optional[str] = None
    created_at: Optional[str] = None

    contract_file: List[str] = Field(default_factory=list)
    photo_before: List[str] = Field(default_factory=list)
    photo_after: List[str] = Field(default_factory=list)
    act_file: List[str] = Field(default_factory=list)

    @property
    def in_feed(self) -> bool:
        return self.status == OrderStatus.IN_FEED

    def attachments(self, category: str) -> List[str]:
        return list(getattr(self, category))


class FieldDefinition(BaseModel):
    """
    One entry of the dynamic form schema.

    `kind` is always one of FieldKind; unknown kinds coming from the store
    degrade to TEXT.
    """

    key: str
    label: str = ""
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    position: int = 9999
    active: bool = True

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, v: Any) -> Any:
        if isinstance(v, FieldKind):
            return v
        raw = str(v or "").strip().lower()
        try:
            return FieldKind(raw)
        except ValueError:
            logger.warning(f"Unknown field kind {v!r}, treating as text")
            return FieldKind.TEXT


class Viewer(BaseModel):
    """The user the engine acts for."""

    user_id: str
    role: Role = Role.WORKER
    company_id: Optional[str] = None

    @property
    def owns_finance(self) -> bool:
        return self.role in (Role.ADMIN, Role.DISPATCHER)


class CompanySettings(BaseModel):
    id: Optional[str] = None
    use_work_types: bool = False
