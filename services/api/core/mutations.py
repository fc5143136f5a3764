"""
Mutation submitter: the only path by which the engine writes an order.

Every write carries the `updated_at` token the caller loaded. A stale token
comes back as a CONFLICT result with the authoritative record attached;
nothing is ever retried automatically.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from fastapi.concurrency import run_in_threadpool

from adapters.base import StorageAdapter
from core.cache import EngineCache
from core.errors import (
    BaseAppException,
    InvalidTransition,
    OrderNotFound,
    SubmitInProgress,
    ValidationFailure,
    VersionConflict,
)
from core.snapshot import FINANCE_FIELDS
from core.status_machine import resolve_status
from core.validation import Violation, parse_datetime, parse_money, summarize, to_e164, validate
from models import FieldDefinition, Order, OrderStatus
from models.converters import order_from_row

logger = logging.getLogger(__name__)

_ID_FIELDS = {"assigned_to", "department_id", "work_type_id"}


class SubmitOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    FAILURE = "failure"


class AcceptOutcome(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_TAKEN = "already_taken"
    FAILURE = "failure"


@dataclass
class SubmitResult:
    outcome: SubmitOutcome
    order: Optional[Order] = None
    latest: Optional[Order] = None
    error: Optional[BaseAppException] = None
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == SubmitOutcome.SUCCESS


@dataclass
class AcceptResult:
    outcome: AcceptOutcome
    order: Optional[Order] = None
    error: Optional[BaseAppException] = None


def build_patch(form: Mapping[str, Any], current: Order, fields: Iterable[str]) -> Dict[str, Any]:
    """
    Translate form values into a store patch.

    Rules:
    - only owned `fields` are written (`to_feed` is a form flag, never a column)
    - phone -> '+7XXXXXXXXXX' ('' when empty)
    - schedule -> aware UTC datetime, money -> Decimal(0.01)
    - sending to the feed clears the assignee
    - status is derived from the assignee through the state machine

    Raises:
        ValidationFailure: value cannot be converted (or the status change is illegal)
    """
    fields = tuple(fields)
    patch: Dict[str, Any] = {}
    for key in fields:
        if key == "to_feed":
            continue
        value = form.get(key)
        try:
            if key == "phone":
                patch[key] = to_e164(value) or ""
            elif key == "time_window_start":
                patch[key] = parse_datetime(value)
            elif key in FINANCE_FIELDS:
                patch[key] = parse_money(value)
            elif key in _ID_FIELDS:
                patch[key] = str(value) if value not in (None, "") else None
            elif key == "urgent":
                patch[key] = bool(value)
            else:
                patch[key] = "" if value is None else str(value)
        except (TypeError, ValueError, OverflowError) as e:
            raise ValidationFailure(f"Invalid value for {key}", code="INVALID_VALUE", detail={"field": key}) from e

    to_feed = bool(form.get("to_feed"))
    assignee = None if to_feed else patch.get("assigned_to", current.assigned_to)
    if "assigned_to" in patch or to_feed:
        patch["assigned_to"] = assignee

    if to_feed:
        requested = OrderStatus.IN_FEED
    elif current.status == OrderStatus.IN_FEED:
        requested = OrderStatus.IN_PROGRESS
    else:
        requested = current.status
    patch["status"] = resolve_status(current.status, assignee, requested)
    return patch


class MutationSubmitter:
    """
    Serializes writes for one edit session.

    A busy flag rejects a second submit while the first one is in flight;
    the rejected call never reaches the store.
    """

    def __init__(self, storage: StorageAdapter, cache: Optional[EngineCache] = None):
        self.storage = storage
        self.cache = cache or EngineCache.default()
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def fetch(self, order_id: str) -> Order:
        """
        Authoritative read; refreshes the cache.

        Raises:
            OrderNotFound, NetworkFailure, PermissionDenied
        """
        row = await run_in_threadpool(self.storage.get_order, order_id)
        if row is None:
            self.cache.orders.invalidate(order_id)
            raise OrderNotFound(order_id)
        order = order_from_row(row)
        self.cache.orders.put(order)
        return order

    async def submit(self, order_id: str, patch: Dict[str, Any], expected_updated_at: Optional[str]) -> SubmitResult:
        if self._busy:
            logger.info(f"Submit for order {order_id} rejected: another save is in flight")
            return SubmitResult(SubmitOutcome.FAILURE, error=SubmitInProgress())

        self._busy = True
        try:
            row = await run_in_threadpool(self.storage.update_order_if_version, order_id, patch, expected_updated_at)
            order = order_from_row(row)
            self.cache.orders.put(order)
            logger.info(f"Order {order_id} saved, token {expected_updated_at} -> {order.updated_at}")
            return SubmitResult(SubmitOutcome.SUCCESS, order=order)

        except VersionConflict as e:
            latest = order_from_row(e.latest) if isinstance(e.latest, dict) else e.latest
            if latest is None:
                try:
                    latest = await self.fetch(order_id)
                except BaseAppException as fetch_error:
                    logger.warning(f"Could not reload order {order_id} after conflict: {fetch_error}")
            else:
                self.cache.orders.put(latest)
            e.latest = latest
            return SubmitResult(SubmitOutcome.CONFLICT, latest=latest, error=e)

        except BaseAppException as e:
            logger.warning(f"Save of order {order_id} failed: {e.code}: {e.message}")
            return SubmitResult(SubmitOutcome.FAILURE, error=e)

        except ValueError as e:
            logger.warning(f"Save of order {order_id} rejected as malformed: {e}")
            return SubmitResult(SubmitOutcome.FAILURE, error=ValidationFailure(str(e), code="MALFORMED_PATCH"))

        finally:
            self._busy = False

    async def save_form(
        self,
        form: Mapping[str, Any],
        current: Order,
        schema: List[FieldDefinition],
        fields: Iterable[str],
        expected_updated_at: Optional[str] = None,
        confirmations: Optional[Mapping[str, str]] = None,
    ) -> SubmitResult:
        """
        Validate, build the patch and submit it.

        The token defaults to `current.updated_at`; sessions holding an
        older token (remote changes merged into a dirty form) pass it explicitly.
        Validation failures return FAILURE without touching the store.
        """
        if self._busy:
            return SubmitResult(SubmitOutcome.FAILURE, error=SubmitInProgress())

        violations = validate(form, schema, to_feed=bool(form.get("to_feed")), confirmations=confirmations)
        if violations:
            return SubmitResult(
                SubmitOutcome.FAILURE,
                error=ValidationFailure(summarize(violations), violations=violations),
                violations=violations,
            )
        try:
            patch = build_patch(form, current, fields)
        except ValidationFailure as e:
            return SubmitResult(SubmitOutcome.FAILURE, error=e)
        token = expected_updated_at if expected_updated_at is not None else current.updated_at
        return await self.submit(current.id, patch, token)

    async def accept(self, order_id: str, user_id: str) -> AcceptResult:
        """Take an order from the feed. Exactly one of concurrent callers wins."""
        try:
            accepted = await run_in_threadpool(self.storage.accept_order, order_id, user_id)
        except BaseAppException as e:
            logger.warning(f"Accept of order {order_id} failed: {e.code}: {e.message}")
            return AcceptResult(AcceptOutcome.FAILURE, error=e)

        try:
            order = await self.fetch(order_id)
        except BaseAppException as e:
            if accepted:
                logger.warning(f"Order {order_id} accepted but reload failed: {e.message}")
            order = None
        if not accepted and order is not None and order.status == OrderStatus.COMPLETED:
            error = InvalidTransition("A completed order cannot be accepted", detail={"from": order.status.value, "event": "accept"})
            return AcceptResult(AcceptOutcome.FAILURE, order=order, error=error)
        return AcceptResult(AcceptOutcome.ACCEPTED if accepted else AcceptOutcome.ALREADY_TAKEN, order=order)

    async def delete(self, order: Order, attachments=None) -> None:
        """
        Purge the order's attachments (when a store is given), then delete the row.

        Raises:
            OrderNotFound, NetworkFailure, PermissionDenied
        """
        if attachments is not None:
            await attachments.purge(order)
        await run_in_threadpool(self.storage.delete_order, order.id)
        self.cache.orders.invalidate(order.id)
        logger.info(f"Order {order.id} deleted")
