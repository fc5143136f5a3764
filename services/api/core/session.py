"""
Order edit session: one user editing one order on one screen.

Ties the schema, snapshot, validation, state machine, submitter, attachment
store and realtime reconciler together. Every operation returns control with
the form intact; user-facing messages are collected in `notices`.

Concurrency token handling:
- clean form + remote change   -> full rehydrate, token advances
- dirty form + remote change   -> remote values for untouched fields, the
                                  user's edits stay, token does NOT advance
                                  (the next submit surfaces the conflict)
- submit conflict              -> reload latest, keep the user's edits,
                                  token advances, warning notice
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool

from core.attachments import AttachmentCategory, AttachmentStore
from core.blob_client import BlobClient
from core.cache import EngineCache, GenerationCounter
from core.errors import (
    BaseAppException,
    InvalidTransition,
    PartialAttachmentFailure,
    ValidationFailure,
    VersionConflict,
)
from core.mutations import AcceptOutcome, AcceptResult, MutationSubmitter, SubmitOutcome, SubmitResult
from core.realtime import ChangeFeed, RealtimeReconciler
from core.schema_provider import FormContext, SchemaProvider
from core.snapshot import SnapshotTracker, editable_fields, set_form_value
from core.status_machine import clear_assignee_patch, finish_patch, first_open_patch
from core.validation import Violation, format_phone_mask, validate
from models import CompanySettings, FieldDefinition, Order, OrderStatus, Viewer
from models.converters import company_from_row

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    level: str  # info / warning / error
    message: str


class OrderEditSession:
    def __init__(
        self,
        order_id: str,
        viewer: Viewer,
        storage,
        blobs: Optional[BlobClient] = None,
        cache: Optional[EngineCache] = None,
        feed: Optional[ChangeFeed] = None,
        debounce_s: float = 0.25,
    ):
        self.order_id = str(order_id)
        self.viewer = viewer
        self.storage = storage
        self.cache = cache or EngineCache.default()
        self.submitter = MutationSubmitter(storage, self.cache)
        self.attachments = AttachmentStore(blobs, self.submitter) if blobs is not None else None
        self.schema_provider = SchemaProvider(storage, viewer.company_id)
        self.feed = feed
        self.debounce_s = debounce_s

        self.schema: List[FieldDefinition] = []
        self.company = CompanySettings()
        self.tracker: Optional[SnapshotTracker] = None
        self.order: Optional[Order] = None
        self.form: Dict[str, Any] = {}
        self.expected_updated_at: Optional[str] = None
        self.attachment_urls: Dict[str, List[str]] = {}
        self.assignee_name: Optional[str] = None
        self.notices: List[Notice] = []

        self._stale = False
        self._generations = GenerationCounter()
        self._reconciler: Optional[RealtimeReconciler] = None

    # ========== lifecycle ==========

    async def open(self) -> "OrderEditSession":
        """
        Load everything the edit screen needs.

        Opening again (screen re-entry) keeps the baseline captured for this
        order; a dirty form then takes the fetched record through the same
        merge as a realtime change instead of being rehydrated.

        Raises:
            OrderNotFound / NetworkFailure / PermissionDenied: the order itself could not be loaded
        """
        self.schema = await self.schema_provider.get_schema(FormContext.EDIT)
        await self._load_company()
        reentry = self.tracker is not None and self.tracker.hydrated_for(self.order_id)
        if not reentry:
            self.tracker = SnapshotTracker(editable_fields(self.viewer, self.company))
            cached = self.cache.orders.get(self.order_id)
            if cached is not None:
                self._hydrate(cached)

        order = await self.submitter.fetch(self.order_id)
        if reentry and self.is_dirty:
            await self.apply_remote(order)
        else:
            self._hydrate(order)
        await self._apply_first_open()

        await self.refresh_attachments()
        await self.resolve_assignee_name()

        if self.feed is not None:
            await self.close()
            self._reconciler = RealtimeReconciler(
                self.feed,
                table="orders",
                company_id=self.order.company_id or self.viewer.company_id,
                refetch=lambda: self.submitter.fetch(self.order_id),
                on_result=self.apply_remote,
                debounce_s=self.debounce_s,
                record_id=self.order_id,
            )
            await self._reconciler.start()
        return self

    async def close(self) -> None:
        if self._reconciler is not None:
            await self._reconciler.close()
            self._reconciler = None

    async def _load_company(self) -> None:
        if not self.viewer.company_id:
            return
        try:
            row = await run_in_threadpool(self.storage.get_company, self.viewer.company_id)
            self.company = company_from_row(row)
        except BaseAppException as e:
            logger.warning(f"Company settings unavailable for {self.viewer.company_id}: {e.message}")

    async def _apply_first_open(self) -> None:
        patch = first_open_patch(self.order, self.viewer.user_id)
        if not patch:
            return
        result = await self.submitter.submit(self.order.id, patch, self.order.updated_at)
        if result.ok:
            self._apply_written(result.order, keep_edits=self.is_dirty)
        elif result.outcome == SubmitOutcome.CONFLICT and result.latest is not None:
            if self.is_dirty:
                await self.apply_remote(result.latest)
            else:
                self._hydrate(result.latest)
        else:
            logger.warning(f"First-open transition of order {self.order.id} failed: {result.error}")

    # ========== form state ==========

    def _hydrate(self, order: Order) -> None:
        self.order = order
        self.form = self.tracker.hydrate(order)
        self.expected_updated_at = order.updated_at
        self._stale = False

    def _merge(self, order: Order, keep: Dict[str, Any]) -> None:
        self.order = order
        self.form = self.tracker.hydrate(order)
        self.form.update(keep)

    def _edits(self) -> Dict[str, Any]:
        return {k: self.form.get(k) for k in self.tracker.touched_fields(self.form)}

    def _apply_written(self, order: Order, keep_edits: bool) -> None:
        """Adopt an order this session just wrote."""
        if not keep_edits:
            self._hydrate(order)
            return
        edits = self._edits()
        self._merge(order, edits)
        if not self._stale:
            self.expected_updated_at = order.updated_at

    @property
    def fields(self) -> tuple:
        return self.tracker.fields if self.tracker else ()

    def set_field(self, key: str, value: Any) -> None:
        if key not in self.fields:
            raise ValidationFailure(f"Field {key} is not editable", code="FIELD_NOT_EDITABLE", detail={"field": key})
        set_form_value(self.form, key, value)

    @property
    def is_dirty(self) -> bool:
        return self.tracker is not None and self.tracker.is_dirty(self.form)

    @property
    def phone_display(self) -> str:
        return format_phone_mask(self.form.get("phone"))

    def violations(self) -> List[Violation]:
        return validate(self.form, self.schema, to_feed=bool(self.form.get("to_feed")))

    def discard_changes(self) -> None:
        if self.order is not None:
            self._hydrate(self.order)

    def _notify(self, level: str, message: str) -> None:
        self.notices.append(Notice(level, message))

    # ========== writes ==========

    def _handle_write(self, result: SubmitResult, keep_edits: bool, success_message: Optional[str]) -> SubmitResult:
        if result.outcome == SubmitOutcome.SUCCESS:
            self._apply_written(result.order, keep_edits=keep_edits)
            if success_message:
                self._notify("info", success_message)
        elif result.outcome == SubmitOutcome.CONFLICT:
            edits = self._edits()
            if result.latest is not None:
                self._merge(result.latest, edits)
                self.expected_updated_at = result.latest.updated_at
                self._stale = False
            self._notify("warning", "The order was changed by someone else. Review the fields and save again.")
        else:
            self._notify("error", result.error.message if result.error else "Save failed")
        return result

    async def submit(self) -> SubmitResult:
        result = await self.submitter.save_form(
            self.form,
            self.order,
            self.schema,
            self.fields,
            expected_updated_at=self.expected_updated_at,
        )
        self._handle_write(result, keep_edits=False, success_message="Saved")
        if result.ok:
            await self.resolve_assignee_name()
        return result

    async def send_to_feed(self) -> SubmitResult:
        self.form["to_feed"] = True
        self.form["assigned_to"] = None
        return await self.submit()

    async def _status_write(self, patch: Dict[str, Any], success_message: str) -> SubmitResult:
        result = await self.submitter.submit(self.order.id, patch, self.expected_updated_at)
        return self._handle_write(result, keep_edits=True, success_message=success_message)

    async def finish(self) -> SubmitResult:
        """Complete the order; blocked locally while any attachment category is empty."""
        try:
            patch = finish_patch(self.order)
        except InvalidTransition as e:
            self._notify("error", e.message)
            return SubmitResult(SubmitOutcome.FAILURE, error=e)
        return await self._status_write(patch, "Order completed")

    async def change_status(self, target: OrderStatus) -> SubmitResult:
        """
        Explicit status change from the status menu.

        InFeed clears the assignee, Completed runs the finish guard,
        anything else must be the current status.
        """
        target = OrderStatus(target)
        try:
            if target == OrderStatus.COMPLETED:
                return await self.finish()
            if target == OrderStatus.IN_FEED:
                patch = clear_assignee_patch(self.order)
            elif target == self.order.status:
                return SubmitResult(SubmitOutcome.SUCCESS, order=self.order)
            else:
                raise InvalidTransition(
                    f"Cannot change status from {self.order.status.value} to {target.value}",
                    detail={"from": self.order.status.value, "to": target.value},
                )
        except InvalidTransition as e:
            self._notify("error", e.message)
            return SubmitResult(SubmitOutcome.FAILURE, error=e)
        result = await self._status_write(patch, "Sent to the feed")
        if result.ok:
            await self.resolve_assignee_name()
        return result

    async def accept(self) -> AcceptResult:
        result = await self.submitter.accept(self.order.id, self.viewer.user_id)
        if result.order is not None:
            self._apply_written(result.order, keep_edits=True)
        if result.outcome == AcceptOutcome.ACCEPTED:
            self._notify("info", "Order accepted")
            await self.resolve_assignee_name()
        elif result.outcome == AcceptOutcome.ALREADY_TAKEN:
            self._notify("warning", "This order has already been taken by someone else")
            await self.resolve_assignee_name()
        else:
            self._notify("error", result.error.message if result.error else "Could not accept the order")
        return result

    async def delete(self) -> bool:
        try:
            await self.submitter.delete(self.order, self.attachments)
        except BaseAppException as e:
            self._notify("error", e.message)
            return False
        await self.close()
        return True

    # ========== attachments ==========

    async def refresh_attachments(self) -> None:
        if self.attachments is None:
            return
        try:
            self.attachment_urls = await self.attachments.list(self.order_id)
        except BaseAppException as e:
            logger.warning(f"Attachment listing failed for order {self.order_id}: {e.message}")
            self._notify("warning", "Could not load attachments")

    async def upload_attachment(self, category: AttachmentCategory | str, data: bytes, content_type: str = "image/jpeg") -> Optional[str]:
        if self.attachments is None:
            raise ValidationFailure("Attachments are not configured", code="ATTACHMENTS_DISABLED")
        try:
            url, order = await self.attachments.upload(self.order, category, data, content_type)
        except PartialAttachmentFailure as e:
            self._notify("warning", e.message)
            if isinstance(e.cause, VersionConflict) and e.order is not None:
                self._apply_written(e.order, keep_edits=True)
            await self.refresh_attachments()
            return None
        except BaseAppException as e:
            self._notify("error", e.message)
            return None
        self._apply_written(order, keep_edits=True)
        await self.refresh_attachments()
        return url

    async def remove_attachment(self, category: AttachmentCategory | str, url: str) -> bool:
        if self.attachments is None:
            raise ValidationFailure("Attachments are not configured", code="ATTACHMENTS_DISABLED")
        try:
            order = await self.attachments.remove(self.order, category, url)
        except PartialAttachmentFailure as e:
            self._notify("warning", e.message)
            if e.order is not None:
                self._apply_written(e.order, keep_edits=True)
            await self.refresh_attachments()
            return True
        except VersionConflict as e:
            if e.latest is not None:
                self._apply_written(e.latest, keep_edits=True)
            self._notify("warning", "The order was changed by someone else. Try again.")
            return False
        except BaseAppException as e:
            self._notify("error", e.message)
            return False
        self._apply_written(order, keep_edits=True)
        await self.refresh_attachments()
        return True

    # ========== realtime ==========

    async def apply_remote(self, order: Optional[Order]) -> None:
        """Merge a refetched record into the session (called by the reconciler)."""
        if order is None or self.tracker is None:
            return
        if order.updated_at == self.order.updated_at:
            return
        if self.is_dirty or self.submitter.busy:
            self._merge(order, self._edits())
            self._stale = self.expected_updated_at != order.updated_at
            self._notify("warning", "The order was updated by someone else while you were editing")
        else:
            self._hydrate(order)
        await self.refresh_attachments()
        await self.resolve_assignee_name()

    async def wait_idle(self) -> None:
        if self._reconciler is not None:
            await self._reconciler.wait_idle()

    # ========== lookups ==========

    async def resolve_assignee_name(self) -> Optional[str]:
        """
        Display name of the current assignee.

        Each call takes a new generation; a response that arrives after a
        newer call started is dropped.
        """
        gen = self._generations.next("assignee_name")
        user_id = self.form.get("assigned_to")
        name: Optional[str] = None
        if user_id:
            name = self.cache.names.get(user_id)
            if name is None:
                try:
                    name = await run_in_threadpool(self.storage.get_user_display_name, user_id)
                except BaseAppException as e:
                    logger.warning(f"Display name lookup failed for {user_id}: {e.message}")
                if name:
                    self.cache.names.put(user_id, name)
        if not self._generations.is_current(gen):
            logger.debug(f"Dropping stale display name for {user_id}")
            return name
        self.assignee_name = name
        return name
