# services/api/routers/orders.py
from __future__ import annotations

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from core.attachments import AttachmentStore
from core.cache import EngineCache
from core.errors import BaseAppException, InvalidTransition
from core.mutations import AcceptOutcome, MutationSubmitter, SubmitOutcome, SubmitResult
from core.schema_provider import FormContext, SchemaProvider
from core.snapshot import editable_fields, form_from_order, set_form_value
from core.status_machine import clear_assignee_patch, finish_patch
from core.validation import format_phone_mask
from models import CompanySettings, Order, OrderStatus, Role, Viewer
from models.converters import company_from_row
from schemas import AcceptOut, ConflictOut, OrderOut, OrderPatchRequest, StatusChangeRequest

logger = logging.getLogger(__name__)


# ---- DI from main.py ----
def get_storage():
    from main import get_storage_adapter
    return get_storage_adapter()


def get_cache() -> EngineCache:
    from main import get_engine_cache
    return get_engine_cache()


def get_blobs():
    from main import get_blob_client
    return get_blob_client()


def get_viewer(
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
    x_company_id: Annotated[Optional[str], Header()] = None,
) -> Viewer:
    """
    Caller identity from request headers.

    Authentication happens upstream (gateway / Supabase JWT); this service
    only needs who is acting and in which role.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    try:
        role = Role((x_user_role or Role.WORKER.value).strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role {x_user_role!r}")
    if not x_company_id:
        from settings import get_settings
        x_company_id = get_settings().default_company_id
    return Viewer(user_id=x_user_id, role=role, company_id=x_company_id)


Storage = Annotated[object, Depends(get_storage)]
Cache = Annotated[EngineCache, Depends(get_cache)]
CurrentViewer = Annotated[Viewer, Depends(get_viewer)]

router = APIRouter(prefix="/orders", tags=["orders"])


# ---------- Helpers ----------

def order_out(order: Order, cache: Optional[EngineCache] = None) -> OrderOut:
    name = cache.names.get(order.assigned_to) if (cache and order.assigned_to) else None
    return OrderOut(
        **order.model_dump(),
        phone_display=format_phone_mask(order.phone),
        assignee_name=name,
    )


async def resolve_name(storage, cache: EngineCache, user_id: Optional[str]) -> None:
    if not user_id or cache.names.get(user_id):
        return
    try:
        name = await run_in_threadpool(storage.get_user_display_name, user_id)
    except BaseAppException as e:
        logger.warning(f"Display name lookup failed for {user_id}: {e.message}")
        return
    if name:
        cache.names.put(user_id, name)


async def load_company(storage, viewer: Viewer) -> CompanySettings:
    if not viewer.company_id:
        return CompanySettings()
    try:
        return company_from_row(await run_in_threadpool(storage.get_company, viewer.company_id))
    except BaseAppException as e:
        logger.warning(f"Company settings unavailable for {viewer.company_id}: {e.message}")
        return CompanySettings()


def write_response(result: SubmitResult, cache: EngineCache):
    """Map a submit result to the HTTP response (409 carries the latest record)."""
    if result.outcome == SubmitOutcome.SUCCESS:
        return order_out(result.order, cache)
    if result.outcome == SubmitOutcome.CONFLICT:
        body = ConflictOut(
            message=result.error.message if result.error else "Order was changed by someone else",
            latest=order_out(result.latest, cache) if result.latest else None,
        )
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=jsonable_encoder(body))
    raise result.error


# ---------- Endpoints ----------

@router.get("/{order_id}", response_model=OrderOut)
async def get_order(order_id: str, storage: Storage, cache: Cache):
    order = await MutationSubmitter(storage, cache).fetch(order_id)
    await resolve_name(storage, cache, order.assigned_to)
    return order_out(order, cache)


@router.patch("/{order_id}", response_model=OrderOut, responses={409: {"model": ConflictOut}})
async def patch_order(order_id: str, body: OrderPatchRequest, storage: Storage, cache: Cache, viewer: CurrentViewer):
    """
    Versioned edit of an order.

    - Only fields the caller owns may be sent (finance fields need admin/dispatcher,
      work type needs a company with work types enabled).
    - The merged form is validated against the company's edit schema.
    - A stale `expected_updated_at` returns 409 with the latest record.
    """
    company = await load_company(storage, viewer)
    fields = editable_fields(viewer, company)
    foreign = sorted(k for k in body.values if k not in fields)
    if foreign:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "FIELD_NOT_EDITABLE", "fields": foreign},
        )

    schema = await SchemaProvider(storage, viewer.company_id).get_schema(FormContext.EDIT)
    submitter = MutationSubmitter(storage, cache)
    current = await submitter.fetch(order_id)

    form = form_from_order(current, fields)
    for key, value in body.values.items():
        set_form_value(form, key, value)
    if body.to_feed is not None:
        set_form_value(form, "to_feed", body.to_feed)

    result = await submitter.save_form(form, current, schema, fields, expected_updated_at=body.expected_updated_at)
    if result.ok:
        await resolve_name(storage, cache, result.order.assigned_to)
    return write_response(result, cache)


@router.post("/{order_id}/accept", response_model=AcceptOut, responses={409: {"model": AcceptOut}})
async def accept_order(order_id: str, storage: Storage, cache: Cache, viewer: CurrentViewer):
    """Take the order from the feed. Exactly one concurrent caller wins; the others get 409."""
    result = await MutationSubmitter(storage, cache).accept(order_id, viewer.user_id)
    if result.outcome == AcceptOutcome.FAILURE:
        raise result.error
    if result.order is not None:
        await resolve_name(storage, cache, result.order.assigned_to)
    body = AcceptOut(outcome=result.outcome.value, order=order_out(result.order, cache) if result.order else None)
    if result.outcome == AcceptOutcome.ALREADY_TAKEN:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=jsonable_encoder(body))
    return body


@router.post("/{order_id}/finish", response_model=OrderOut, responses={409: {"model": ConflictOut}})
async def finish_order(
    order_id: str,
    storage: Storage,
    cache: Cache,
    viewer: CurrentViewer,
    expected_updated_at: Optional[str] = Query(None),
):
    """Complete the order. 400 ATTACHMENTS_MISSING lists the empty categories."""
    submitter = MutationSubmitter(storage, cache)
    current = await submitter.fetch(order_id)
    patch = finish_patch(current)
    result = await submitter.submit(order_id, patch, expected_updated_at or current.updated_at)
    return write_response(result, cache)


@router.post("/{order_id}/status", response_model=OrderOut, responses={409: {"model": ConflictOut}})
async def change_status(order_id: str, body: StatusChangeRequest, storage: Storage, cache: Cache, viewer: CurrentViewer):
    submitter = MutationSubmitter(storage, cache)
    current = await submitter.fetch(order_id)

    if body.status == OrderStatus.COMPLETED:
        patch = finish_patch(current)
    elif body.status == OrderStatus.IN_FEED:
        patch = clear_assignee_patch(current)
    elif body.status == current.status:
        return order_out(current, cache)
    else:
        raise InvalidTransition(
            f"Cannot change status from {current.status.value} to {body.status.value}",
            detail={"from": current.status.value, "to": body.status.value},
        )

    result = await submitter.submit(order_id, patch, body.expected_updated_at or current.updated_at)
    return write_response(result, cache)


@router.delete("/{order_id}")
async def delete_order(order_id: str, storage: Storage, cache: Cache, viewer: CurrentViewer, blobs=Depends(get_blobs)):
    """Delete the order together with every attachment blob."""
    submitter = MutationSubmitter(storage, cache)
    current = await submitter.fetch(order_id)
    await submitter.delete(current, AttachmentStore(blobs, submitter))
    return {"ok": True, "id": order_id}
