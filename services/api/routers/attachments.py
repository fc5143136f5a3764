# services/api/routers/attachments.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from core.attachments import AttachmentCategory, AttachmentStore
from core.mutations import MutationSubmitter
from routers.orders import CurrentViewer, get_blobs, get_cache, get_storage, order_out
from schemas import AttachmentsOut, ConflictOut, OrderOut, UploadOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders/{order_id}/attachments", tags=["attachments"])

MAX_UPLOAD_BYTES = 20 * 1024 * 1024
ALLOWED_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp", "application/pdf"}


@router.get("", response_model=AttachmentsOut)
async def list_attachments(order_id: str, storage=Depends(get_storage), cache=Depends(get_cache), blobs=Depends(get_blobs)):
    """Public URLs per category, as found in blob storage."""
    store = AttachmentStore(blobs, MutationSubmitter(storage, cache))
    return AttachmentsOut(order_id=order_id, attachments=await store.list(order_id))


@router.post("/{category}", response_model=UploadOut, responses={409: {"model": ConflictOut}})
async def upload_attachment(
    order_id: str,
    category: AttachmentCategory,
    viewer: CurrentViewer,
    file: UploadFile = File(...),
    expected_updated_at: Optional[str] = Form(None),
    storage=Depends(get_storage),
    cache=Depends(get_cache),
    blobs=Depends(get_blobs),
):
    """
    Upload one file into a category.

    A stale `expected_updated_at` is rejected before anything is written.
    """
    content_type = (file.content_type or "application/octet-stream").lower()
    if content_type not in ALLOWED_TYPES:
        raise HTTPException(status_code=415, detail=f"Unsupported content type {content_type}")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    submitter = MutationSubmitter(storage, cache)
    order = await submitter.fetch(order_id)
    if expected_updated_at and expected_updated_at != order.updated_at:
        body = ConflictOut(message="Order was changed by someone else", latest=order_out(order, cache))
        return JSONResponse(status_code=409, content=jsonable_encoder(body))

    url, updated = await AttachmentStore(blobs, submitter).upload(order, category, data, content_type)
    logger.info(f"{viewer.user_id} attached {url} to order {order_id} ({category.value})")
    return UploadOut(url=url, order=order_out(updated, cache))


@router.delete("/{category}", response_model=OrderOut, responses={409: {"model": ConflictOut}})
async def remove_attachment(
    order_id: str,
    category: AttachmentCategory,
    viewer: CurrentViewer,
    url: str = Query(..., description="Public URL of the attachment"),
    expected_updated_at: Optional[str] = Query(None),
    storage=Depends(get_storage),
    cache=Depends(get_cache),
    blobs=Depends(get_blobs),
):
    submitter = MutationSubmitter(storage, cache)
    order = await submitter.fetch(order_id)
    if expected_updated_at and expected_updated_at != order.updated_at:
        body = ConflictOut(message="Order was changed by someone else", latest=order_out(order, cache))
        return JSONResponse(status_code=409, content=jsonable_encoder(body))

    updated = await AttachmentStore(blobs, submitter).remove(order, category, url)
    return order_out(updated, cache)
