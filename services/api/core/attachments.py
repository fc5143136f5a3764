"""
Attachment category store.

Each order has four photo/document categories. Blobs live under
`orders/{order_id}/{category}/` and their public URLs are mirrored in the
order's array column of the same name. Blob storage and the order row are
not updated atomically:

    upload: write blob -> patch array (versioned) -> re-list folder
    remove: patch array (versioned) -> delete blob

so a failure between the two steps leaves an orphan (upload) or a dangling
blob (remove) and is reported as PartialAttachmentFailure.
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from core.blob_client import BlobClient, _safe_segment
from core.errors import BaseAppException, PartialAttachmentFailure
from core.mutations import MutationSubmitter
from models import Order

logger = logging.getLogger(__name__)


class AttachmentCategory(str, Enum):
    CONTRACT_FILE = "contract_file"
    PHOTO_BEFORE = "photo_before"
    PHOTO_AFTER = "photo_after"
    ACT_FILE = "act_file"


_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}


def folder_for(order_id: str, category: AttachmentCategory | str) -> str:
    return f"orders/{_safe_segment(order_id)}/{AttachmentCategory(category).value}"


class AttachmentStore:
    def __init__(self, blobs: BlobClient, submitter: MutationSubmitter):
        self.blobs = blobs
        self.submitter = submitter
        self._last_stamp = 0

    def _object_name(self, content_type: str) -> str:
        # Millisecond timestamps, bumped so two uploads in the same ms never collide.
        stamp = max(int(time.time() * 1000), self._last_stamp + 1)
        self._last_stamp = stamp
        return f"{stamp}{_EXTENSIONS.get(content_type.lower(), '.bin')}"

    async def list(self, order_id: str) -> Dict[str, List[str]]:
        """Public URLs per category, read from blob storage (not from the order row)."""
        out: Dict[str, List[str]] = {}
        for cat in AttachmentCategory:
            paths = await run_in_threadpool(self.blobs.list, folder_for(order_id, cat))
            out[cat.value] = [self.blobs.public_url(p) for p in paths]
        return out

    async def upload(
        self,
        order: Order,
        category: AttachmentCategory | str,
        data: bytes,
        content_type: str = "image/jpeg",
    ) -> Tuple[str, Order]:
        """
        Store a blob and append its URL to the order.

        Returns:
            (public URL, updated order)

        Raises:
            PartialAttachmentFailure: blob stored, order patch failed (stage="db");
                                      `cause` holds the submit error
            NetworkFailure / PermissionDenied: blob upload itself failed
        """
        cat = AttachmentCategory(category)
        path = f"{folder_for(order.id, cat)}/{self._object_name(content_type)}"

        await run_in_threadpool(self.blobs.upload, path, data, content_type)
        url = self.blobs.public_url(path)

        result = await self.submitter.submit(order.id, {cat.value: order.attachments(cat.value) + [url]}, order.updated_at)
        if not result.ok:
            logger.warning(f"Uploaded {path} but order {order.id} was not updated: {result.error}")
            raise PartialAttachmentFailure(
                "File uploaded but the order was not updated",
                stage="db",
                path=path,
                cause=result.error,
                order=result.latest,
            )

        updated = result.order
        listed = await run_in_threadpool(self.blobs.list, folder_for(order.id, cat))
        if path not in listed:
            logger.warning(f"Uploaded blob {path} is missing from the {cat.value} listing")
        return url, updated

    async def remove(self, order: Order, category: AttachmentCategory | str, url: str) -> Order:
        """
        Drop `url` from the order, then delete its blob.

        Returns:
            Updated order (unchanged when `url` was not attached).

        Raises:
            VersionConflict / NetworkFailure / PermissionDenied: order patch failed, nothing changed
            PartialAttachmentFailure: order patched, blob delete failed (stage="blob");
                                      `order` holds the updated order
        """
        cat = AttachmentCategory(category)
        current = order.attachments(cat.value)
        if url not in current:
            logger.info(f"{url} is not attached to order {order.id} ({cat.value})")
            return order

        result = await self.submitter.submit(order.id, {cat.value: [u for u in current if u != url]}, order.updated_at)
        if not result.ok:
            raise result.error

        path = self.blobs.path_from_url(url)
        if path is None:
            logger.warning(f"{url} does not belong to blob storage, nothing to delete")
            return result.order
        try:
            await run_in_threadpool(self.blobs.remove, [path])
        except (BaseAppException, OSError) as e:
            logger.warning(f"Order {order.id} updated but blob {path} was not deleted: {e}")
            raise PartialAttachmentFailure(
                "Attachment removed from the order but the file could not be deleted",
                stage="blob",
                path=path,
                cause=e,
                order=result.order,
            ) from e
        return result.order

    async def purge(self, order: Order) -> List[str]:
        """
        Delete every blob of the order: folder listings plus any URL the row
        still references. Best effort; returns the paths that could not be removed.
        """
        failed: List[str] = []
        for cat in AttachmentCategory:
            paths = set()
            try:
                paths.update(await run_in_threadpool(self.blobs.list, folder_for(order.id, cat)))
            except BaseAppException as e:
                logger.warning(f"Could not list {cat.value} for order {order.id}: {e}")
            for u in order.attachments(cat.value):
                p: Optional[str] = self.blobs.path_from_url(u)
                if p:
                    paths.add(p)
            if not paths:
                continue
            try:
                await run_in_threadpool(self.blobs.remove, sorted(paths))
            except (BaseAppException, OSError) as e:
                logger.warning(f"Could not delete {len(paths)} {cat.value} blobs of order {order.id}: {e}")
                failed.extend(sorted(paths))
        return failed
