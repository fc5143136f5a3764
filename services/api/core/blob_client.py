# services/api/core/blob_client.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import unquote

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import NetworkFailure, PermissionDenied, BaseAppException

logger = logging.getLogger(__name__)


class BlobClient(Protocol):
    """Object storage used for order attachments. Paths are bucket-relative."""

    def upload(self, path: str, data: bytes, content_type: str = "image/jpeg") -> None: ...

    def public_url(self, path: str) -> str: ...

    def list(self, folder: str) -> List[str]:
        """Bucket-relative paths of the objects directly under `folder`, sorted by name."""
        ...

    def remove(self, paths: List[str]) -> None: ...

    def path_from_url(self, url: str) -> Optional[str]:
        """Inverse of public_url(); None for URLs that do not belong to this store."""
        ...


def _safe_segment(value: str, fallback: str = "UNKNOWN") -> str:
    """
    Make a string safe to use as a storage path segment.
    """
    if not value:
        return fallback
    v = re.sub(r"[\\/]+", "_", str(value)).strip()
    v = re.sub(r"[^0-9A-Za-z._-]+", "_", v)
    v = v.strip("._")
    return v or fallback


class LocalBlobClient:
    """Filesystem-backed store; files are served under `public_base_url`."""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _file(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"BLOB_PATH_OUTSIDE_ROOT: {path}")
        return target

    def upload(self, path: str, data: bytes, content_type: str = "image/jpeg") -> None:
        f = self._file(path)
        if f.exists():
            raise FileExistsError(path)
        f.parent.mkdir(parents=True, exist_ok=True)
        f.write_bytes(data)

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    def list(self, folder: str) -> List[str]:
        d = self.root / folder.strip("/")
        if not d.is_dir():
            return []
        return sorted(f"{folder.strip('/')}/{p.name}" for p in d.iterdir() if p.is_file())

    def remove(self, paths: List[str]) -> None:
        for p in paths:
            self._file(p).unlink(missing_ok=True)

    def path_from_url(self, url: str) -> Optional[str]:
        prefix = self.public_base_url + "/"
        if not url or not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):])


def retry_listing(func):
    """Decorator to retry storage listings with exponential backoff on transport errors."""
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((NetworkFailure,)),
        reraise=True,
    )
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


class SupabaseBlobClient:
    """Supabase Storage bucket over its REST API."""

    def __init__(
        self,
        url: str,
        api_key: str,
        bucket: str,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.storage_url = url.rstrip("/") + "/storage/v1"
        self.bucket = bucket
        self.client = client or httpx.Client(
            base_url=self.storage_url,
            timeout=timeout,
            headers={"apikey": api_key, "Authorization": f"Bearer {access_token or api_key}"},
        )

    @classmethod
    def from_settings(cls, settings) -> "SupabaseBlobClient":
        return cls(
            url=settings.supabase_url,
            api_key=settings.supabase_key,
            bucket=settings.blob_bucket,
            access_token=settings.supabase_access_token,
            timeout=settings.http_timeout_s,
        )

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise NetworkFailure(f"Storage unreachable: {e}") from e
        if resp.status_code in (401, 403):
            raise PermissionDenied(f"Storage access denied: {resp.text[:200]}")
        if resp.status_code >= 500:
            raise NetworkFailure(f"Storage error {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise BaseAppException(f"Storage rejected request ({resp.status_code}): {resp.text[:200]}", code="STORAGE_REJECTED", http_status=502)
        return resp

    def upload(self, path: str, data: bytes, content_type: str = "image/jpeg") -> None:
        self._send(
            "POST",
            f"/object/{self.bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )

    def public_url(self, path: str) -> str:
        return f"{self.storage_url}/object/public/{self.bucket}/{path}"

    @retry_listing
    def list(self, folder: str) -> List[str]:
        folder = folder.strip("/")
        resp = self._send(
            "POST",
            f"/object/list/{self.bucket}",
            json={"prefix": folder, "limit": 1000, "offset": 0, "sortBy": {"column": "name", "order": "asc"}},
        )
        return [f"{folder}/{item['name']}" for item in resp.json() or [] if item.get("name")]

    def remove(self, paths: List[str]) -> None:
        if paths:
            self._send("DELETE", f"/object/{self.bucket}", json={"prefixes": list(paths)})

    def path_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.storage_url}/object/public/{self.bucket}/"
        if not url or not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):].split("?", 1)[0])


def make_blob_client(settings) -> BlobClient:
    backend = settings.blob_backend.lower()
    if backend == "local":
        return LocalBlobClient(settings.blob_local_dir, settings.blob_public_base_url)
    if backend == "supabase":
        return SupabaseBlobClient.from_settings(settings)
    raise ValueError(f"Unknown BLOB_BACKEND: {settings.blob_backend}")
