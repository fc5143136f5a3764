"""
Field Work Orders - Backend API
FastAPI over the order lifecycle engine with pluggable storage: SQLite, JSON files or Supabase.

Install dependencies:
pip install -e .

Run server:
uvicorn main:app --host 0.0.0.0 --port 8000
"""

import contextvars
import logging
import os
import time
import uuid

from fastapi import FastAPI, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from core.blob_client import make_blob_client
from core.cache import EngineCache
from core.errors import BaseAppException, VersionConflict
from core.realtime import InProcessChangeFeed
from settings import get_settings

# ========== Request Context for Tracing ==========
request_id_var = contextvars.ContextVar("request_id", default=None)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ============================================================================
# BACKEND CONFIGURATION
# ============================================================================

STORAGE_BACKEND = settings.storage_backend.lower()
logger.info(f"🔧 Storage Backend: {STORAGE_BACKEND.upper()}")


def build_change_feed(cfg):
    if cfg.storage_backend.lower() == "supabase" and cfg.supabase_realtime and cfg.supabase_url:
        from adapters.supabase.changes import SupabaseRealtimeFeed
        logger.info("Realtime: Supabase postgres_changes")
        return SupabaseRealtimeFeed.from_settings(cfg)
    return InProcessChangeFeed()


change_feed = build_change_feed(settings)
engine_cache = EngineCache.from_settings(settings)
storage_adapter = None
blob_client = None
startup_time = time.time()


def build_storage_adapter(cfg, feed):
    backend = cfg.storage_backend.lower()
    if backend == "sqlite":
        from adapters.sqlite import SqliteAdapter
        logger.info(f"Initializing SQLite adapter ({cfg.db_url.split('://')[0]})...")
        return SqliteAdapter.from_url(cfg.db_url, feed=feed)
    if backend == "json":
        from adapters.json import JsonAdapter
        logger.info(f"Initializing JSON adapter in {cfg.json_data_dir}...")
        return JsonAdapter(cfg.json_data_dir, feed=feed)
    if backend == "supabase":
        from adapters.supabase import SupabaseAdapter
        if not cfg.supabase_url or not cfg.supabase_key:
            raise ValueError("Supabase requires SUPABASE_URL and SUPABASE_KEY")
        logger.info("Initializing Supabase adapter...")
        return SupabaseAdapter.from_settings(cfg, feed=feed)
    raise ValueError(f"Unsupported storage backend: {backend}")


# ---- DI helpers (used by routers/*) ----
def get_storage_adapter(_=None):
    global storage_adapter
    if storage_adapter is None:
        storage_adapter = build_storage_adapter(settings, change_feed)
        logger.info(f"✓ {STORAGE_BACKEND} adapter initialized")
    return storage_adapter


def get_blob_client():
    global blob_client
    if blob_client is None:
        blob_client = make_blob_client(settings)
    return blob_client


def get_engine_cache() -> EngineCache:
    return engine_cache


def get_change_feed() -> InProcessChangeFeed:
    return change_feed


def configure(storage=None, blobs=None, cache=None):
    """Swap in ready-made collaborators (embedding, tests)."""
    global storage_adapter, blob_client, engine_cache
    if storage is not None:
        storage_adapter = storage
    if blobs is not None:
        blob_client = blobs
    if cache is not None:
        engine_cache = cache


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Field Work Orders API",
    description="Order lifecycle: versioned edits, feed acceptance, attachments and completion",
    version="1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)


# ========== Request Tracing Middleware ==========
@app.middleware("http")
async def request_tracing_middleware(request, call_next):
    """Add request_id and timing to all requests."""
    request_id = str(uuid.uuid4())[:8]
    request_id_var.set(request_id)
    started = time.time()

    response = await call_next(request)

    latency = time.time() - started
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round(latency * 1000, 2),
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


ALLOWED_ORIGINS = settings.get_origins_list()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BaseAppException)
async def app_exception_handler(request, exc: BaseAppException):
    body = exc.to_dict()
    if isinstance(exc, VersionConflict) and exc.latest is not None:
        body["latest"] = exc.latest
    if exc.http_status >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(body))


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ============================================================================
# ENDPOINTS
# ============================================================================
@app.get("/health")
async def health_check():
    """Health check endpoint (touches the store)."""
    try:
        await run_in_threadpool(get_storage_adapter().ping)
        return {"status": "healthy", "backend": STORAGE_BACKEND, "version": "1.0"}
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "backend": STORAGE_BACKEND, "error": str(e)},
        )


@app.get("/healthz")
async def healthz():
    """Liveness probe: the process is up and answering."""
    return {
        "status": "ok",
        "timestamp": time.time(),
        "uptime_s": round(time.time() - startup_time, 1),
        "version": "1.0",
    }


@app.get("/")
async def root():
    return {
        "name": "Field Work Orders API",
        "version": "1.0",
        "backend": STORAGE_BACKEND,
        "docs": "/docs",
    }


from routers import attachments as attachments_router
from routers import orders as orders_router
from routers import schema as schema_router

app.include_router(orders_router.router)
app.include_router(attachments_router.router)
app.include_router(schema_router.router)

# Locally stored attachments are served from the same process
if settings.blob_backend.lower() == "local":
    app.mount("/blobs", StaticFiles(directory=settings.blob_local_dir, check_dir=False), name="blobs")


@app.on_event("startup")
async def startup_event():
    global startup_time
    startup_time = time.time()
    logger.info("Field Work Orders API starting up...")
    logger.info(f"Storage Backend: {STORAGE_BACKEND.upper()}")
    logger.info(f"Blob Backend: {settings.blob_backend.upper()}")
    logger.info(f"Allowed origins: {ALLOWED_ORIGINS}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Field Work Orders API shutting down...")
    if storage_adapter is not None and hasattr(storage_adapter, "close"):
        storage_adapter.close()
    elif storage_adapter is not None and hasattr(storage_adapter, "engine"):
        storage_adapter.engine.dispose()
    if hasattr(change_feed, "close"):
        await change_feed.close()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
