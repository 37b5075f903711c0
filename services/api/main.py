"""
Candidate Document Dispatch - Backend API
FastAPI with two storage backends: SQLite and JSON files

Run server:
uvicorn main:app --host 0.0.0.0 --port 8000
"""

from fastapi import FastAPI, HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
import contextvars
import logging
import os
import time
import uuid

from settings import get_settings
from core.artifact_store import LocalArtifactStore
from core.errors import DispatchError
from core.selection import BatchRegistry

# ========== Request Context for Tracing ==========
request_id_var = contextvars.ContextVar('request_id', default=None)
request_start_time_var = contextvars.ContextVar('request_start_time', default=None)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# BACKEND CONFIGURATION
# ============================================================================
settings = get_settings()

STORAGE_BACKEND = settings.storage_backend.lower()

logger.info(f"🔧 Storage Backend: {STORAGE_BACKEND.upper()}")

# ============================================================================
# STORAGE ADAPTER INITIALIZATION
# ============================================================================

storage_adapter = None
# ---- DI helpers (used by routers/*) ----
def get_storage_adapter(_=None):
    return storage_adapter

if STORAGE_BACKEND == "sqlite":
    from adapters.sqlite import SqliteAdapter

    storage_adapter = SqliteAdapter.from_url(settings.db_url)
    logger.info(f"✓ SQLite adapter initialized ({settings.db_url.split('://')[0]})")

elif STORAGE_BACKEND == "json":
    from adapters.json import JsonAdapter

    storage_adapter = JsonAdapter(data_dir=settings.data_dir)
    logger.info(f"✓ JSON adapter initialized (data_dir={settings.data_dir})")

else:
    raise ValueError(f"Unknown STORAGE_BACKEND: {STORAGE_BACKEND}")

# Open dispatch batches live in memory and expire when idle
batch_registry = BatchRegistry(
    maxsize=settings.max_open_batches,
    ttl=settings.batch_ttl_seconds,
)

artifact_store = LocalArtifactStore(settings.artifact_dir, settings.public_base_url)


def get_batch_registry() -> BatchRegistry:
    return batch_registry


def get_artifact_store() -> LocalArtifactStore:
    return artifact_store

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Candidate Document Dispatch API",
    description="Selection, merge and bulk dispatch of candidate documents",
    version="1.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# ========== Request Tracing Middleware ==========
@app.middleware("http")
async def request_tracing_middleware(request, call_next):
    """Add request_id and timing to all requests."""
    request_id = str(uuid.uuid4())[:8]
    request_id_var.set(request_id)
    request_start_time_var.set(time.time())

    response = await call_next(request)

    latency = time.time() - request_start_time_var.get()

    logger.info(
        f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} "
        f"({round(latency * 1000, 2)} ms)"
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


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request, exc: DispatchError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"[{request_id_var.get()}] {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"detail": exc.detail()}),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )

# ============================================================================
# ENDPOINTS
# ============================================================================
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    try:
        storage_adapter.list_assignments(ids=[])
        return {
            "status": "healthy",
            "backend": STORAGE_BACKEND,
            "open_batches": len(batch_registry),
            "version": "1.0"
        }
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "backend": STORAGE_BACKEND, "error": str(e)}
        )


@app.get("/healthz")
async def healthz():
    """
    Liveness probe.
    Fast check - is the process alive and responding?
    """
    return {
        "status": "ok",
        "timestamp": time.time(),
        "version": "1.0"
    }


@app.get("/readyz")
async def readyz():
    """
    Readiness probe.
    Checks that storage is reachable and the artifact directory is writable.
    Returns 200 if ready, 503 if not ready.
    """
    try:
        storage_adapter.list_assignments(ids=[])
        if not os.access(artifact_store.root, os.W_OK):
            raise RuntimeError(f"Artifact dir not writable: {artifact_store.root}")

        return {
            "status": "ready",
            "backend": STORAGE_BACKEND,
            "open_batches": len(batch_registry),
            "timestamp": time.time()
        }

    except Exception as e:
        logger.error(f"Readiness check failed: {str(e)}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "backend": STORAGE_BACKEND,
                "error": str(e),
                "timestamp": time.time()
            }
        )


@app.get("/")
async def root():
    """API root endpoint"""
    return {
        "message": "Candidate Document Dispatch API",
        "version": "1.0",
        "backend": STORAGE_BACKEND,
        "status": "running",
        "docs": "/docs"
    }


@app.get("/artifacts/{file_name}")
async def get_artifact(file_name: str):
    """Serve a generated file (merged PDF) from the artifact directory."""
    path = artifact_store.path_for(file_name)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Artifact not found")
    return FileResponse(path, media_type="application/pdf", filename=path.name)


from routers import batches as batches_router
app.include_router(batches_router.router)

from routers import merge as merge_router
app.include_router(merge_router.router)

from routers import forwarding as forwarding_router
app.include_router(forwarding_router.router)

from routers import transfers as transfers_router
app.include_router(transfers_router.router)

from routers import pipeline as pipeline_router
app.include_router(pipeline_router.router)

startup_time = time.time()

@app.on_event("startup")
async def startup_event():
    global startup_time
    startup_time = time.time()
    logger.info("Candidate Document Dispatch API starting up...")
    logger.info(f"Storage Backend: {STORAGE_BACKEND.upper()}")
    logger.info(f"Artifacts: {artifact_store.root}")
    logger.info(f"Allowed origins: {ALLOWED_ORIGINS}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Candidate Document Dispatch API shutting down...")
    if STORAGE_BACKEND == "sqlite":
        storage_adapter.engine.dispose()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
