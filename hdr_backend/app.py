#  HDR Backend - FastAPI Application
#
#  Main app setup: lifespan, error mapping, middleware, router includes.
#  Creates the DI container and manages service lifecycle.
#
#  Depends on: config.py, container.py, routes/*.py, middleware/auth.py
#  Used by:    run.py

import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from hdr_backend.config import (
    BASE_URL,
    CORS_ORIGINS,
    DB_PATH,
    SHUTDOWN_GRACE_SECONDS,
    validate_config,
)
from hdr_backend.container import Container
from hdr_backend.exceptions import (
    HDRBackendError,
    NotFoundError,
    ObjectStoreError,
    PersistenceError,
    ProviderError,
    UploadFailedError,
    ValidationError,
)
from hdr_backend.logging_config import set_request_id
from hdr_backend.middleware.auth import get_current_user
from hdr_backend.rate_limit import limiter
from hdr_backend.routes.health import router as health_router
from hdr_backend.routes.images import router as images_router
from hdr_backend.routes.orders import router as orders_router
from hdr_backend.routes.uploads import router as uploads_router
from hdr_backend.routes.webhooks import router as webhooks_router

logger = logging.getLogger("hdr.app")

API_PREFIX = "/api/v1"

# Create and wire the DI container
container = Container()

# Auth dependency for all protected routes
_auth_dep = [Depends(get_current_user)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle.

    Uses AsyncExitStack so that if any startup step fails, all previously
    initialized resources are cleaned up in reverse order.
    """
    logger.info("HDR backend starting...")

    # Validate critical config before anything else
    validate_config()

    db = container.db()
    runner = container.runner()

    async with AsyncExitStack() as stack:
        await db.init(DB_PATH, run_migrations=True)
        stack.push_async_callback(db.close)

        for client in (container.provider_http(), container.storage_http(), container.broadcast_http()):
            stack.push_async_callback(client.aclose)

        # Runs first on shutdown: completion work still needs db and clients
        stack.push_async_callback(runner.drain, SHUTDOWN_GRACE_SECONDS)

        yield

    logger.info("HDR backend shut down")


app = FastAPI(
    title="HDR Backend",
    version="0.1.0",
    servers=[{"url": BASE_URL}],
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error(status_code: int, error: str, message: str | None = None, **extra) -> JSONResponse:
    content = {"error": error}
    if message:
        content["message"] = message
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return _error(429, "rate limit exceeded")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    return _error(400, "invalid request", details)


# Business errors
@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(400, str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, str(exc))


@app.exception_handler(ProviderError)
async def provider_handler(request: Request, exc: ProviderError):
    logger.error("Provider error on %s: %s", request.url.path, exc)
    return _error(500, "provider error", str(exc), provider_status=exc.status_code)


@app.exception_handler(UploadFailedError)
async def upload_failed_handler(request: Request, exc: UploadFailedError):
    return _error(500, str(exc), errors=exc.errors)


@app.exception_handler(ObjectStoreError)
async def object_store_handler(request: Request, exc: ObjectStoreError):
    logger.error("Object store error on %s: %s", request.url.path, exc)
    return _error(500, "storage error", str(exc))


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError):
    logger.error("Database error on %s: %s", request.url.path, exc)
    return _error(500, "database error", str(exc))


@app.exception_handler(HDRBackendError)
async def backend_error_handler(request: Request, exc: HDRBackendError):
    return _error(400, str(exc))


@app.exception_handler(Exception)
async def unhandled_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return _error(500, "internal server error")


# Request ID tracing
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = uuid.uuid4().hex[:12]
        set_request_id(rid)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            set_request_id(None)

app.add_middleware(RequestIDMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

# Health check (public, for load balancer probes)
app.include_router(health_router)
app.include_router(health_router, prefix=API_PREFIX)

# Provider callbacks (shared-token auth, applied on the route)
app.include_router(webhooks_router, prefix=API_PREFIX)

# Protected API routes (require valid JWT)
app.include_router(orders_router, prefix=API_PREFIX, dependencies=_auth_dep)
app.include_router(uploads_router, prefix=API_PREFIX, dependencies=_auth_dep)
app.include_router(images_router, prefix=API_PREFIX, dependencies=_auth_dep)
