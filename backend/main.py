from contextlib import asynccontextmanager
import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from auth import Identity, get_identity
from cache_devices import OwnershipCache
from cache_memory import CacheBackend, InMemoryCache
from errors import DatabaseError, RateLimitError, SyncError, ValidationError
from logging_config import configure_logging
from models import UploadRequest
from rate_limit import RateLimiter
from repo_events import EventRepo
from service_sync import SyncService, now_ms
from settings import settings

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/sync"
SLOW_REQUEST_MS = 1000


def create_app(
    repo=None,
    cache_backend: Optional[CacheBackend] = None,
    rate_limiter: Optional[RateLimiter] = None,
    clock=now_ms,
) -> FastAPI:
    """Build the app with its collaborators constructed up front.

    Tests pass an in-memory repo and their own cache/limiter; production
    uses the defaults built from `settings`.
    """

    repo = repo if repo is not None else EventRepo()
    if cache_backend is None:
        cache_backend = InMemoryCache(default_ttl=settings.device_cache_ttl_seconds)
    if rate_limiter is None:
        rate_limiter = RateLimiter(settings.sync_rate_limit, settings.sync_rate_window_seconds)

    ownership = OwnershipCache(cache_backend, repo, ttl=settings.device_cache_ttl_seconds)
    svc = SyncService(repo, ownership, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(cache_backend, InMemoryCache):
            cache_backend.start_sweeper(settings.cache_sweep_interval_seconds)
        yield
        if isinstance(cache_backend, InMemoryCache):
            cache_backend.stop_sweeper()

    app = FastAPI(title="Activity Sync Backend", lifespan=lifespan)
    app.state.sync_service = svc
    app.state.ownership_cache = ownership
    app.state.rate_limiter = rate_limiter

    register_error_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        start = time.monotonic()
        response = await call_next(request)
        duration = int((time.monotonic() - start) * 1000)
        response.headers["X-Request-ID"] = request_id
        rate_status = getattr(request.state, "rate_limit", None)
        if rate_status is not None:
            response.headers.update(rate_status.headers())
        logger.info(
            "HTTP request id=%s method=%s path=%s status=%d duration_ms=%d",
            request_id, request.method, request.url.path, response.status_code, duration,
        )
        if duration > SLOW_REQUEST_MS:
            logger.warning(
                "Slow request id=%s method=%s path=%s duration_ms=%d",
                request_id, request.method, request.url.path, duration,
            )
        return response

    @app.get("/health")
    def health():
        try:
            svc.health_check()
        except Exception as e:
            logger.warning("DB health check failed: %s", e)
            return JSONResponse(
                status_code=503, content={"status": "degraded", "database": "disconnected"}
            )
        return {"status": "healthy", "database": "connected"}

    @app.post(API_PREFIX + "/events")
    def upload_events(
        body: UploadRequest,
        identity: Identity = Depends(rate_limited),
        svc: SyncService = Depends(get_service),
    ):
        result = svc.upload_events(
            identity.user_id, identity.device_id, body.events, body.last_sync_at
        )
        conflicts = [c.model_dump() for c in result.conflicts]
        if conflicts:
            logger.info(
                "Sync conflicts detected user=%s device=%s conflicts=%d",
                identity.user_id, identity.device_id, len(conflicts),
            )
            return JSONResponse(
                status_code=409,
                content={
                    "error": "sync_conflict",
                    "message": "Some events have conflicts on the server",
                    "resolution": "last_write_wins",
                    "processed_count": result.processed_count,
                    "conflicts": conflicts,
                    "synced_at": result.synced_at,
                },
            )
        return {
            "synced_at": result.synced_at,
            "processed_count": result.processed_count,
            "conflicts": [],
        }

    @app.get(API_PREFIX + "/events")
    def download_events(
        since: Optional[int] = Query(default=None),
        limit: int = Query(default=settings.default_download_limit),
        identity: Identity = Depends(rate_limited),
        svc: SyncService = Depends(get_service),
    ):
        result = svc.download_events(identity.user_id, identity.device_id, since, limit)
        return {
            "events": [e.model_dump(exclude_none=True) for e in result.events],
            "has_more": result.has_more,
            "latest_timestamp": result.latest_timestamp,
        }

    @app.get(API_PREFIX + "/status")
    def sync_status(
        identity: Identity = Depends(rate_limited),
        svc: SyncService = Depends(get_service),
    ):
        return svc.get_sync_status(identity.user_id, identity.device_id).model_dump()

    return app


def get_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def rate_limited(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
    # the middleware copies this onto the response, JSONResponse returns included
    request.state.rate_limit = request.app.state.rate_limiter.check(
        f"{identity.user_id}:{request.url.path}"
    )
    return identity


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SyncError)
    def handle_sync_error(request: Request, exc: SyncError):
        body = {"error": exc.code, "message": exc.message}
        headers = None
        if isinstance(exc, ValidationError):
            body["fields"] = exc.fields
            logger.info("Validation failed path=%s fields=%s", request.url.path, exc.fields)
        elif isinstance(exc, RateLimitError):
            body["message"] = f"Too many requests. Try again in {exc.retry_after} seconds."
            body["details"] = {
                "retry_after": exc.retry_after,
                "limit": exc.limit,
                "window": exc.window,
            }
            headers = {
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(time.time()) + exc.retry_after),
            }
        elif isinstance(exc, DatabaseError):
            # the wrapped driver error stays in the logs, never in the body
            logger.error("Database error path=%s: %s", request.url.path, exc.__cause__)
            body["message"] = "A database error occurred. Please try again later."
        else:
            logger.warning("%s path=%s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(RequestValidationError)
    def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = {
            ".".join(str(p) for p in err.get("loc", ())): err.get("msg", "invalid")
            for err in exc.errors()
        }
        return JSONResponse(
            status_code=400,
            content={
                "error": "validation_error",
                "message": "Request validation failed",
                "fields": fields,
            },
        )

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unexpected error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "An unexpected error occurred"},
        )


configure_logging()

app = create_app()
