from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as PayloadError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tallypoint import __version__
from tallypoint.aggregation import (
    DEFAULT_APPS_LIMIT,
    DEFAULT_ERRORS_LIMIT,
    DEFAULT_REALTIME_MINUTES,
    DEFAULT_USAGE_DAYS,
    DEFAULT_USERS_LIMIT,
    MAX_LIST_LIMIT,
    MAX_REALTIME_MINUTES,
    MAX_USAGE_DAYS,
    MetricsEngine,
    coerce_positive_int,
)
from tallypoint.auth import require_token
from tallypoint.config import Settings, load_settings
from tallypoint.errors import (
    NotFound,
    StorageError,
    TallypointError,
    ValidationError,
    validation_details,
)
from tallypoint.events import ErrorIn, EventPayload, ReplacementIn, UserActionIn
from tallypoint.store import Clock, EventStore, build_store, utcnow
from tallypoint.timed_access_log_middleware import TimedAccessLogMiddleware

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "health": "/api/health",
    "overview": "/api/metrics/overview",
    "usage": "/api/metrics/usage",
    "errors": "/api/metrics/errors",
    "users": "/api/metrics/users",
    "apps": "/api/metrics/apps",
    "methods": "/api/metrics/methods",
    "realTime": "/api/metrics/real-time",
}


# ----------------------------
# Payload parsing
# ----------------------------
def payload_of(model: Type[BaseModel]):
    """
    Body parser used as a dependency so it runs after the token check:
    an unauthenticated request never gets as far as JSON decoding.
    """
    async def parse(request: Request) -> BaseModel:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body must be valid JSON") from None
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            return model.model_validate(data)
        except PayloadError as exc:
            raise ValidationError(details=validation_details(exc.errors())) from None

    return parse


def _store(request: Request) -> EventStore:
    return request.app.state.store


def _metrics(request: Request) -> MetricsEngine:
    return request.app.state.metrics


def _persist(request: Request, event: EventPayload) -> Dict[str, Any]:
    event_id = _store(request).append(event)
    return {"success": True, "id": event_id}


# ----------------------------
# Routes: ingestion
# ----------------------------
ingest = APIRouter(prefix="/api/analytics", dependencies=[Depends(require_token)])


@ingest.post("/text-replacement")
def ingest_replacement(request: Request, ev: ReplacementIn = Depends(payload_of(ReplacementIn))):
    if ev.user_agent is None:
        ev.user_agent = request.headers.get("user-agent")
    if ev.ip_address is None and request.client is not None:
        ev.ip_address = request.client.host

    out = _persist(request, ev)
    logger.info("replacement tracked id=%s user=%s app=%s success=%s",
                out["id"], ev.user_id, ev.target_app, ev.success)
    return out


@ingest.post("/error")
def ingest_error(request: Request, ev: ErrorIn = Depends(payload_of(ErrorIn))):
    out = _persist(request, ev)
    logger.info("error tracked id=%s type=%s user=%s", out["id"], ev.error_type, ev.user_id)
    return out


@ingest.post("/user-action")
def ingest_user_action(request: Request, ev: UserActionIn = Depends(payload_of(UserActionIn))):
    out = _persist(request, ev)
    logger.info("user action tracked id=%s action=%s user=%s", out["id"], ev.action_type, ev.user_id)
    return out


# ----------------------------
# Routes: metrics
# ----------------------------
metrics = APIRouter(prefix="/api/metrics", dependencies=[Depends(require_token)])


@metrics.get("/overview")
def metrics_overview(request: Request) -> Dict[str, Any]:
    return _metrics(request).overview()


@metrics.get("/usage")
def metrics_usage(request: Request, days: Optional[str] = None) -> List[Dict[str, Any]]:
    window = coerce_positive_int(days, DEFAULT_USAGE_DAYS, MAX_USAGE_DAYS)
    return _metrics(request).usage_by_day(window)


@metrics.get("/errors")
def metrics_errors(request: Request, limit: Optional[str] = None) -> List[Dict[str, Any]]:
    n = coerce_positive_int(limit, DEFAULT_ERRORS_LIMIT, MAX_LIST_LIMIT)
    return _metrics(request).recent_errors(n)


@metrics.get("/users")
def metrics_users(request: Request, limit: Optional[str] = None) -> List[Dict[str, Any]]:
    n = coerce_positive_int(limit, DEFAULT_USERS_LIMIT, MAX_LIST_LIMIT)
    return _metrics(request).top_users(n)


@metrics.get("/apps")
def metrics_apps(request: Request, limit: Optional[str] = None) -> List[Dict[str, Any]]:
    n = coerce_positive_int(limit, DEFAULT_APPS_LIMIT, MAX_LIST_LIMIT)
    return _metrics(request).app_breakdown(n)


@metrics.get("/methods")
def metrics_methods(request: Request) -> List[Dict[str, Any]]:
    return _metrics(request).method_breakdown()


@metrics.get("/real-time")
def metrics_real_time(request: Request, minutes: Optional[str] = None) -> List[Dict[str, Any]]:
    window = coerce_positive_int(minutes, DEFAULT_REALTIME_MINUTES, MAX_REALTIME_MINUTES)
    return _metrics(request).real_time_by_minute(window)


# ----------------------------
# Routes: open
# ----------------------------
public = APIRouter()


@public.get("/")
def home() -> Dict[str, Any]:
    return {
        "message": "Tallypoint analytics API",
        "version": __version__,
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "endpoints": ENDPOINTS,
    }


@public.get("/api/health")
def health(request: Request) -> Dict[str, Any]:
    try:
        _store(request).ping()
        status, database = "healthy", "connected"
    except StorageError:
        logger.warning("health check: event store unavailable", exc_info=True)
        status, database = "degraded", "unavailable"
    return {"status": status, "timestamp": utcnow().isoformat(), "database": database}


# ----------------------------
# Error mapping
# ----------------------------
async def _tallypoint_error(request: Request, exc: TallypointError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc,
                     exc_info=exc)
    else:
        logger.debug("rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = ValidationError(details=validation_details(list(exc.errors())))
    return JSONResponse(status_code=err.status_code, content=err.to_body())


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        body = NotFound().to_body()
    elif exc.status_code == 405:
        body = {"error": "Method not allowed"}
    else:
        body = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ----------------------------
# App
# ----------------------------
def _preflight_headers(settings: Settings, origin: Optional[str]) -> Dict[str, str]:
    if "*" in settings.cors_origins:
        allow_origin = "*"
    elif origin and origin in settings.cors_origins:
        allow_origin = origin
    else:
        return {}
    return {
        "access-control-allow-origin": allow_origin,
        "access-control-allow-methods": "GET, POST, OPTIONS",
        "access-control-allow-headers": "Content-Type, Authorization",
        "access-control-max-age": "600",
    }


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EventStore] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Builds the API around an explicitly owned event store.
    The store's schema is ensured once at startup and the store is closed at shutdown.
    """
    settings = settings or load_settings()
    if store is None:
        store = build_store(settings, clock=clock)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            store.ensure_schema()
        except StorageError:
            logger.exception("event store schema setup failed; serving in degraded mode")
        yield
        store.close()

    app = FastAPI(title="Tallypoint", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.metrics = MetricsEngine(store, clock=clock)

    app.include_router(public)
    app.include_router(ingest)
    app.include_router(metrics)

    app.add_exception_handler(TallypointError, _tallypoint_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(Exception, _unhandled_error)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _options(request: Request, call_next):
        # Any OPTIONS is answered here with 200 and an empty body, unknown paths included.
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=_preflight_headers(settings, request.headers.get("origin")))
        return await call_next(request)

    app.add_middleware(TimedAccessLogMiddleware, path=settings.access_log)

    return app
