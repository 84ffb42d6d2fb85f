import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskboard.cache.layer import EphemeralStore, create_store
from taskboard.cache.query_cache import QueryCache
from taskboard.core.config import Settings, get_settings
from taskboard.core.errors import TaskboardError
from taskboard.core.logging import setup_logging
from taskboard.database import build_engine, build_session_factory, create_db_and_tables
from taskboard.routers import auth, me, realtime, stars, system, tasks
from taskboard.services.auth_service import AuthService
from taskboard.services.csrf import CsrfGuard
from taskboard.services.events import EventHub
from taskboard.services.mailer import Mailer
from taskboard.services.rate_limiter import RateLimiter
from taskboard.services.sessions import SessionManager
from taskboard.services.star_service import StarService
from taskboard.services.task_queries import TaskQueryEngine
from taskboard.services.task_service import TaskService

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = [
    "ETag",
    "X-Request-ID",
    "X-Session-Token",
    "X-Session-Expires-At",
    "X-Session-Refreshed",
]


def _error_body(request: Request, status_code: int, message: str, field: str | None = None) -> dict:
    error = {
        "code": status_code,
        "message": message,
        "requestId": getattr(request.state, "request_id", "unknown"),
    }
    if field:
        error["field"] = field
    return {"error": error}


def _wire_services(app: FastAPI, settings: Settings, store: EphemeralStore) -> None:
    state = app.state
    state.store = store
    state.events = EventHub(queue_size=settings.event_queue_size)
    state.query_cache = QueryCache(store, ttl_seconds=settings.query_cache_ttl_seconds)
    state.sessions = SessionManager(store, max_age_seconds=settings.session_max_age_seconds)
    state.csrf = CsrfGuard(store, ttl_seconds=settings.csrf_ttl_seconds)
    state.rate_limiter = RateLimiter(store, strict_mode=settings.rate_limit_strict_mode)
    state.auth_service = AuthService(settings, store, state.sessions, Mailer(settings))
    state.task_service = TaskService(
        store, state.query_cache, state.events, undo_ttl_seconds=settings.undo_ttl_seconds
    )
    state.star_service = StarService(state.query_cache, state.events)
    state.task_queries = TaskQueryEngine(state.query_cache)


def create_app(settings: Settings | None = None, store: EphemeralStore | None = None) -> FastAPI:
    """
    Build the API. ``store`` overrides backend selection, which tests use to
    run against a specific ephemeral store.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        app.state.started_at = time.monotonic()

        engine = build_engine(settings.database_url, echo=settings.database_echo)
        await create_db_and_tables(engine)
        app.state.engine = engine
        app.state.session_factory = build_session_factory(engine)

        ephemeral = store or await create_store(settings)
        await ephemeral.start()
        _wire_services(app, settings, ephemeral)
        await app.state.events.start()
        logger.info(f"Taskboard started ({settings.environment}, store={ephemeral.backend})")

        yield

        await app.state.events.shutdown()
        await ephemeral.close()
        await engine.dispose()
        logger.info("Taskboard stopped")

    app = FastAPI(
        title="Taskboard API",
        description="Collaborative task board with optimistic concurrency and live updates",
        swagger_ui_parameters={"displayRequestDuration": True},
        version=system.VERSION,
        lifespan=lifespan,
    )
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f}ms [{request_id}]")
        return response

    @app.exception_handler(TaskboardError)
    async def taskboard_error_handler(request: Request, exc: TaskboardError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.status_code, exc.message, exc.field),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "header")]
        return JSONResponse(
            status_code=400,
            content=_error_body(request, 400, first.get("msg", "Invalid input"), ".".join(location) or None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content=_error_body(request, 500, "Internal server error"))

    app.include_router(auth.router)
    app.include_router(tasks.router)
    app.include_router(stars.router)
    app.include_router(me.router)
    app.include_router(system.router)
    app.include_router(realtime.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Taskboard API",
            "docs": "/docs",
            "version": system.VERSION,
        }

    return app


app = create_app()
