import logging
from typing import Callable

from fastapi import Depends, Request, Response
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from taskboard.core.config import Settings, SettingsDep
from taskboard.core.errors import Forbidden, InvalidInput, NotFound, RateLimited, Unauthorized
from taskboard.database import get_db
from taskboard.schemas import SessionUser, is_valid_id
from taskboard.services.auth_service import AuthService
from taskboard.services.csrf import SAFE_METHODS, CsrfGuard
from taskboard.services.events import EventHub
from taskboard.services.rate_limiter import RateLimiter
from taskboard.services.sessions import SessionManager, SessionRecord
from taskboard.services.star_service import StarService
from taskboard.services.task_queries import TaskQueryEngine
from taskboard.services.task_service import TaskService

logger = logging.getLogger(__name__)

DbDep = Annotated[AsyncSession, Depends(get_db)]


# ── services living on app.state ────────────────────────


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_csrf(request: Request) -> CsrfGuard:
    return request.app.state.csrf


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_events(request: Request) -> EventHub:
    return request.app.state.events


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_star_service(request: Request) -> StarService:
    return request.app.state.star_service


def get_task_queries(request: Request) -> TaskQueryEngine:
    return request.app.state.task_queries


SessionsDep = Annotated[SessionManager, Depends(get_sessions)]
CsrfDep = Annotated[CsrfGuard, Depends(get_csrf)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
EventsDep = Annotated[EventHub, Depends(get_events)]
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
StarServiceDep = Annotated[StarService, Depends(get_star_service)]
TaskQueriesDep = Annotated[TaskQueryEngine, Depends(get_task_queries)]


# ── sessions ────────────────────────────────────────────


def session_token_from(request: Request, settings: Settings) -> str | None:
    """Cookie first, then ``Authorization: Bearer``."""
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


async def get_current_session(
    request: Request,
    response: Response,
    settings: SettingsDep,
    sessions: SessionsDep,
) -> SessionRecord:
    token = session_token_from(request, settings)
    if not token:
        raise Unauthorized()
    record = await sessions.get_session_record(token)
    if record is None:
        raise Unauthorized("Session expired or invalid")

    response.headers["X-Session-Token"] = record.token
    response.headers["X-Session-Expires-At"] = record.expires_at.isoformat()
    request.state.user = record.user
    return record


async def get_current_user(record: Annotated[SessionRecord, Depends(get_current_session)]) -> SessionUser:
    return record.user


CurrentSession = Annotated[SessionRecord, Depends(get_current_session)]
CurrentUser = Annotated[SessionUser, Depends(get_current_user)]


# ── request guards ──────────────────────────────────────


async def csrf_protect(request: Request, record: CurrentSession, csrf: CsrfDep) -> None:
    if request.method in SAFE_METHODS:
        return
    submitted = request.headers.get("X-CSRF-Token")
    if not submitted:
        raise Forbidden("CSRF token missing")
    if not await csrf.validate(submitted, record.token):
        raise Forbidden("CSRF token invalid")


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _path_key(request: Request) -> str:
    return f"{client_ip(request)}:{request.url.path}"


def search_key(request: Request) -> str:
    return f"search:{client_ip(request)}"


def rate_limit(name: str = "default", key_func: Callable[[Request], str] = _path_key):
    """
    Dependency factory for a fixed-window limit read from settings.

    ``name`` selects ``rate_limit_{name}_max_requests`` and
    ``rate_limit_{name}_window_seconds``; "default" uses the unprefixed pair.
    """
    prefix = "rate_limit" if name == "default" else f"rate_limit_{name}"

    async def dependency(request: Request, settings: SettingsDep, limiter: RateLimiterDep) -> None:
        limit = getattr(settings, f"{prefix}_max_requests")
        window = getattr(settings, f"{prefix}_window_seconds")
        if not await limiter.allow(key_func(request), limit, window):
            raise RateLimited()

    return dependency


def valid_task_id(task_id: str) -> str:
    if not is_valid_id(task_id):
        raise InvalidInput("Invalid task id", field="id")
    return task_id


TaskId = Annotated[str, Depends(valid_task_id)]


async def require_admin(request: Request, settings: SettingsDep) -> None:
    """Observability endpoints are open in development and key-protected in production."""
    if not settings.is_production:
        return
    if not settings.admin_key or request.headers.get("X-Admin-Key") != settings.admin_key:
        raise Forbidden("Admin key required")


async def require_non_production(settings: SettingsDep) -> None:
    if settings.is_production:
        raise NotFound("Not found")
