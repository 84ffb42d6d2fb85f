import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response, status

from taskboard.core.config import Settings, SettingsDep
from taskboard.core.errors import Unauthorized
from taskboard.dependencies import (
    AuthServiceDep,
    CsrfDep,
    CurrentSession,
    CurrentUser,
    DbDep,
    SessionsDep,
    csrf_protect,
    rate_limit,
    session_token_from,
)
from taskboard.schemas import (
    AuthResponse,
    AuthResult,
    DataResponse,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshResult,
    ResetPasswordRequest,
    SignupRequest,
)
from taskboard.services.sessions import SessionRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_THRESHOLD_SECONDS = 30 * 60
WARNING_THRESHOLD_SECONDS = 5 * 60


def set_session_cookie(response: Response, record: SessionRecord, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=record.token,
        max_age=settings.session_max_age_seconds,
        httponly=settings.session_cookie_httponly,
        secure=settings.secure_cookies,
        samesite=settings.session_cookie_samesite,
        path="/",
    )
    response.headers["X-Session-Token"] = record.token
    response.headers["X-Session-Expires-At"] = record.expires_at.isoformat()


@router.post(
    "/signup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("auth"))],
)
async def signup(
    data: SignupRequest,
    response: Response,
    db: DbDep,
    settings: SettingsDep,
    auth: AuthServiceDep,
    csrf: CsrfDep,
):
    """Create a credentials account and start a session"""
    user, record = await auth.signup(db, data)
    set_session_cookie(response, record, settings)
    csrf_token = await csrf.issue_for(record.token)
    return AuthResponse(data=AuthResult(user=user, session_token=record.token), csrf_token=csrf_token)


@router.post("/login", response_model=AuthResponse, dependencies=[Depends(rate_limit("login"))])
async def login(
    data: LoginRequest,
    response: Response,
    db: DbDep,
    settings: SettingsDep,
    auth: AuthServiceDep,
    csrf: CsrfDep,
):
    user, record = await auth.login(db, data)
    set_session_cookie(response, record, settings)
    csrf_token = await csrf.issue_for(record.token)
    return AuthResponse(data=AuthResult(user=user, session_token=record.token), csrf_token=csrf_token)


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(rate_limit()), Depends(csrf_protect)],
)
async def logout(request: Request, response: Response, settings: SettingsDep, auth: AuthServiceDep):
    await auth.logout(session_token_from(request, settings))
    response.delete_cookie(settings.session_cookie_name, path="/")


@router.post(
    "/refresh",
    response_model=DataResponse[RefreshResult],
    dependencies=[Depends(rate_limit()), Depends(csrf_protect)],
)
async def refresh(
    record: CurrentSession,
    response: Response,
    settings: SettingsDep,
    sessions: SessionsDep,
    csrf: CsrfDep,
):
    """Rotate the session token; the old token stops working immediately"""
    fresh = await sessions.refresh(record.token)
    if fresh is None:
        raise Unauthorized("Session expired or invalid")
    await csrf.transfer(record.token, fresh.token)
    set_session_cookie(response, fresh, settings)
    response.headers["X-Session-Refreshed"] = "true"
    logger.info(f"Session refreshed for {fresh.user.email}")
    return DataResponse(data=RefreshResult(session_expires_at=fresh.expires_at))


@router.get("/me", dependencies=[Depends(rate_limit("me"))])
async def me(user: CurrentUser, db: DbDep, auth: AuthServiceDep):
    current = await auth.get_current_user(db, user.id)
    return {"data": {"user": current.model_dump(mode="json", by_alias=True)}}


@router.get("/session-status")
async def session_status(record: CurrentSession):
    remaining = max((record.expires_at - datetime.now(timezone.utc)).total_seconds(), 0)
    return {
        "data": {
            "user": record.user.model_dump(mode="json", by_alias=True),
            "session": {
                "token": record.token,
                "expiresAt": record.expires_at.isoformat(),
                "timeUntilExpiry": int(remaining * 1000),
                "timeUntilExpiryMinutes": int(remaining // 60),
                "needsRefresh": remaining < REFRESH_THRESHOLD_SECONDS,
                "warning": remaining < WARNING_THRESHOLD_SECONDS,
                "valid": True,
            },
        }
    }


@router.post(
    "/forgot",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(rate_limit("auth"))],
)
async def forgot_password(data: ForgotPasswordRequest, db: DbDep, auth: AuthServiceDep):
    """Always 204, whether or not the account exists"""
    await auth.forgot_password(db, data.email)


@router.post(
    "/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(rate_limit("auth"))],
)
async def reset_password(data: ResetPasswordRequest, db: DbDep, auth: AuthServiceDep):
    await auth.reset_password(db, data.token, data.new_password)
