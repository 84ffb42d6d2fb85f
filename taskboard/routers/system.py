import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from taskboard.core.config import SettingsDep
from taskboard.dependencies import (
    CurrentUser,
    DbDep,
    EventsDep,
    RateLimiterDep,
    TaskServiceDep,
    client_ip,
    rate_limit,
    require_admin,
    require_non_production,
)
from taskboard.services.events import GLOBAL_ROOM

router = APIRouter(tags=["system"])

VERSION = "1.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check(request: Request):
    return {
        "status": "healthy",
        "timestamp": _now(),
        "uptime": time.monotonic() - request.app.state.started_at,
        "version": VERSION,
    }


@router.get("/sync", dependencies=[Depends(rate_limit())])
async def sync(since: datetime, user: CurrentUser, db: DbDep, tasks: TaskServiceDep):
    """Everything that changed after ``since``, for clients that missed events"""
    result = await tasks.sync(db, since, user)
    return {"data": result.model_dump(mode="json", by_alias=True)}


@router.get("/ws-status", dependencies=[Depends(require_admin)])
async def ws_status(events: EventsDep):
    stats = events.stats()
    return {
        "websocket": {
            "connected": events.running,
            "connectedClients": stats["currentConnections"],
            "authenticatedUsers": stats["authenticatedUsers"],
            "roomMembers": events.room_size(GLOBAL_ROOM),
            "room": GLOBAL_ROOM,
            "timestamp": _now(),
            "stats": stats,
        }
    }


@router.get("/rate-limit-stats", dependencies=[Depends(require_admin)])
async def rate_limit_stats(limiter: RateLimiterDep, settings: SettingsDep):
    return {
        "rateLimiting": {
            **limiter.get_stats(),
            "strictMode": limiter.strict_mode,
            "timestamp": _now(),
            "environment": settings.environment,
        }
    }


@router.get("/search-performance", dependencies=[Depends(require_admin)])
async def search_performance(request: Request, limiter: RateLimiterDep, settings: SettingsDep):
    cache_stats = request.app.state.query_cache.get_stats()
    limiter_stats = limiter.get_stats()
    return {
        "search": {
            "performance": {
                "cacheHitRate": cache_stats["hitRate"],
                "totalSearches": limiter_stats["total"],
                "blockedSearches": limiter_stats["blocked"],
                "timestamp": _now(),
                "environment": settings.environment,
            },
            "cache": cache_stats,
            "rateLimiting": limiter_stats,
        }
    }


@router.get("/session-management", dependencies=[Depends(require_admin)])
async def session_management(request: Request, settings: SettingsDep):
    return {
        "sessionManagement": {
            "config": {
                "maxAge": settings.session_max_age_seconds,
                "maxAgeHours": round(settings.session_max_age_seconds / 3600),
                "cookieName": settings.session_cookie_name,
                "secure": settings.secure_cookies,
                "httpOnly": settings.session_cookie_httponly,
                "sameSite": settings.session_cookie_samesite,
                "autoRefreshThreshold": 30,
                "warningThreshold": 5,
                "timestamp": _now(),
                "environment": settings.environment,
            },
            "storage": {
                **request.app.state.store.describe(),
                "redisDisabled": settings.redis_disabled,
                "redisRequired": settings.redis_required,
                "redisUrl": "configured" if settings.redis_url else "not configured",
            },
        }
    }


@router.post("/reset-rate-limit", dependencies=[Depends(require_non_production)])
async def reset_rate_limit(request: Request, limiter: RateLimiterDep):
    """Clear the caller's login limit. Development only."""
    ip = client_ip(request)
    await limiter.reset(f"{ip}:/auth/login")
    return {"message": "Rate limit reset successfully", "ip": ip, "timestamp": _now()}
