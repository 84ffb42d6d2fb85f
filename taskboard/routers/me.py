import logging

from fastapi import APIRouter, Depends, Query, Response

from taskboard.dependencies import (
    CurrentUser,
    DbDep,
    StarServiceDep,
    TaskQueriesDep,
    rate_limit,
)
from taskboard.routers.tasks import build_filters
from taskboard.services.export import ExportFormat, export_filename, render_export

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["me"])


@router.get("", dependencies=[Depends(rate_limit("me"))])
async def get_me(user: CurrentUser):
    """The user snapshot held by the current session"""
    return {"data": user.model_dump(mode="json", by_alias=True)}


@router.get("/tasks", dependencies=[Depends(rate_limit("me"))])
async def my_tasks(
    user: CurrentUser,
    db: DbDep,
    queries: TaskQueriesDep,
    query: str | None = Query(default=None, max_length=200),
    page: int = 1,
    limit: int = 20,
    sort: str | None = Query(default=None, pattern=r"^\w+:\w+$"),
):
    """Tasks the user created or is assigned to"""
    filters = build_filters(query, page, limit, sort, context="mine")
    return {"data": await queries.list_tasks(db, filters, user)}


@router.get("/starred", dependencies=[Depends(rate_limit("me"))])
async def my_starred(user: CurrentUser, db: DbDep, stars: StarServiceDep):
    tasks = await stars.starred_tasks(db, user)
    return {"data": [task.model_dump(mode="json", by_alias=True) for task in tasks]}


@router.get("/tasks/export", dependencies=[Depends(rate_limit("export"))])
async def export_my_tasks(
    user: CurrentUser,
    db: DbDep,
    queries: TaskQueriesDep,
    format: ExportFormat = ExportFormat.csv,
):
    """Download the user's tasks as CSV, Excel-friendly CSV, or JSON"""
    tasks = await queries.export_tasks(db, user)
    body, media_type = render_export(format, tasks, user.id)
    logger.info(f"Tasks exported: {user.email} -> {format.value} ({len(tasks)} rows)")
    return Response(
        content=body,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(format)}"',
            "Cache-Control": "no-cache",
        },
    )
