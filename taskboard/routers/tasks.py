from fastapi import APIRouter, Depends, Header, Query, Response, status
from pydantic import ValidationError

from taskboard.core.errors import InvalidInput
from taskboard.dependencies import (
    CurrentUser,
    DbDep,
    TaskId,
    TaskQueriesDep,
    TaskServiceDep,
    csrf_protect,
    rate_limit,
    search_key,
)
from taskboard.schemas import (
    DataResponse,
    TaskCreate,
    TaskFilters,
    TaskRead,
    TaskUpdate,
    UndoToken,
    parse_if_match,
)

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(csrf_protect)])


def build_filters(
    query: str | None,
    page: int,
    limit: int,
    sort: str | None,
    context: str = "all",
) -> TaskFilters:
    try:
        return TaskFilters.from_sort(sort, search=query or "", page=page, limit=limit, context=context)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or None
        raise InvalidInput(error["msg"], field=field)


@router.get("", dependencies=[Depends(rate_limit("search", search_key))])
async def list_tasks(
    user: CurrentUser,
    db: DbDep,
    queries: TaskQueriesDep,
    query: str | None = Query(default=None, max_length=200),
    page: int = 1,
    limit: int = 20,
    sort: str | None = Query(default=None, pattern=r"^\w+:\w+$"),
    context: str = "all",
):
    """Search, sort and paginate active tasks"""
    filters = build_filters(query, page, limit, sort, context)
    return {"data": await queries.list_tasks(db, filters, user)}


@router.post(
    "",
    response_model=DataResponse[TaskRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
async def create_task(
    task_data: TaskCreate, response: Response, user: CurrentUser, db: DbDep, tasks: TaskServiceDep
):
    """Create a new task"""
    task = await tasks.create_task(db, task_data, user)
    response.headers["ETag"] = task.etag
    return DataResponse(data=task)


@router.get(
    "/{task_id}",
    response_model=DataResponse[TaskRead],
    dependencies=[Depends(rate_limit("task"))],
)
async def get_task(task_id: TaskId, response: Response, user: CurrentUser, db: DbDep, tasks: TaskServiceDep):
    """Get a specific task by ID"""
    task = await tasks.get_task(db, task_id, user)
    response.headers["ETag"] = task.etag
    return DataResponse(data=task)


@router.patch(
    "/{task_id}",
    response_model=DataResponse[TaskRead],
    dependencies=[Depends(rate_limit("write"))],
)
async def update_task(
    task_id: TaskId,
    task_data: TaskUpdate,
    response: Response,
    user: CurrentUser,
    db: DbDep,
    tasks: TaskServiceDep,
    if_match: str | None = Header(default=None),
):
    """Apply a partial update. An If-Match ETag turns a stale edit into 409."""
    task = await tasks.update_task(db, task_id, task_data, user, expected_version=parse_if_match(if_match))
    response.headers["ETag"] = task.etag
    return DataResponse(data=task)


@router.delete(
    "/{task_id}",
    response_model=DataResponse[UndoToken],
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit("write"))],
)
async def delete_task(task_id: TaskId, user: CurrentUser, db: DbDep, tasks: TaskServiceDep):
    """Soft-delete a task"""
    return DataResponse(data=await tasks.delete_task(db, task_id, user))


@router.post(
    "/{task_id}/duplicate",
    response_model=DataResponse[TaskRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
async def duplicate_task(
    task_id: TaskId, response: Response, user: CurrentUser, db: DbDep, tasks: TaskServiceDep
):
    task = await tasks.duplicate_task(db, task_id, user)
    response.headers["ETag"] = task.etag
    return DataResponse(data=task)


@router.put(
    "/{task_id}/assign/me",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(rate_limit("write"))],
)
async def assign_to_me(task_id: TaskId, user: CurrentUser, db: DbDep, tasks: TaskServiceDep):
    await tasks.assign_self(db, task_id, user)
