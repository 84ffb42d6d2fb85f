from fastapi import APIRouter, Depends, status

from taskboard.dependencies import CurrentUser, DbDep, StarServiceDep, TaskId, csrf_protect, rate_limit

router = APIRouter(
    prefix="/tasks",
    tags=["stars"],
    dependencies=[Depends(csrf_protect), Depends(rate_limit("star"))],
)


@router.put("/{task_id}/star", status_code=status.HTTP_204_NO_CONTENT)
async def star_task(task_id: TaskId, user: CurrentUser, db: DbDep, stars: StarServiceDep):
    """Star a task; starring twice is a no-op"""
    await stars.add_star(db, task_id, user)


@router.delete("/{task_id}/star", status_code=status.HTTP_204_NO_CONTENT)
async def unstar_task(task_id: TaskId, user: CurrentUser, db: DbDep, stars: StarServiceDep):
    await stars.remove_star(db, task_id, user)
