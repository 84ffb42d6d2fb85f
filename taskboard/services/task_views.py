from collections import defaultdict

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.models import Task, TaskAssignee, TaskStar, User
from taskboard.schemas import TaskRead, UserRead


def user_read(user: User) -> UserRead:
    return UserRead(
        id=user.id,
        email=user.email,
        name=user.name,
        provider=user.provider,
        created_at=user.created_at,
    )


async def assignee_ids_by_task(db: AsyncSession, task_ids: list[str]) -> dict[str, list[str]]:
    assignees: dict[str, list[str]] = defaultdict(list)
    if not task_ids:
        return assignees
    rows = await db.exec(
        select(TaskAssignee.task_id, TaskAssignee.user_id)
        .where(TaskAssignee.task_id.in_(task_ids))
        .order_by(TaskAssignee.task_id, TaskAssignee.position)
    )
    for task_id, user_id in rows.all():
        assignees[task_id].append(user_id)
    return assignees


async def render_tasks(db: AsyncSession, tasks: list[Task], viewer_id: str) -> list[TaskRead]:
    """Expand task rows into API views with users, assignees and the viewer's star."""
    if not tasks:
        return []
    task_ids = [task.id for task in tasks]
    assignees = await assignee_ids_by_task(db, task_ids)

    user_ids = {task.created_by for task in tasks}
    user_ids |= {task.updated_by for task in tasks if task.updated_by}
    for ids in assignees.values():
        user_ids.update(ids)
    users = {
        user.id: user
        for user in (await db.exec(select(User).where(User.id.in_(user_ids)))).all()
    }

    starred = set(
        (
            await db.exec(
                select(TaskStar.task_id).where(
                    TaskStar.user_id == viewer_id, TaskStar.task_id.in_(task_ids)
                )
            )
        ).all()
    )

    views = []
    for task in tasks:
        creator = users.get(task.created_by)
        updater = users.get(task.updated_by) if task.updated_by else None
        views.append(
            TaskRead(
                id=task.id,
                title=task.title,
                description=task.description or "",
                created_by=user_read(creator) if creator else UserRead(id=task.created_by, email="", name=""),
                created_at=task.created_at,
                updated_by=user_read(updater) if updater else None,
                updated_at=task.updated_at,
                # Unknown assignee ids are skipped, as for a deleted account.
                assignees=[user_read(users[uid]) for uid in assignees.get(task.id, []) if uid in users],
                version=task.version,
                is_starred=task.id in starred,
            )
        )
    return views
