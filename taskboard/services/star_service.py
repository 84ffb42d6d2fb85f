import logging

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.query_cache import QueryCache
from taskboard.core.errors import NotFound
from taskboard.models import Task, TaskStar
from taskboard.schemas import TaskRead
from taskboard.services.events import EventHub
from taskboard.services.task_views import render_tasks

logger = logging.getLogger(__name__)


class StarService:
    """Per-user stars. Both directions are idempotent."""

    def __init__(self, cache: QueryCache, events: EventHub):
        self.cache = cache
        self.events = events

    @staticmethod
    async def _ensure_active(db: AsyncSession, task_id: str) -> None:
        task = await db.get(Task, task_id, populate_existing=True)
        if task is None or task.is_deleted:
            raise NotFound()

    async def is_starred(self, db: AsyncSession, task_id: str, user_id: str) -> bool:
        result = await db.exec(
            select(TaskStar.id).where(TaskStar.task_id == task_id, TaskStar.user_id == user_id)
        )
        return result.first() is not None

    async def add_star(self, db: AsyncSession, task_id: str, actor) -> bool:
        """Star a task. Returns False when it was already starred."""
        await self._ensure_active(db, task_id)
        if await self.is_starred(db, task_id, actor.id):
            return False

        db.add(TaskStar(task_id=task_id, user_id=actor.id))
        try:
            await db.commit()
        except IntegrityError:
            # Lost a race against the same user's concurrent star.
            await db.rollback()
            return False

        await self.cache.invalidate()
        self.events.star_added(task_id, actor.id)
        logger.info(f"Task starred: {task_id} by {actor.email}")
        return True

    async def remove_star(self, db: AsyncSession, task_id: str, actor) -> bool:
        """Unstar a task. Returns False when there was nothing to remove.

        Works on deleted or unknown tasks too, so a stale star can always be cleared.
        """
        result = await db.exec(
            delete(TaskStar)
            .where(TaskStar.task_id == task_id, TaskStar.user_id == actor.id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if not result.rowcount:
            return False

        await self.cache.invalidate()
        self.events.star_removed(task_id, actor.id)
        logger.info(f"Task unstarred: {task_id} by {actor.email}")
        return True

    async def starred_tasks(self, db: AsyncSession, viewer) -> list[TaskRead]:
        tasks = (
            await db.exec(
                select(Task)
                .join(TaskStar, TaskStar.task_id == Task.id)
                .where(TaskStar.user_id == viewer.id, Task.is_deleted == False)  # noqa: E712
                .order_by(Task.updated_at.desc(), Task.id)
            )
        ).all()
        return await render_tasks(db, list(tasks), viewer.id)

    async def star_count(self, db: AsyncSession, task_id: str) -> int:
        result = await db.exec(
            select(func.count()).select_from(TaskStar).where(TaskStar.task_id == task_id)
        )
        return result.one()
