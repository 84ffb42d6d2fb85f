import logging

from sqlalchemy import func, or_
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.decorators import cached_query
from taskboard.cache.query_cache import QueryCache, search_cache_key
from taskboard.models import Task, TaskAssignee, TaskStar, User
from taskboard.schemas import SortField, TaskFilters, TaskPage, TaskRead
from taskboard.services.task_views import render_tasks

logger = logging.getLogger(__name__)

EXPORT_MAX_ROWS = 1000

_SORT_COLUMNS = {
    SortField.created_at: Task.created_at,
    SortField.updated_at: Task.updated_at,
    SortField.title: Task.title,
    SortField.created_by: User.name,
}


def _filters_key(db, filters: TaskFilters, viewer) -> str:
    return search_cache_key(
        filters.context,
        filters.search,
        filters.page,
        filters.limit,
        filters.sort_by.value,
        filters.sort_order,
        viewer.id,
    )


def _filtered(query, filters: TaskFilters, viewer_id: str):
    query = query.where(Task.is_deleted == False)  # noqa: E712

    term = filters.search.strip().lower()
    if term:
        query = query.where(
            or_(
                func.lower(Task.title).contains(term, autoescape=True),
                func.lower(func.coalesce(Task.description, "")).contains(term, autoescape=True),
            )
        )

    if filters.context == "mine":
        assigned = select(TaskAssignee.task_id).where(TaskAssignee.user_id == viewer_id)
        query = query.where(or_(Task.created_by == viewer_id, Task.id.in_(assigned)))
    elif filters.context == "starred":
        starred = select(TaskStar.task_id).where(TaskStar.user_id == viewer_id)
        query = query.where(Task.id.in_(starred))
    return query


class TaskQueryEngine:
    """Filtered, sorted, paginated task listings behind the query cache."""

    def __init__(self, cache: QueryCache):
        self.cache = cache

    async def fetch(
        self,
        db: AsyncSession,
        filters: TaskFilters,
        viewer,
        offset: int,
        limit: int,
    ) -> tuple[list[TaskRead], int]:
        """Run the listing against the database. Returns (views, total)."""
        count_query = _filtered(select(Task.id), filters, viewer.id).subquery()
        total = (await db.exec(select(func.count()).select_from(count_query))).one()

        column = _SORT_COLUMNS[filters.sort_by]
        order = column.asc() if filters.sort_order == "asc" else column.desc()
        query = _filtered(select(Task), filters, viewer.id)
        if filters.sort_by == SortField.created_by:
            query = query.join(User, User.id == Task.created_by)
        # Task id breaks ties so consecutive pages never overlap.
        query = query.order_by(order, Task.id).offset(offset).limit(limit)

        tasks = (await db.exec(query)).all()
        return await render_tasks(db, list(tasks), viewer.id), total

    @cached_query(_filters_key)
    async def list_tasks(self, db: AsyncSession, filters: TaskFilters, viewer) -> dict:
        """One page of tasks as camelCase JSON, served from the query cache when warm."""
        offset = (filters.page - 1) * filters.limit
        items, total = await self.fetch(db, filters, viewer, offset, filters.limit)
        logger.debug(f"Listed {len(items)} of {total} tasks for {viewer.id} ({filters.context})")
        return TaskPage(
            items=items,
            page=filters.page,
            total=total,
            has_more=filters.page * filters.limit < total,
        )

    async def export_tasks(self, db: AsyncSession, viewer) -> list[TaskRead]:
        """The viewer's own tasks, most recently updated first."""
        filters = TaskFilters(context="mine", sort_by=SortField.updated_at, sort_order="desc")
        items, _ = await self.fetch(db, filters, viewer, 0, EXPORT_MAX_ROWS)
        return items
