import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.layer import EphemeralStore
from taskboard.cache.query_cache import QueryCache
from taskboard.core.errors import InvalidInput, NotFound, StoreUnavailable, VersionConflict
from taskboard.models import AuditAction, Task, TaskAssignee, TaskAudit, User, get_utc_now
from taskboard.schemas import (
    MAX_ASSIGNEES,
    TITLE_MAX_LENGTH,
    DeletedTaskRef,
    SyncResult,
    SyncSummary,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UndoToken,
    as_utc,
)
from taskboard.services.events import EventHub
from taskboard.services.security import generate_token
from taskboard.services.task_views import assignee_ids_by_task, render_tasks

logger = logging.getLogger(__name__)

UNDO_PREFIX = "undo:"
COPY_SUFFIX = " (copy)"
SYNC_UPDATED_LIMIT = 100
SYNC_DELETED_LIMIT = 50


def copy_title(title: str) -> str:
    base = title[: TITLE_MAX_LENGTH - len(COPY_SUFFIX)]
    return f"{base}{COPY_SUFFIX}"


def _dump(view: TaskRead) -> dict:
    return view.model_dump(mode="json", by_alias=True)


class TaskService:
    """
    Task mutations with optimistic concurrency.

    Every mutation commits first, then drops the cached list queries, then
    publishes its event. ``version`` goes up by exactly one per update or
    self-assignment; deletes leave it alone.
    """

    def __init__(
        self,
        store: EphemeralStore,
        cache: QueryCache,
        events: EventHub,
        undo_ttl_seconds: int = 600,
    ):
        self.store = store
        self.cache = cache
        self.events = events
        self.undo_ttl_seconds = undo_ttl_seconds

    @staticmethod
    async def _get_active(db: AsyncSession, task_id: str) -> Task:
        task = await db.get(Task, task_id, populate_existing=True)
        if task is None or task.is_deleted:
            raise NotFound()
        return task

    @staticmethod
    async def _check_users_exist(db: AsyncSession, user_ids: list[str]) -> None:
        found = set((await db.exec(select(User.id).where(User.id.in_(user_ids)))).all())
        missing = [uid for uid in user_ids if uid not in found]
        if missing:
            raise InvalidInput(f"Unknown assignee: {missing[0]}", field="assignees")

    async def get_task(self, db: AsyncSession, task_id: str, viewer) -> TaskRead:
        task = await self._get_active(db, task_id)
        return (await render_tasks(db, [task], viewer.id))[0]

    async def create_task(self, db: AsyncSession, task_data: TaskCreate, actor) -> TaskRead:
        task = Task(
            title=task_data.title,
            description=task_data.description,
            created_by=actor.id,
            version=1,
        )
        db.add(task)
        await db.flush()
        db.add(
            TaskAudit(
                task_id=task.id,
                by=actor.id,
                action=AuditAction.create,
                diff={"title": task.title, "description": task.description},
            )
        )
        await db.commit()
        await db.refresh(task)

        view = (await render_tasks(db, [task], actor.id))[0]
        await self.cache.invalidate()
        self.events.task_created(_dump(view))
        logger.info(f"Task created: {task.id} by {actor.email}")
        return view

    async def update_task(
        self,
        db: AsyncSession,
        task_id: str,
        task_data: TaskUpdate,
        actor,
        expected_version: int | None = None,
    ) -> TaskRead:
        task = await self._get_active(db, task_id)
        seen_version = task.version
        if expected_version is not None and expected_version != seen_version:
            logger.warning(f"Version conflict on {task_id}: expected {expected_version}, current {seen_version}")
            raise VersionConflict()

        patch = task_data.model_dump(exclude_unset=True)
        if patch.get("assignees"):
            await self._check_users_exist(db, patch["assignees"])
        now = get_utc_now()
        values = {"updated_by": actor.id, "version": seen_version + 1, "updated_at": now}
        for name in ("title", "description"):
            if name in patch:
                values[name] = patch[name]

        # Compare-and-swap on version: a concurrent writer makes this match nothing.
        result = await db.exec(
            update(Task)
            .where(Task.id == task_id, Task.version == seen_version, Task.is_deleted == False)  # noqa: E712
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(f"Version conflict on {task_id}: lost race at version {seen_version}")
            raise VersionConflict()

        if "assignees" in patch:
            await db.exec(
                delete(TaskAssignee)
                .where(TaskAssignee.task_id == task_id)
                .execution_options(synchronize_session=False)
            )
            for position, user_id in enumerate(patch["assignees"]):
                db.add(TaskAssignee(task_id=task_id, user_id=user_id, position=position))

        new_version = seen_version + 1
        db.add(
            TaskAudit(
                task_id=task_id,
                by=actor.id,
                action=AuditAction.update,
                diff={**patch, "updatedBy": actor.id, "version": new_version},
            )
        )
        await db.commit()
        await db.refresh(task)

        view = (await render_tasks(db, [task], actor.id))[0]
        await self.cache.invalidate()
        self.events.task_updated(
            task_id,
            {
                **patch,
                "updatedBy": actor.id,
                "version": view.version,
                "updatedAt": as_utc(view.updated_at).isoformat(),
            },
        )
        logger.info(f"Task updated: {task_id} to version {new_version} by {actor.email}")
        return view

    async def delete_task(self, db: AsyncSession, task_id: str, actor) -> UndoToken:
        now = get_utc_now()
        result = await db.exec(
            update(Task)
            .where(Task.id == task_id, Task.is_deleted == False)  # noqa: E712
            .values(is_deleted=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise NotFound()

        db.add(
            TaskAudit(
                task_id=task_id,
                by=actor.id,
                action=AuditAction.delete,
                diff={"deletedAt": now.isoformat()},
            )
        )
        await db.commit()

        undo_token = generate_token()
        expires_at = now + timedelta(seconds=self.undo_ttl_seconds)
        try:
            await self.store.set(
                f"{UNDO_PREFIX}{undo_token}",
                json.dumps({"taskId": task_id, "by": actor.id, "expiresAt": expires_at.isoformat()}),
                self.undo_ttl_seconds,
            )
        except StoreUnavailable as e:
            logger.error(f"Failed to store undo token for {task_id}: {e}")

        await self.cache.invalidate()
        self.events.task_deleted(task_id)
        logger.info(f"Task deleted: {task_id} by {actor.email}")
        return UndoToken(undo_token=undo_token)

    async def duplicate_task(self, db: AsyncSession, task_id: str, actor) -> TaskRead:
        source = await self._get_active(db, task_id)
        source_assignees = (await assignee_ids_by_task(db, [source.id])).get(source.id, [])

        duplicate = Task(
            title=copy_title(source.title),
            description=source.description,
            created_by=actor.id,
            version=1,
        )
        db.add(duplicate)
        await db.flush()
        for position, user_id in enumerate(source_assignees):
            db.add(TaskAssignee(task_id=duplicate.id, user_id=user_id, position=position))
        db.add(
            TaskAudit(
                task_id=duplicate.id,
                by=actor.id,
                action=AuditAction.duplicate,
                diff={"sourceTaskId": source.id},
            )
        )
        await db.commit()
        await db.refresh(duplicate)

        view = (await render_tasks(db, [duplicate], actor.id))[0]
        await self.cache.invalidate()
        self.events.task_duplicated(source.id, _dump(view))
        logger.info(f"Task duplicated: {source.id} -> {duplicate.id} by {actor.email}")
        return view

    async def assign_self(self, db: AsyncSession, task_id: str, actor) -> None:
        await self._get_active(db, task_id)
        assignees = (await assignee_ids_by_task(db, [task_id])).get(task_id, [])
        if actor.id in assignees:
            return
        if len(assignees) >= MAX_ASSIGNEES:
            raise InvalidInput(f"A task cannot have more than {MAX_ASSIGNEES} assignees", field="assignees")

        result = await db.exec(
            update(Task)
            .where(Task.id == task_id, Task.is_deleted == False)  # noqa: E712
            .values(version=Task.version + 1, updated_by=actor.id, updated_at=get_utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise NotFound()

        new_assignees = [*assignees, actor.id]
        db.add(TaskAssignee(task_id=task_id, user_id=actor.id, position=len(assignees)))
        db.add(
            TaskAudit(
                task_id=task_id,
                by=actor.id,
                action=AuditAction.update,
                diff={"assignees": new_assignees},
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent request assigned the same user first.
            await db.rollback()
            return

        await self.cache.invalidate()
        self.events.task_assigned(task_id, actor.id)
        logger.info(f"User assigned to task: {actor.email} -> {task_id}")

    async def sync(self, db: AsyncSession, since: datetime, viewer) -> SyncResult:
        """Tasks changed after ``since``, for clients catching up after a reconnect."""
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        since = since.astimezone(timezone.utc)

        updated = (
            await db.exec(
                select(Task)
                .where(Task.updated_at > since, Task.is_deleted == False)  # noqa: E712
                .order_by(Task.updated_at.desc())
                .limit(SYNC_UPDATED_LIMIT)
            )
        ).all()
        deleted = (
            await db.exec(
                select(Task)
                .where(Task.updated_at > since, Task.is_deleted == True)  # noqa: E712
                .order_by(Task.updated_at.desc())
                .limit(SYNC_DELETED_LIMIT)
            )
        ).all()

        views = await render_tasks(db, list(updated), viewer.id)
        return SyncResult(
            since=since,
            current_timestamp=get_utc_now(),
            updated_tasks=views,
            deleted_tasks=[
                DeletedTaskRef(id=task.id, deleted_at=task.updated_at, version=task.version)
                for task in deleted
            ],
            summary=SyncSummary(
                total_updated=len(views),
                total_deleted=len(deleted),
                has_more=len(views) == SYNC_UPDATED_LIMIT or len(deleted) == SYNC_DELETED_LIMIT,
            ),
        )
