import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class AuthProvider(str, Enum):
    credentials = "credentials"
    google = "google"


class AuditAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"
    duplicate = "duplicate"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    email: str = Field(max_length=320, unique=True, index=True)
    name: str = Field(max_length=50)
    password_hash: str | None = Field(default=None)
    provider: AuthProvider = Field(default=AuthProvider.credentials)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class Task(SQLModel, table=True):
    """A task; soft-deleted rows stay in the table with is_deleted set."""

    __tablename__ = "tasks"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    title: str = Field(min_length=1, max_length=120, index=True)
    description: str | None = Field(default=None, max_length=5000)
    created_by: str = Field(foreign_key="users.id", index=True)
    updated_by: str | None = Field(default=None, foreign_key="users.id")
    version: int = Field(default=1)
    is_deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class TaskAssignee(SQLModel, table=True):
    __tablename__ = "task_assignees"

    task_id: str = Field(foreign_key="tasks.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True, index=True)
    position: int = Field(default=0)


class TaskStar(SQLModel, table=True):
    __tablename__ = "task_stars"
    __table_args__ = (UniqueConstraint("task_id", "user_id", name="uq_task_star"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class TaskAudit(SQLModel, table=True):
    """Append-only record of one mutating operation on a task."""

    __tablename__ = "task_audits"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    by: str = Field(foreign_key="users.id")
    action: AuditAction
    diff: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    meta: dict | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
