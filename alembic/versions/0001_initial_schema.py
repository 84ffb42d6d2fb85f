"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column(
            "provider",
            sa.Enum("credentials", "google", name="authprovider"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=5000), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["updated_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tasks_title"), "tasks", ["title"])
    op.create_index(op.f("ix_tasks_created_by"), "tasks", ["created_by"])
    op.create_index(op.f("ix_tasks_is_deleted"), "tasks", ["is_deleted"])
    op.create_index(op.f("ix_tasks_created_at"), "tasks", ["created_at"])
    op.create_index(op.f("ix_tasks_updated_at"), "tasks", ["updated_at"])

    op.create_table(
        "task_assignees",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("task_id", "user_id"),
    )
    op.create_index(op.f("ix_task_assignees_user_id"), "task_assignees", ["user_id"])

    op.create_table(
        "task_stars",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", "user_id", name="uq_task_star"),
    )
    op.create_index(op.f("ix_task_stars_task_id"), "task_stars", ["task_id"])
    op.create_index(op.f("ix_task_stars_user_id"), "task_stars", ["user_id"])

    op.create_table(
        "task_audits",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("by", sa.String(), nullable=False),
        sa.Column(
            "action",
            sa.Enum("create", "update", "delete", "duplicate", name="auditaction"),
            nullable=False,
        ),
        sa.Column("diff", sa.JSON(), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["by"], ["users.id"]),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_task_audits_task_id"), "task_audits", ["task_id"])


def downgrade() -> None:
    op.drop_index(op.f("ix_task_audits_task_id"), table_name="task_audits")
    op.drop_table("task_audits")
    op.drop_index(op.f("ix_task_stars_user_id"), table_name="task_stars")
    op.drop_index(op.f("ix_task_stars_task_id"), table_name="task_stars")
    op.drop_table("task_stars")
    op.drop_index(op.f("ix_task_assignees_user_id"), table_name="task_assignees")
    op.drop_table("task_assignees")
    for column in ("updated_at", "created_at", "is_deleted", "created_by", "title"):
        op.drop_index(op.f(f"ix_tasks_{column}"), table_name="tasks")
    op.drop_table("tasks")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
    sa.Enum(name="auditaction").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="authprovider").drop(op.get_bind(), checkfirst=True)
