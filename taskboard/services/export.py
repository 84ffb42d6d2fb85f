import json
from datetime import date
from enum import Enum

import pandas as pd

from taskboard.schemas import TaskRead, as_utc

BOM = "\ufeff"

EXPORT_COLUMNS = [
    "id",
    "title",
    "description",
    "createdByName",
    "createdAt",
    "updatedByName",
    "updatedAt",
    "isStarred",
    "isMine",
    "isAssignedToMe",
]


class ExportFormat(str, Enum):
    csv = "csv"
    json = "json"
    excel = "excel"


def export_filename(fmt: ExportFormat, today: date | None = None) -> str:
    today = today or date.today()
    return f"my-tasks-{today.isoformat()}.{fmt.value}"


def export_row(task: TaskRead, viewer_id: str) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description or "",
        "createdByName": task.created_by.name,
        "createdAt": as_utc(task.created_at).isoformat(),
        "updatedByName": task.updated_by.name if task.updated_by else "",
        "updatedAt": as_utc(task.updated_at).isoformat(),
        "isStarred": task.is_starred,
        "isMine": task.created_by.id == viewer_id,
        "isAssignedToMe": any(a.id == viewer_id for a in task.assignees),
    }


def render_csv(tasks: list[TaskRead], viewer_id: str) -> str:
    """CSV with a UTF-8 BOM so spreadsheet apps detect the encoding."""
    df = pd.DataFrame([export_row(task, viewer_id) for task in tasks], columns=EXPORT_COLUMNS)
    for flag in ("isStarred", "isMine", "isAssignedToMe"):
        df[flag] = df[flag].map({True: "true", False: "false"})
    return BOM + df.to_csv(index=False, lineterminator="\n")


def render_json(tasks: list[TaskRead], viewer_id: str) -> str:
    return json.dumps([export_row(task, viewer_id) for task in tasks], indent=2, ensure_ascii=False)


def render_export(fmt: ExportFormat, tasks: list[TaskRead], viewer_id: str) -> tuple[str, str]:
    """Returns (body, media type)."""
    if fmt == ExportFormat.json:
        return render_json(tasks, viewer_id), "application/json; charset=utf-8"
    # Excel reads BOM-prefixed CSV directly.
    return render_csv(tasks, viewer_id), "text/csv; charset=utf-8"
