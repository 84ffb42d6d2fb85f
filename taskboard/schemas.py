import re
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Literal, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from taskboard.models import AuthProvider

T = TypeVar("T")

ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")

TITLE_MAX_LENGTH = 120
DESCRIPTION_MAX_LENGTH = 5000
MAX_ASSIGNEES = 20
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
PASSWORD_MIN_LENGTH = 8
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_valid_id(value: str) -> bool:
    return bool(ID_PATTERN.match(value or ""))


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class DataResponse(ApiModel, Generic[T]):
    data: T


# ── Users & auth ────────────────────────────────────────


class UserRead(ApiModel):
    id: str
    email: str
    name: str
    provider: AuthProvider = AuthProvider.credentials
    created_at: datetime | None = None

    @field_serializer("created_at")
    def _utc(self, value: datetime | None):
        return as_utc(value)


class SessionUser(ApiModel):
    """Denormalized user snapshot stored inside a session."""

    id: str
    email: str
    name: str
    provider: AuthProvider = AuthProvider.credentials


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN_LENGTH)


class SignupRequest(ApiModel):
    name: str = Field(min_length=NAME_MIN_LENGTH, max_length=NAME_MAX_LENGTH)
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN_LENGTH)
    confirm_password: str = Field(min_length=1)

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        if not PASSWORD_PATTERN.match(v):
            raise ValueError("Password must contain an uppercase letter, a lowercase letter and a digit")
        return v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH)
    confirm_password: str = Field(min_length=1)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        if not PASSWORD_PATTERN.match(v):
            raise ValueError("Password must contain an uppercase letter, a lowercase letter and a digit")
        return v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class AuthResult(ApiModel):
    user: UserRead
    session_token: str | None = None


class AuthResponse(ApiModel):
    data: AuthResult
    csrf_token: str


class RefreshResult(ApiModel):
    message: str = "Session refreshed"
    session_expires_at: datetime
    refreshed: bool = True


# ── Tasks ───────────────────────────────────────────────


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v


class TaskUpdate(BaseModel):
    """Partial update; only fields present in the request are applied."""

    title: str | None = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    assignees: list[str] | None = Field(default=None, max_length=MAX_ASSIGNEES)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("assignees")
    @classmethod
    def check_assignees(cls, v: list[str] | None):
        if v is None:
            return v
        for user_id in v:
            if not is_valid_id(user_id):
                raise ValueError(f"Invalid user id: {user_id}")
        if len(set(v)) != len(v):
            raise ValueError("Duplicate assignees are not allowed")
        return v

    @model_validator(mode="after")
    def at_least_one_field(self):
        if not self.model_fields_set & {"title", "description", "assignees"}:
            raise ValueError("At least one field must be provided for update")
        if "title" in self.model_fields_set and self.title is None:
            raise ValueError("Title cannot be null")
        if "assignees" in self.model_fields_set and self.assignees is None:
            raise ValueError("Assignees cannot be null")
        return self


class TaskRead(ApiModel):
    id: str
    title: str
    description: str = ""
    created_by: UserRead
    created_at: datetime
    updated_by: UserRead | None = None
    updated_at: datetime
    assignees: list[UserRead] = []
    version: int
    is_starred: bool = False

    @field_serializer("created_at", "updated_at")
    def _utc(self, value: datetime):
        return as_utc(value)

    @property
    def etag(self) -> str:
        return make_etag(self.version, self.updated_at)


class TaskPage(ApiModel):
    items: list[TaskRead]
    page: int
    total: int
    has_more: bool


class UndoToken(ApiModel):
    undo_token: str


class SortField(str, Enum):
    created_at = "createdAt"
    updated_at = "updatedAt"
    title = "title"
    created_by = "createdBy"


class TaskFilters(BaseModel):
    search: str = ""
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    sort_by: SortField = SortField.updated_at
    sort_order: Literal["asc", "desc"] = "desc"
    context: Literal["all", "mine", "starred"] = "all"

    @classmethod
    def from_sort(cls, sort: str | None, **kwargs) -> "TaskFilters":
        """Build filters from a ``field:direction`` sort string."""
        field, _, direction = (sort or "updatedAt:desc").partition(":")
        return cls(sort_by=field, sort_order=direction or "desc", **kwargs)


class DeletedTaskRef(ApiModel):
    id: str
    deleted_at: datetime
    version: int

    @field_serializer("deleted_at")
    def _utc(self, value: datetime):
        return as_utc(value)


class SyncSummary(ApiModel):
    total_updated: int
    total_deleted: int
    has_more: bool


class SyncResult(ApiModel):
    since: datetime
    current_timestamp: datetime
    updated_tasks: list[TaskRead]
    deleted_tasks: list[DeletedTaskRef]
    summary: SyncSummary


# ── ETag ────────────────────────────────────────────────

_IF_MATCH = re.compile(r'^(?:W/)?"(\d+)-')


def make_etag(version: int, updated_at: datetime) -> str:
    return f'"{version}-{as_utc(updated_at).isoformat()}"'


def parse_if_match(header: str | None) -> int | None:
    """Extract the expected version from an If-Match header, if well formed."""
    if not header:
        return None
    match = _IF_MATCH.match(header.strip())
    return int(match.group(1)) if match else None
