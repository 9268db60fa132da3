"""Request/response schemas. Wire format is camelCase; snake_case is accepted on input."""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    computed_field,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.models import Role, TaskPriority, TaskStatus, as_utc, get_utc_now

T = TypeVar("T")


class APIModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class StrictAPIModel(APIModel):
    """Partial-update bodies: unknown fields are rejected, not ignored."""

    model_config = ConfigDict(extra="forbid")


class ApiResponse(APIModel, Generic[T]):
    success: bool = True
    message: str | None = None
    data: T | None = None
    errors: list[dict[str, Any]] | None = None

    @model_serializer(mode="wrap")
    def _omit_empty(self, handler):
        # data is always sent, null or not
        body = handler(self)
        return {key: value for key, value in body.items() if value is not None or key == "data"}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class Address(APIModel):
    street: str | None = None
    city: str | None = None
    country: str | None = None
    zip_code: str | None = None


class Profile(APIModel):
    avatar: str | None = None
    bio: str | None = Field(default=None, max_length=500)
    phone: str | None = None
    address: Address | None = None


class Theme(str, Enum):
    light = "light"
    dark = "dark"
    auto = "auto"


class NotificationPreferences(APIModel):
    email: bool = True
    push: bool = True


class Preferences(APIModel):
    theme: Theme = Theme.auto
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)


class ProfileUpdate(StrictAPIModel):
    avatar: str | None = None
    bio: str | None = Field(default=None, max_length=500)
    phone: str | None = None
    address: Address | None = None


class NotificationPreferencesUpdate(StrictAPIModel):
    email: bool | None = None
    push: bool | None = None


class PreferencesUpdate(StrictAPIModel):
    theme: Theme | None = None
    notifications: NotificationPreferencesUpdate | None = None


class UserRegister(APIModel):
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=8)
    confirm_password: str
    role: Role = Role.user

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class UserLogin(APIModel):
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class UserUpdate(StrictAPIModel):
    name: str = Field(default=None, min_length=2, max_length=50)
    email: EmailStr = None
    profile: ProfileUpdate | None = None
    preferences: PreferencesUpdate | None = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class PasswordChange(APIModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8)
    confirm_new_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_new_password:
            raise ValueError("New passwords do not match")
        return self


class UserRead(APIModel):
    id: int
    name: str
    email: str
    role: Role
    profile: Profile = Field(default_factory=Profile)
    preferences: Preferences = Field(default_factory=Preferences)
    is_active: bool
    last_login: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None


class CachedUser(UserRead):
    """What the auth layer keeps under ``user:<id>``: the public view plus credential age."""

    password_changed_at: datetime | None = None


class UserSummary(APIModel):
    """How tasks show their creator, assignee and comment authors."""

    id: int
    name: str | None = None
    email: str | None = None
    profile: Profile = Field(default_factory=Profile)


class AuthResult(APIModel):
    user: UserRead
    token: str


class UserEnvelope(APIModel):
    user: UserRead


class TokenEnvelope(APIModel):
    token: str


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class Comment(APIModel):
    user: UserSummary
    text: str
    created_at: datetime


class Attachment(APIModel):
    filename: str | None = None
    url: str | None = None
    size: int | None = None
    mimetype: str | None = None
    uploaded_at: datetime | None = None


def _normalize_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return None
    normalized: list[str] = []
    for tag in tags:
        tag = tag.strip().lower()
        if tag and tag not in normalized:
            normalized.append(tag)
    return normalized


def _future_due_date(value: datetime | None) -> datetime | None:
    if value is not None and as_utc(value) <= get_utc_now():
        raise ValueError("Due date must be in the future")
    return as_utc(value)


class TaskBase(APIModel):
    """Base model with shared fields"""

    title: str = Field(min_length=3, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    status: TaskStatus = TaskStatus.todo
    priority: TaskPriority = TaskPriority.medium
    due_date: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    estimated_hours: float | None = Field(default=None, ge=0, le=1000)
    actual_hours: float = Field(default=0, ge=0)


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    assigned_to: int

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def check_tags(cls, tags: list[str]) -> list[str]:
        if any(len(tag.strip()) > 20 for tag in tags):
            raise ValueError("Tag cannot exceed 20 characters")
        return _normalize_tags(tags)

    @field_validator("due_date")
    @classmethod
    def check_due_date(cls, value):
        return _future_due_date(value)


class TaskUpdate(StrictAPIModel):
    """Schema for updating a task - all fields optional, explicit nulls only where a field may be cleared"""

    title: str = Field(default=None, min_length=3, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    status: TaskStatus = None
    priority: TaskPriority = None
    due_date: datetime | None = None
    assigned_to: int = None
    tags: list[str] = None
    estimated_hours: float | None = Field(default=None, ge=0, le=1000)
    actual_hours: float = Field(default=None, ge=0)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("tags")
    @classmethod
    def check_tags(cls, tags: list[str]) -> list[str]:
        if any(len(tag.strip()) > 20 for tag in tags):
            raise ValueError("Tag cannot exceed 20 characters")
        return _normalize_tags(tags)

    @field_validator("due_date")
    @classmethod
    def check_due_date(cls, value):
        return _future_due_date(value)


class CommentCreate(APIModel):
    text: str = Field(min_length=1, max_length=1000)


class TaskRead(TaskBase):
    """Schema for task responses"""

    id: int
    created_by: UserSummary
    assigned_to: UserSummary
    is_completed: bool
    completed_at: datetime | None = None
    comments: list[Comment] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None

    @computed_field
    @property
    def is_overdue(self) -> bool:
        if self.due_date is None or self.is_completed:
            return False
        return as_utc(self.due_date) < get_utc_now()


class TaskEnvelope(APIModel):
    task: TaskRead


class SortField(str, Enum):
    created_at = "createdAt"
    updated_at = "updatedAt"
    due_date = "dueDate"
    priority = "priority"
    status = "status"
    title = "title"


class TaskQuery(APIModel):
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    assigned_to: int | None = None
    created_by: int | None = None
    tags: list[str] | None = None
    search: str | None = None
    sort_by: SortField = SortField.created_at
    order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return _normalize_tags(value) or None

    @field_validator("search")
    @classmethod
    def blank_search(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value


class TaskPage(APIModel):
    items: list[TaskRead]
    total: int
    page: int
    limit: int

    @computed_field
    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @computed_field
    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @computed_field
    @property
    def has_prev(self) -> bool:
        return self.page > 1


class DashboardStats(APIModel):
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    overdue_tasks: int
    completion_rate: int
    recent_tasks: list[TaskRead]
    tasks_by_status: dict[str, int]
    tasks_by_priority: dict[str, int]
    weekly_activity: dict[str, int]


class CacheHealth(APIModel):
    connected: bool
    l1_size: int = 0
    hit_rate: float = 0
    errors: int = 0


class HealthStatus(APIModel):
    status: str
    timestamp: datetime
    uptime: float
    environment: str
    version: str
    database: str
    cache: CacheHealth
