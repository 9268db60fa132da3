"""
Row-level task rules, as plain functions over a Task (or its cached read model).

Every task mutation goes through ``apply_task_changes`` so that the completion
flag can never drift from the status.
"""

from datetime import datetime
from typing import Any

from app.core.errors import AuthorizationError
from app.models import Task, TaskStatus


def sync_completion(task: Task, now: datetime) -> None:
    """is_completed mirrors status == done; completed_at follows the transition."""
    if task.status == TaskStatus.done:
        if not task.is_completed:
            task.is_completed = True
            task.completed_at = now
    else:
        task.is_completed = False
        task.completed_at = None


def apply_task_changes(task: Task, changes: dict[str, Any], now: datetime) -> Task:
    for field, value in changes.items():
        setattr(task, field, value)
    sync_completion(task, now)
    task.updated_at = now
    return task


def _user_id(value) -> int:
    # read models carry a user summary where the table row has the id
    return getattr(value, "id", value)


def is_creator(task, user_id: int) -> bool:
    return _user_id(task.created_by) == user_id


def is_assignee(task, user_id: int) -> bool:
    return _user_id(task.assigned_to) == user_id


def ensure_can_view(task, user_id: int) -> None:
    if not (is_creator(task, user_id) or is_assignee(task, user_id)):
        raise AuthorizationError("You do not have permission to view this task")


def ensure_can_modify(task, user_id: int, action: str = "update") -> None:
    if not is_creator(task, user_id):
        raise AuthorizationError(f"You can only {action} tasks you created")


def ensure_can_comment(task, user_id: int) -> None:
    if not (is_creator(task, user_id) or is_assignee(task, user_id)):
        raise AuthorizationError("You cannot comment on this task")
