"""Filter, sort and pagination building for task lists."""

import json
from typing import Sequence

from sqlalchemy import String, case, cast, func, or_
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.models import Task, TaskPriority, TaskStatus, User
from app.schemas import SortField, TaskPage, TaskQuery, TaskRead, UserSummary

LIKE_ESCAPE = "\\"

PRIORITY_RANK = {
    TaskPriority.low: 0,
    TaskPriority.medium: 1,
    TaskPriority.high: 2,
    TaskPriority.critical: 3,
}

STATUS_RANK = {
    TaskStatus.todo: 0,
    TaskStatus.in_progress: 1,
    TaskStatus.review: 2,
    TaskStatus.done: 3,
}

SORT_COLUMNS = {
    SortField.created_at: col(Task.created_at),
    SortField.updated_at: col(Task.updated_at),
    SortField.due_date: col(Task.due_date),
    SortField.title: col(Task.title),
    SortField.priority: case({p.value: rank for p, rank in PRIORITY_RANK.items()}, value=col(Task.priority)),
    SortField.status: case({s.value: rank for s, rank in STATUS_RANK.items()}, value=col(Task.status)),
}


def escape_like(term: str) -> str:
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def tag_clause(tag: str):
    """Tags are stored as a JSON array; match the encoded element, quotes included."""
    pattern = f"%{escape_like(json.dumps(tag))}%"
    return cast(Task.tags, String).like(pattern, escape=LIKE_ESCAPE)


def build_task_filters(query: TaskQuery) -> list:
    filters = [col(Task.is_deleted).is_(False)]

    if query.status:
        filters.append(col(Task.status) == query.status)
    if query.priority:
        filters.append(col(Task.priority) == query.priority)
    if query.assigned_to is not None:
        filters.append(col(Task.assigned_to) == query.assigned_to)
    if query.created_by is not None:
        filters.append(col(Task.created_by) == query.created_by)

    for tag in query.tags or []:
        filters.append(tag_clause(tag))

    if query.search:
        term = f"%{escape_like(query.search.strip())}%"
        filters.append(
            or_(
                col(Task.title).ilike(term, escape=LIKE_ESCAPE),
                col(Task.description).ilike(term, escape=LIKE_ESCAPE),
            )
        )
    return filters


def build_sort(sort_by: SortField, order: str) -> list:
    column = SORT_COLUMNS[sort_by]
    tiebreak = col(Task.id)
    if order == "asc":
        return [column.asc(), tiebreak.asc()]
    return [column.desc(), tiebreak.desc()]


async def find_tasks(db: AsyncSession, query: TaskQuery) -> TaskPage:
    filters = build_task_filters(query)

    count_stmt = select(func.count()).select_from(Task).where(*filters)
    total = (await db.exec(count_stmt)).one()

    stmt = (
        select(Task)
        .where(*filters)
        .order_by(*build_sort(query.sort_by, query.order))
        .offset((query.page - 1) * query.limit)
        .limit(query.limit)
    )
    tasks = (await db.exec(stmt)).all()

    return TaskPage(
        items=await load_task_views(db, tasks),
        total=total,
        page=query.page,
        limit=query.limit,
    )


async def load_task_views(db: AsyncSession, tasks: Sequence[Task]) -> list[TaskRead]:
    """Task views with creator, assignee and comment authors filled in (one user query)."""
    user_ids: set[int] = set()
    for task in tasks:
        user_ids.update((task.created_by, task.assigned_to))
        user_ids.update(comment["user"] for comment in task.comments)

    users: dict[int, UserSummary] = {}
    if user_ids:
        rows = (await db.exec(select(User).where(col(User.id).in_(user_ids)))).all()
        users = {user.id: UserSummary.model_validate(user) for user in rows}

    def summary(user_id: int) -> UserSummary:
        return users.get(user_id) or UserSummary(id=user_id)

    views = []
    for task in tasks:
        data = task.model_dump()
        data["created_by"] = summary(task.created_by)
        data["assigned_to"] = summary(task.assigned_to)
        data["comments"] = [
            {**comment, "user": summary(comment["user"])} for comment in task.comments
        ]
        views.append(TaskRead.model_validate(data))
    return views
