"""
Dashboard statistics for one user, seen as assignee.

Each figure is its own query on its own session so the eight of them run
concurrently.
"""

import asyncio
from datetime import date, datetime, timedelta

from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from app.models import Task, TaskStatus, get_utc_now
from app.schemas import DashboardStats, TaskRead
from app.services.task_query import load_task_views

RECENT_LIMIT = 5
ACTIVITY_DAYS = 7


def _day_key(value) -> str:
    # SQLite's date() yields text, PostgreSQL's a date
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)[:10]


class DashboardAggregator:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _scope(self, user_id: int) -> list:
        return [col(Task.assigned_to) == user_id, col(Task.is_deleted).is_(False)]

    async def _count(self, user_id: int, *extra) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count()).select_from(Task).where(*self._scope(user_id), *extra)
            return (await db.exec(stmt)).one()

    async def _group_by(self, user_id: int, column, *extra) -> dict[str, int]:
        async with self.session_factory() as db:
            stmt = (
                select(column, func.count())
                .where(*self._scope(user_id), *extra)
                .group_by(column)
            )
            rows = (await db.exec(stmt)).all()
        return {getattr(key, "value", key): count for key, count in rows}

    async def _recent(self, user_id: int) -> list[TaskRead]:
        async with self.session_factory() as db:
            stmt = (
                select(Task)
                .where(*self._scope(user_id))
                .order_by(col(Task.created_at).desc(), col(Task.id).desc())
                .limit(RECENT_LIMIT)
            )
            tasks = (await db.exec(stmt)).all()
            return await load_task_views(db, tasks)

    async def _weekly_activity(self, user_id: int, since: datetime) -> dict[str, int]:
        day = func.date(Task.updated_at)
        async with self.session_factory() as db:
            stmt = (
                select(day, func.count())
                .where(*self._scope(user_id), col(Task.updated_at) >= since)
                .group_by(day)
                .order_by(day)
            )
            rows = (await db.exec(stmt)).all()
        return {_day_key(key): count for key, count in rows}

    async def collect(self, user_id: int) -> DashboardStats:
        now = get_utc_now()
        week_start = (now - timedelta(days=ACTIVITY_DAYS)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )

        (
            total,
            completed,
            in_progress,
            overdue,
            recent,
            by_status,
            by_priority,
            weekly,
        ) = await asyncio.gather(
            self._count(user_id),
            self._count(user_id, col(Task.status) == TaskStatus.done),
            self._count(user_id, col(Task.status) == TaskStatus.in_progress),
            self._count(
                user_id,
                col(Task.due_date) < now,
                col(Task.status) != TaskStatus.done,
            ),
            self._recent(user_id),
            self._group_by(user_id, col(Task.status)),
            self._group_by(user_id, col(Task.priority)),
            self._weekly_activity(user_id, week_start),
        )

        return DashboardStats(
            total_tasks=total,
            completed_tasks=completed,
            in_progress_tasks=in_progress,
            overdue_tasks=overdue,
            completion_rate=round(completed / total * 100) if total else 0,
            recent_tasks=recent,
            tasks_by_status=by_status,
            tasks_by_priority=by_priority,
            weekly_activity=weekly,
        )
