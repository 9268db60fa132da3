import logging

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache import keys
from app.cache.decorators import cached, expires
from app.cache.layer import CacheLayer
from app.core.config import Settings
from app.core.errors import NotFoundError
from app.models import Task, TaskStatus, User, get_utc_now
from app.schemas import (
    CommentCreate,
    DashboardStats,
    TaskCreate,
    TaskPage,
    TaskQuery,
    TaskRead,
    TaskUpdate,
)
from app.services.dashboard import DashboardAggregator
from app.services.task_query import find_tasks, load_task_views
from app.services.task_rules import (
    apply_task_changes,
    ensure_can_comment,
    ensure_can_modify,
    ensure_can_view,
    sync_completion,
)

logger = logging.getLogger(__name__)


class TaskService:
    def __init__(
        self,
        db: AsyncSession,
        cache: CacheLayer,
        settings: Settings,
        session_factory: async_sessionmaker,
    ):
        self.db = db
        self.cache = cache
        self.settings = settings
        self.session_factory = session_factory

    async def _get_live_task(self, task_id: int) -> Task:
        task = await self.db.get(Task, task_id)
        if not task or task.is_deleted:
            raise NotFoundError("Task not found")
        return task

    async def _ensure_user_exists(self, user_id: int):
        if not await self.db.get(User, user_id):
            raise NotFoundError("Assigned user not found")

    async def _save(self, task: Task) -> TaskRead:
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)
        return (await load_task_views(self.db, [task]))[0]

    async def clear_task_caches(self, *user_ids: int | None):
        """Drop every list page plus the per-user views of the users involved."""
        await self.cache.delete_pattern(keys.ALL_TASK_LISTS)
        for user_id in {uid for uid in user_ids if uid is not None}:
            await self.cache.delete_pattern(keys.my_tasks_pattern(user_id))
            await self.cache.delete(keys.dashboard(user_id))

    async def create_task(self, data: TaskCreate, creator_id: int) -> TaskRead:
        await self._ensure_user_exists(data.assigned_to)

        now = get_utc_now()
        task = Task(
            **data.model_dump(),
            created_by=creator_id,
            created_at=now,
            updated_at=now,
        )
        sync_completion(task, now)
        result = await self._save(task)

        await self.clear_task_caches(creator_id, task.assigned_to)
        logger.info("Task created (id=%s, by=%s, assignee=%s)", task.id, creator_id, task.assigned_to)
        return result

    @cached(lambda query, user_id: keys.task_list(user_id, query), "cache_ttl_task_list", model=TaskPage)
    async def get_tasks(self, query: TaskQuery, user_id: int) -> TaskPage:
        return await find_tasks(self.db, query)

    @cached(lambda task_id: keys.task(task_id), "cache_ttl_task", model=TaskRead)
    async def _load_task(self, task_id: int) -> TaskRead | None:
        task = await self.db.get(Task, task_id)
        if not task or task.is_deleted:
            return None
        return (await load_task_views(self.db, [task]))[0]

    async def get_task(self, task_id: int, user_id: int) -> TaskRead:
        task = await self._load_task(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        ensure_can_view(task, user_id)
        return task

    @expires(lambda task_id, *_, **__: keys.task(task_id))
    async def update_task(self, task_id: int, changes: TaskUpdate, user_id: int) -> TaskRead:
        task = await self._get_live_task(task_id)
        ensure_can_modify(task, user_id, "update")

        update_data = changes.model_dump(exclude_unset=True)
        previous_assignee = task.assigned_to
        if "assigned_to" in update_data and update_data["assigned_to"] != previous_assignee:
            await self._ensure_user_exists(update_data["assigned_to"])

        apply_task_changes(task, update_data, get_utc_now())
        result = await self._save(task)

        await self.clear_task_caches(task.created_by, previous_assignee, task.assigned_to)
        logger.info("Task updated (id=%s, by=%s, fields=%s)", task_id, user_id, sorted(update_data))
        return result

    @expires(lambda task_id, *_, **__: keys.task(task_id))
    async def delete_task(self, task_id: int, user_id: int) -> None:
        task = await self._get_live_task(task_id)
        ensure_can_modify(task, user_id, "delete")

        now = get_utc_now()
        task.is_deleted = True
        task.updated_at = now
        await self._save(task)

        await self.clear_task_caches(task.created_by, task.assigned_to)
        logger.info("Task deleted (id=%s, by=%s)", task_id, user_id)

    @expires(lambda task_id, *_, **__: keys.task(task_id))
    async def complete_task(self, task_id: int, user_id: int) -> TaskRead:
        task = await self._get_live_task(task_id)
        ensure_can_modify(task, user_id, "update")

        apply_task_changes(task, {"status": TaskStatus.done}, get_utc_now())
        result = await self._save(task)

        await self.clear_task_caches(task.created_by, task.assigned_to)
        logger.info("Task completed (id=%s, by=%s)", task_id, user_id)
        return result

    @expires(lambda task_id, *_, **__: keys.task(task_id))
    async def add_comment(self, task_id: int, comment: CommentCreate, user_id: int) -> TaskRead:
        task = await self._get_live_task(task_id)
        ensure_can_comment(task, user_id)

        now = get_utc_now()
        # JSON columns only track reassignment
        task.comments = [
            *task.comments,
            {"user": user_id, "text": comment.text, "created_at": now.isoformat()},
        ]
        task.updated_at = now
        result = await self._save(task)

        await self.clear_task_caches(task.created_by, task.assigned_to)
        logger.info("Comment added (task=%s, by=%s)", task_id, user_id)
        return result

    @cached(lambda user_id, query: keys.my_tasks(user_id, query), "cache_ttl_task_list", model=TaskPage)
    async def get_my_tasks(self, user_id: int, query: TaskQuery) -> TaskPage:
        scoped = query.model_copy(update={"assigned_to": user_id})
        return await find_tasks(self.db, scoped)

    @cached(lambda user_id: keys.dashboard(user_id), "cache_ttl_dashboard", model=DashboardStats)
    async def get_dashboard_stats(self, user_id: int) -> DashboardStats:
        return await DashboardAggregator(self.session_factory).collect(user_id)
