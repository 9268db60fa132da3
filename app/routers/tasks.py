from typing import Annotated, Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import CurrentUser, TaskServiceDep, require_roles
from app.models import Role, TaskPriority, TaskStatus
from app.schemas import (
    ApiResponse,
    CachedUser,
    CommentCreate,
    DashboardStats,
    SortField,
    TaskCreate,
    TaskEnvelope,
    TaskPage,
    TaskQuery,
    TaskUpdate,
)

router = APIRouter(prefix="/tasks", tags=["tasks"])

TaskManager = Annotated[CachedUser, Depends(require_roles(Role.admin, Role.manager))]


def task_query(
    task_status: Annotated[Optional[TaskStatus], Query(alias="status")] = None,
    priority: Optional[TaskPriority] = None,
    assigned_to: Annotated[Optional[int], Query(alias="assignedTo")] = None,
    created_by: Annotated[Optional[int], Query(alias="createdBy")] = None,
    tags: Annotated[Optional[str], Query(description="Comma-separated")] = None,
    search: Optional[str] = None,
    sort_by: Annotated[SortField, Query(alias="sortBy")] = SortField.created_at,
    order: Literal["asc", "desc"] = "desc",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> TaskQuery:
    return TaskQuery(
        status=task_status,
        priority=priority,
        assigned_to=assigned_to,
        created_by=created_by,
        tags=tags,
        search=search,
        sort_by=sort_by,
        order=order,
        page=page,
        limit=limit,
    )


TaskQueryDep = Annotated[TaskQuery, Depends(task_query)]


@router.post("", response_model=ApiResponse[TaskEnvelope], status_code=status.HTTP_201_CREATED)
async def create_task(data: TaskCreate, user: TaskManager, tasks: TaskServiceDep):
    """Create a new task (admins and managers)"""
    task = await tasks.create_task(data, user.id)
    return ApiResponse(message="Task created successfully", data=TaskEnvelope(task=task))


@router.get("", response_model=ApiResponse[TaskPage])
async def get_tasks(query: TaskQueryDep, user: CurrentUser, tasks: TaskServiceDep):
    """Filtered, sorted and paginated task list"""
    return ApiResponse(data=await tasks.get_tasks(query, user.id))


# static paths before /{task_id}
@router.get("/my-tasks", response_model=ApiResponse[TaskPage])
async def get_my_tasks(query: TaskQueryDep, user: CurrentUser, tasks: TaskServiceDep):
    """Tasks assigned to the caller"""
    return ApiResponse(data=await tasks.get_my_tasks(user.id, query))


@router.get("/dashboard", response_model=ApiResponse[DashboardStats])
async def get_dashboard(user: CurrentUser, tasks: TaskServiceDep):
    return ApiResponse(data=await tasks.get_dashboard_stats(user.id))


@router.get("/{task_id}", response_model=ApiResponse[TaskEnvelope])
async def get_task(task_id: int, user: CurrentUser, tasks: TaskServiceDep):
    """Get a specific task by ID"""
    task = await tasks.get_task(task_id, user.id)
    return ApiResponse(data=TaskEnvelope(task=task))


@router.patch("/{task_id}", response_model=ApiResponse[TaskEnvelope])
async def update_task(
    task_id: int, changes: TaskUpdate, user: CurrentUser, tasks: TaskServiceDep
):
    task = await tasks.update_task(task_id, changes, user.id)
    return ApiResponse(message="Task updated successfully", data=TaskEnvelope(task=task))


@router.delete("/{task_id}", response_model=ApiResponse[None])
async def delete_task(task_id: int, user: CurrentUser, tasks: TaskServiceDep):
    """Delete a task"""
    await tasks.delete_task(task_id, user.id)
    return ApiResponse(message="Task deleted successfully")


@router.post("/{task_id}/complete", response_model=ApiResponse[TaskEnvelope])
async def mark_task_complete(task_id: int, user: CurrentUser, tasks: TaskServiceDep):
    """Mark a task as completed"""
    task = await tasks.complete_task(task_id, user.id)
    return ApiResponse(message="Task marked as completed", data=TaskEnvelope(task=task))


@router.post(
    "/{task_id}/comments",
    response_model=ApiResponse[TaskEnvelope],
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    task_id: int, comment: CommentCreate, user: CurrentUser, tasks: TaskServiceDep
):
    task = await tasks.add_comment(task_id, comment, user.id)
    return ApiResponse(message="Comment added successfully", data=TaskEnvelope(task=task))
