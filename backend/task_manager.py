import logging
from typing import Iterable, List, Optional

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from db import Task, TaskUpdate, TaskStatus, AssignRequest, User, Role, task_helpers, utcnow
from team_manager import is_member

logger = logging.getLogger(__name__)


def is_involved(user: User, task: Task) -> bool:
    """Assignee, reporter or helper of the task."""
    return user.id in (task.assignee_id, task.reporter_id) or user.id in task.helper_ids


async def can_view_task(session: AsyncSession, user: User, task: Task) -> bool:
    if user.role == Role.Admin or is_involved(user, task):
        return True
    if not task.team_id or not await is_member(session, task.team_id, user.id):
        return False
    # restrict_to narrows plain members only
    if task.restrict_to and user.role == Role.Member:
        return user.id in task.restrict_to
    return True


async def can_edit_task(session: AsyncSession, user: User, task: Task) -> bool:
    if user.role == Role.Admin or is_involved(user, task):
        return True
    if user.role == Role.Lead and task.team_id:
        return await is_member(session, task.team_id, user.id)
    return False


async def can_delete_task(session: AsyncSession, user: User, task: Task) -> bool:
    """Admins, the reporter, and Leads who belong to the task's team."""
    if user.role == Role.Admin or task.reporter_id == user.id:
        return True
    if user.role == Role.Lead and task.team_id:
        return await is_member(session, task.team_id, user.id)
    return False


def set_status(task: Task, status: TaskStatus):
    """Move a task to ``status`` keeping completed_at in step with DONE."""
    if status == TaskStatus.DONE and task.status != TaskStatus.DONE:
        task.completed_at = utcnow()
    elif status != TaskStatus.DONE:
        task.completed_at = None
    task.status = status


def record_update(
    task: Task,
    note: str,
    updated_by: Optional[int] = None,
    blocked_reason: Optional[str] = None,
    subtask_completions: Optional[list] = None,
) -> TaskUpdate:
    """Append an activity entry to a task. The caller commits."""
    entry = TaskUpdate(
        date=utcnow(),
        note=note.strip(),
        blocked_reason=blocked_reason.strip() if blocked_reason and blocked_reason.strip() else None,
        subtask_completions=subtask_completions or [],
        updated_by=updated_by,
    )
    task.updates.append(entry)
    task.updated_at = utcnow()
    return entry


async def list_visible_tasks(session: AsyncSession, user: User, main_only: bool = False) -> List[Task]:
    """Team tasks the user may see, or for users without a team the tasks they are involved in."""
    query = select(Task)
    if main_only:
        query = query.where(Task.is_subtask.is_(False))

    if user.team_id:
        res = await session.execute(query.where(Task.team_id == user.team_id).order_by(Task.created_at.desc(), Task.id.desc()))
        tasks = list(res.scalars().all())
        return [t for t in tasks if await can_view_task(session, user, t)]

    helped = select(task_helpers.c.task_id).where(task_helpers.c.user_id == user.id)
    query = query.where(or_(Task.assignee_id == user.id, Task.reporter_id == user.id, Task.id.in_(helped)))
    res = await session.execute(query.order_by(Task.created_at.desc(), Task.id.desc()))
    return list(res.scalars().all())


async def list_subtasks(session: AsyncSession, parent_id: int) -> List[Task]:
    res = await session.execute(
        select(Task).where(Task.parent_task_id == parent_id).order_by(Task.created_at, Task.id)
    )
    return list(res.scalars().all())


def create_subtask(parent: Task, title: str, description: Optional[str], reporter: User) -> Task:
    return Task(
        title=title.strip(),
        description=description,
        assignee_id=parent.assignee_id,
        reporter_id=reporter.id,
        status=TaskStatus.TODO,
        priority=parent.priority,
        team_id=parent.team_id,
        project_id=parent.project_id,
        parent_task_id=parent.id,
        is_subtask=True,
        restrict_to=[],
        helpers=[],
        updates=[],
    )


async def collect_task_tree(session: AsyncSession, root_ids: Iterable[int]) -> List[int]:
    """Ids of the given tasks plus every descendant subtask."""
    found = list(dict.fromkeys(root_ids))
    frontier = list(found)
    while frontier:
        res = await session.execute(select(Task.id).where(Task.parent_task_id.in_(frontier)))
        frontier = [i for i in res.scalars().all() if i not in found]
        found.extend(frontier)
    return found


async def delete_tasks(session: AsyncSession, task_ids: List[int]):
    """Delete tasks with their activity, helper links and help requests. The caller commits."""
    if not task_ids:
        return
    await session.execute(delete(AssignRequest).where(AssignRequest.task_id.in_(task_ids)))
    await session.execute(delete(TaskUpdate).where(TaskUpdate.task_id.in_(task_ids)))
    await session.execute(delete(task_helpers).where(task_helpers.c.task_id.in_(task_ids)))
    await session.execute(delete(Task).where(Task.id.in_(task_ids)))
    logger.info(f"Deleted {len(task_ids)} task(s): {task_ids}")


async def delete_task_tree(session: AsyncSession, task: Task) -> List[int]:
    ids = await collect_task_tree(session, [task.id])
    await delete_tasks(session, ids)
    return ids
