import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db import Project, Task, User, Role

logger = logging.getLogger(__name__)


def clean_name(name) -> Optional[str]:
    if not isinstance(name, str) or not name.strip():
        return None
    return name.strip()


async def find_by_name(session: AsyncSession, team_id: int, name: str, exclude_id: Optional[int] = None) -> Optional[Project]:
    query = select(Project).where(Project.team_id == team_id, Project.name == name)
    if exclude_id is not None:
        query = query.where(Project.id != exclude_id)
    res = await session.execute(query)
    return res.scalars().first()


async def list_team_projects(session: AsyncSession, team_id: int) -> List[Project]:
    res = await session.execute(
        select(Project).where(Project.team_id == team_id).order_by(Project.created_at.desc(), Project.id.desc())
    )
    return list(res.scalars().all())


def can_manage_project(user: User, project: Project) -> bool:
    """Only Leads of the owning team change or delete projects."""
    return user.role == Role.Lead and user.team_id == project.team_id


async def delete_project(session: AsyncSession, project: Project) -> List[int]:
    """Delete a project with its tasks and their subtasks. The caller commits."""
    from task_manager import collect_task_tree, delete_tasks

    res = await session.execute(select(Task.id).where(Task.project_id == project.id))
    task_ids = await collect_task_tree(session, res.scalars().all())
    await delete_tasks(session, task_ids)
    await session.delete(project)
    logger.info(f"Deleted project {project.id} and {len(task_ids)} task(s)")
    return task_ids
