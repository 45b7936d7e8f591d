import logging
from typing import Dict, List, Optional

from sqlalchemy import select, delete, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from db import (
    Team, TeamMembership, User, Task, TaskStatus, Project, Role,
    JoinRequest, JoinRequestStatus, AssignRequest, AssignRequestStatus, task_helpers, utcnow,
)

logger = logging.getLogger(__name__)


async def is_member(session: AsyncSession, team_id: int, user_id: int) -> bool:
    res = await session.execute(
        select(TeamMembership.id).where(TeamMembership.team_id == team_id, TeamMembership.user_id == user_id)
    )
    return res.scalar_one_or_none() is not None


async def get_member_ids(session: AsyncSession, team_id: int) -> List[int]:
    res = await session.execute(
        select(TeamMembership.user_id).where(TeamMembership.team_id == team_id).order_by(TeamMembership.id)
    )
    return list(res.scalars().all())


async def get_members(session: AsyncSession, team_id: int) -> List[User]:
    res = await session.execute(
        select(User)
        .join(TeamMembership, TeamMembership.user_id == User.id)
        .where(TeamMembership.team_id == team_id)
        .order_by(TeamMembership.id)
    )
    return list(res.scalars().all())


async def member_counts(session: AsyncSession) -> Dict[int, int]:
    res = await session.execute(
        select(TeamMembership.team_id, func.count(TeamMembership.id)).group_by(TeamMembership.team_id)
    )
    return {row[0]: row[1] for row in res.all()}


async def can_manage_team(session: AsyncSession, user: User, team: Team) -> bool:
    """Admins, the team creator, and Leads who belong to the team."""
    if user.role == Role.Admin or team.created_by == user.id:
        return True
    return user.role == Role.Lead and await is_member(session, team.id, user.id)


async def can_view_team(session: AsyncSession, user: User, team: Team) -> bool:
    return user.role == Role.Admin or await is_member(session, team.id, user.id)


def can_delete_team(user: User, team: Team) -> bool:
    return user.role == Role.Admin or team.created_by == user.id


async def reject_pending_join_requests(session: AsyncSession, user_id: int, keep_id: Optional[int] = None) -> int:
    """Reject a user's other pending join requests once they land in a team."""
    query = (
        update(JoinRequest)
        .where(JoinRequest.user_id == user_id, JoinRequest.status == JoinRequestStatus.pending)
        .values(status=JoinRequestStatus.rejected, updated_at=utcnow())
    )
    if keep_id is not None:
        query = query.where(JoinRequest.id != keep_id)
    res = await session.execute(query.execution_options(synchronize_session=False))
    return res.rowcount or 0


async def add_member(session: AsyncSession, team: Team, user: User, keep_request_id: Optional[int] = None):
    """Put ``user`` on ``team``. The caller checks they have no team yet and commits."""
    session.add(TeamMembership(team_id=team.id, user_id=user.id))
    user.team_id = team.id
    await reject_pending_join_requests(session, user.id, keep_id=keep_request_id)
    logger.info(f"User {user.id} joined team {team.id}")


async def remove_member(session: AsyncSession, team: Team, member: User, actor: User) -> List[int]:
    """
    Take ``member`` off ``team`` and hand their open work to someone who stays.

    Open team tasks go to ``actor`` when the actor belongs to the team, otherwise
    to the team creator. The member is also dropped from helper lists on team
    tasks and their pending help requests in the team are rejected.

    Returns:
        list: ids of the reassigned tasks
    """
    from task_manager import record_update

    if await is_member(session, team.id, actor.id) and actor.id != member.id:
        new_owner = actor
    else:
        new_owner = await session.get(User, team.created_by) or actor

    res = await session.execute(
        select(Task).where(
            Task.team_id == team.id,
            Task.assignee_id == member.id,
            Task.status != TaskStatus.DONE,
        )
    )
    reassigned = []
    for task in res.scalars().all():
        task.assignee_id = new_owner.id
        record_update(
            task,
            f"Task reassigned from {member.name} to {new_owner.name} after {member.name} left the team",
            updated_by=actor.id,
        )
        reassigned.append(task.id)

    team_task_ids = select(Task.id).where(Task.team_id == team.id)
    await session.execute(
        delete(task_helpers).where(task_helpers.c.user_id == member.id, task_helpers.c.task_id.in_(team_task_ids))
    )
    await session.execute(
        update(AssignRequest)
        .where(
            AssignRequest.team_id == team.id,
            AssignRequest.requester_id == member.id,
            AssignRequest.status == AssignRequestStatus.pending,
        )
        .values(
            status=AssignRequestStatus.rejected,
            resolved_by=actor.id,
            resolved_note="Requester left the team",
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(TeamMembership).where(TeamMembership.team_id == team.id, TeamMembership.user_id == member.id)
    )
    member.team_id = None
    logger.info(f"Removed user {member.id} from team {team.id}; reassigned tasks {reassigned} to user {new_owner.id}")
    return reassigned


async def delete_team(session: AsyncSession, team: Team):
    """Delete a team with its tasks, projects and requests. Members end up teamless. The caller commits."""
    from task_manager import delete_tasks

    res = await session.execute(select(Task.id).where(Task.team_id == team.id))
    await delete_tasks(session, list(res.scalars().all()))
    await session.execute(delete(AssignRequest).where(AssignRequest.team_id == team.id))
    await session.execute(delete(JoinRequest).where(JoinRequest.team_id == team.id))
    await session.execute(delete(Project).where(Project.team_id == team.id))
    await session.execute(
        update(User).where(User.team_id == team.id).values(team_id=None).execution_options(synchronize_session="fetch")
    )
    await session.execute(delete(TeamMembership).where(TeamMembership.team_id == team.id))
    await session.delete(team)
    logger.info(f"Deleted team {team.id}")
