import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db import AssignRequest, AssignRequestStatus, Task, User, utcnow
from task_manager import record_update

logger = logging.getLogger(__name__)


class HelperRejected(ValueError):
    """The proposed helper cannot be added to the task."""


def help_request_note(note: str) -> str:
    return f'Help request sent to lead: "{note}"'


def _with_reason(text: str, reason: Optional[str]) -> str:
    return f"{text}. Reason: {reason}" if reason else text


async def find_pending_request(session: AsyncSession, task_id: int, requester_id: int) -> Optional[AssignRequest]:
    res = await session.execute(
        select(AssignRequest).where(
            AssignRequest.task_id == task_id,
            AssignRequest.requester_id == requester_id,
            AssignRequest.status == AssignRequestStatus.pending,
        )
    )
    return res.scalars().first()


def add_helper(task: Task, helper: User) -> bool:
    """Add ``helper`` to the task once. Returns False if they were already helping."""
    if helper.id in task.helper_ids:
        return False
    task.helpers.append(helper)
    return True


async def approve_request(
    session: AsyncSession,
    request: AssignRequest,
    task: Task,
    helper: User,
    actor: User,
    resolved_note: Optional[str] = None,
):
    """
    Approve a help request by adding ``helper`` to the task.

    The caller has already checked that ``helper`` belongs to the team.
    Raises HelperRejected when the helper is the task assignee.
    """
    if helper.id == task.assignee_id:
        raise HelperRejected("This member is already the task assignee")

    resolved_note = resolved_note.strip() if resolved_note and resolved_note.strip() else None
    add_helper(task, helper)
    record_update(
        task,
        _with_reason(f"Help request approved: {helper.name} added as a helper", resolved_note),
        updated_by=actor.id,
    )
    request.status = AssignRequestStatus.approved
    request.resolved_by = actor.id
    request.resolved_note = resolved_note
    request.updated_at = utcnow()
    logger.info(f"Help request {request.id} approved by user {actor.id}; user {helper.id} now helps on task {task.id}")


def reject_request(request: AssignRequest, task: Optional[Task], actor: User, resolved_note: Optional[str] = None):
    resolved_note = resolved_note.strip() if resolved_note and resolved_note.strip() else None
    if task is not None:
        record_update(task, _with_reason("Help request rejected", resolved_note), updated_by=actor.id)
    request.status = AssignRequestStatus.rejected
    request.resolved_by = actor.id
    request.resolved_note = resolved_note
    request.updated_at = utcnow()
    logger.info(f"Help request {request.id} rejected by user {actor.id}")
