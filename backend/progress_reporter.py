import logging
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db import Task, User
from llm import chat_completion

logger = logging.getLogger(__name__)

RECENT_UPDATE_LIMIT = 5

SYSTEM_PROMPT = """You are a project progress analyst. Based ONLY on the provided data, generate a factual progress report. Structure:

## Overall Status Summary
[2-3 sentences based on current status, priority, and recent updates]

## Completed Work
[List only subtasks with DONE status. If none, state "None"]

## In Progress
[List activities from recent updates and subtasks with IN_PROGRESS status. If none, state "None"]

## Blockers/Risks
[List only if status is BLOCKED or updates mention blockers. If none, state "None"]

## Next Steps
[Based on TODO subtasks and current progress. If unclear, state "Pending team input"]

IMPORTANT: Do not invent information. Use only the provided data. If data is missing, acknowledge it.
Output must be ONLY the structured report in Markdown as specified. Do not add any extra text, introductions, conclusions, or wrappers before or after the report."""


async def collect_progress_context(session: AsyncSession, task: Task):
    """
    Resolve the task tree a progress report covers.

    A subtask whose parent still exists reports on the parent and all of its
    subtasks; anything else reports on itself and its own subtasks.

    Returns:
        tuple: (main task, list of subtasks, list of update dicts with author names)
    """
    main_task = task
    if task.is_subtask and task.parent_task_id:
        parent = await session.get(Task, task.parent_task_id)
        if parent:
            main_task = parent

    res = await session.execute(
        select(Task).where(Task.parent_task_id == main_task.id).order_by(Task.created_at, Task.id)
    )
    subtasks = list(res.scalars().all())

    author_ids = {u.updated_by for u in main_task.updates if u.updated_by}
    names: Dict[int, str] = {}
    if author_ids:
        users_res = await session.execute(select(User.id, User.name).where(User.id.in_(author_ids)))
        names = {row[0]: row[1] for row in users_res.all()}

    updates = [
        {
            "date": u.date.strftime("%Y-%m-%d") if u.date else None,
            "note": u.note,
            "updated_by": u.updated_by,
            "user_name": names.get(u.updated_by),
        }
        for u in main_task.updates
    ]
    return main_task, subtasks, updates


async def generate_task_progress(main_task: Task, subtasks: List[Task], updates: List[Dict]) -> str:
    """Ask the LLM for a progress report. LLM errors propagate to the caller."""
    if subtasks:
        subtask_lines = "\n".join(f"{i}. {st.title} - Status: {st.status.value}" for i, st in enumerate(subtasks, start=1))
    else:
        subtask_lines = "No subtasks"

    recent = "\n".join(
        f"- {u['date']}: {u['note']} (by {u.get('user_name') or 'Unknown'})"
        for u in updates[-RECENT_UPDATE_LIMIT:]
    )

    prompt = f"""Main Task: {main_task.title}
Description: {main_task.description or "No description provided"}
Status: {main_task.status.value}
Priority: {main_task.priority.value}

Subtasks:
{subtask_lines}

Recent Updates:
{recent or "No updates submitted"}

Generate a factual progress report based ONLY on this data."""

    report = await chat_completion(
        [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
        temperature=0.3,
        max_tokens=800,
    )
    return report or "Unable to generate progress report."
