import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from db import Task, TaskUpdate, User, Project, Role, utcnow
from llm import chat_completion

logger = logging.getLogger(__name__)

FUTURE_DATE_MESSAGE = "This date is in the future. No activity has occurred yet."
NO_ACTIVITY_MESSAGE = (
    "No task activity found for this date. "
    "The team may have had a day off or updates haven't been submitted yet."
)

SYSTEM_PROMPT = """You are a STRICTLY FACTUAL stand-up meeting summarizer.

**ZERO TOLERANCE FOR HALLUCINATION. THIS IS A HARD RULE:**

You are ONLY allowed to use information that is EXPLICITLY present in the "Tasks with today's updates" section of the user message.

- The list provided is the COMPLETE and ONLY data for this date. There are no other tasks, projects, assignees, updates, or details in existence for this summary.
- You are FORBIDDEN from inventing, creating, assuming, guessing, or adding ANY task, title, assignee name, project name, note, status, or any other detail that is not literally written in the provided data.
- Never use placeholder or example names like "Task 1", "Task 2", "John", "Jane", "Project A", "Project B", etc. unless they appear EXACTLY in the input data.
- If the "Tasks with today's updates" section is empty or contains no tasks, you MUST output EXACTLY: "No data available on this day. No tasks or updates were provided."

For the sections below, use ONLY the exact matching items from the data:

## Completed Today
List ONLY tasks where Current Status is exactly "DONE". Format: "TaskTitle (AssigneeName)"
If none, output EXACTLY: "No tasks were completed today."

## In Progress
List ONLY tasks where Current Status is exactly "IN_PROGRESS". Format each task on ONE line:
- If task has update notes: "TaskTitle (AssigneeName): note text"
- If task has NO update notes: "TaskTitle (AssigneeName): No updates submitted today"
Never put "No updates submitted today" as a separate bullet point.
If no IN_PROGRESS tasks exist, output EXACTLY: "No tasks in progress today."

## Blocked
List ONLY tasks that have a blockedReason OR where Current Status is exactly "BLOCKED". Format: "TaskTitle (AssigneeName): blocked reason"
If none, output EXACTLY: "No blockers, great work!"

## Projects Active Today
List ONLY the distinct project names that appear in the provided data. Group only the exact tasks that belong to them.
If no projects appear in the data, skip this section entirely.

## Team Snapshot
Write exactly 2-3 factual sentences based ONLY on the statuses and update notes that are actually present in the data. No opinions, no speculation.

ADDITIONAL HARD RULES:
- Every single word about tasks, people, or projects must come directly from the input data.
- Never add any extra tasks, even if it feels "reasonable".
- If you are unsure whether something is in the data, DO NOT include it.
- Output MUST be ONLY the Markdown with the exact 5 sections above. No extra text, no introductions, no conclusions, no explanations, no wrappers."""


def day_bounds(day: date):
    """Half-open [start, end) range of a UTC calendar day as naive datetimes."""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


async def find_tasks_for_day(session: AsyncSession, user: User, day: date) -> List[Task]:
    """Tasks with an activity entry on ``day`` or touched that day, scoped to the viewer."""
    start, end = day_bounds(day)
    active_ids = select(TaskUpdate.task_id).where(TaskUpdate.date >= start, TaskUpdate.date < end)
    query = select(Task).where(
        or_(Task.id.in_(active_ids), (Task.updated_at >= start) & (Task.updated_at < end))
    )
    if user.role == Role.Lead and user.team_id:
        query = query.where(Task.team_id == user.team_id)
    else:
        query = query.where(Task.assignee_id == user.id)
    res = await session.execute(query.order_by(Task.id))
    return list(res.scalars().all())


async def build_summary_items(session: AsyncSession, tasks: List[Task], day: date) -> List[Dict]:
    """Flatten tasks into prompt rows, keeping only that day's notes and dropping tasks without activity."""
    start, end = day_bounds(day)

    assignee_ids = {t.assignee_id for t in tasks}
    names: Dict[int, str] = {}
    if assignee_ids:
        res = await session.execute(select(User.id, User.name).where(User.id.in_(assignee_ids)))
        names = {row[0]: row[1] for row in res.all()}

    project_ids = {t.project_id for t in tasks if t.project_id}
    projects: Dict[int, str] = {}
    if project_ids:
        res = await session.execute(select(Project.id, Project.name).where(Project.id.in_(project_ids)))
        projects = {row[0]: row[1] for row in res.all()}

    items = []
    for task in tasks:
        todays = [u for u in task.updates if u.date and start <= u.date < end]
        touched = task.updated_at is not None and start <= task.updated_at < end
        if not todays and not touched:
            continue
        items.append({
            "title": task.title,
            "status": task.status.value,
            "priority": task.priority.value,
            "assignee_name": names.get(task.assignee_id, "Unknown"),
            "project_name": projects.get(task.project_id) if task.project_id else None,
            "updates": [{"note": u.note, "blocked_reason": u.blocked_reason} for u in todays],
        })
    return items


def format_summary_items(items: List[Dict]) -> str:
    blocks = []
    for i, item in enumerate(items, start=1):
        if item["updates"]:
            notes = "\n".join(
                f"  - {u['note']}" + (f" (Blocked: {u['blocked_reason']})" if u.get("blocked_reason") else "")
                for u in item["updates"]
            )
        else:
            notes = "  - No updates submitted today"
        project = f", Project: {item['project_name']}" if item.get("project_name") else ""
        blocks.append(
            f'{i}. "{item["title"]}" (Priority: {item["priority"]}, Assignee: {item["assignee_name"]}, '
            f'Current Status: {item["status"]}{project})\n{notes}'
        )
    return "\n\n".join(blocks)


async def generate_daily_summary(date_str: str, items: List[Dict]) -> str:
    """Build the end-of-day stand-up summary. LLM errors propagate to the caller."""
    user_prompt = (
        f"Date: {date_str}\n\nTasks with today's updates:\n\n{format_summary_items(items)}\n\n"
        "Generate the end-of-day sync summary using ONLY the data above. Do not invent anything."
    )
    summary = await chat_completion(
        [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": user_prompt}],
        temperature=0.1,
        max_tokens=1000,
    )
    return summary or "Unable to generate summary."


def empty_day_message(day: date, today: Optional[date] = None) -> str:
    today = today or utcnow().date()
    return FUTURE_DATE_MESSAGE if day > today else NO_ACTIVITY_MESSAGE
