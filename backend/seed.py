"""Fill a development database with demo teams, projects and tasks.

Run from the backend directory:  python seed.py
Every account gets the password ``password123``.
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy import delete

from db import (
    engine, SessionLocal, init_db, utcnow, User, Team, TeamMembership, Project, Task, TaskUpdate,
    TaskStatus, TaskPriority, Role, JoinRequest, JoinRequestStatus, AssignRequest, AssignRequestStatus, task_helpers,
)
from auth import get_password_hash

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"

USERS = [
    # (key, name, email, role, job title, team key)
    ("admin", "Site Admin", "admin@example.com", Role.Admin, "Administrator", None),
    ("lead_a", "Alex Lead", "alex.lead@example.com", Role.Lead, "Engineering Manager", "platform"),
    ("dev_a1", "Blake Dev", "blake.dev@example.com", Role.Member, "Senior Software Engineer", "platform"),
    ("dev_a2", "Casey Dev", "casey.dev@example.com", Role.Member, "Software Engineer", "platform"),
    ("qa_a", "Devon Qa", "devon.qa@example.com", Role.Member, "Quality Assurance Analyst", "platform"),
    ("lead_b", "Emery Lead", "emery.lead@example.com", Role.Lead, "DevOps Manager", "infra"),
    ("ops_b1", "Finley Ops", "finley.ops@example.com", Role.Member, "DevOps Engineer", "infra"),
    ("new_c", "Gray Newcomer", "gray.newcomer@example.com", Role.Member, "Development Intern", None),
]

TEAMS = [
    ("platform", "Platform", "Core product APIs and web client", "lead_a"),
    ("infra", "Infrastructure", "CI, cloud and observability", "lead_b"),
]


async def clear(session):
    for table in (AssignRequest, JoinRequest, TaskUpdate):
        await session.execute(delete(table))
    await session.execute(delete(task_helpers))
    await session.execute(delete(Task).where(Task.parent_task_id.is_not(None)))
    await session.execute(delete(Task))
    await session.execute(delete(Project))
    await session.execute(delete(TeamMembership))
    await session.execute(User.__table__.update().values(team_id=None))
    await session.execute(delete(Team))
    await session.execute(delete(User))
    await session.commit()


async def seed(session) -> dict:
    """Insert the demo data set. Returns the created users keyed by short name."""
    password_hash = get_password_hash(DEMO_PASSWORD)
    users = {}
    for key, name, email, role, job_title, _ in USERS:
        users[key] = User(name=name, email=email, password_hash=password_hash, role=role, job_title=job_title)
        session.add(users[key])
    await session.flush()

    teams = {}
    for key, name, description, creator in TEAMS:
        teams[key] = Team(name=name, description=description, created_by=users[creator].id)
        session.add(teams[key])
    await session.flush()

    for key, *_, team_key in USERS:
        if team_key:
            session.add(TeamMembership(team_id=teams[team_key].id, user_id=users[key].id))
            users[key].team_id = teams[team_key].id

    api = Project(name="Public API v2", description="Versioned REST endpoints", team_id=teams["platform"].id, created_by=users["lead_a"].id)
    pipeline = Project(name="Build Pipeline", description="Faster CI runs", team_id=teams["infra"].id, created_by=users["lead_b"].id)
    session.add_all([api, pipeline])
    await session.flush()

    now = utcnow()
    yesterday = now - timedelta(days=1)

    def task(title, assignee, reporter, team, status=TaskStatus.TODO, priority=TaskPriority.Medium, project=None, **extra):
        t = Task(
            title=title,
            assignee_id=users[assignee].id,
            reporter_id=users[reporter].id,
            team_id=teams[team].id,
            project_id=project.id if project else None,
            status=status,
            priority=priority,
            start_date=yesterday,
            due_date=now + timedelta(days=7),
            completed_at=now if status == TaskStatus.DONE else None,
            restrict_to=[],
            helpers=[],
            updates=[],
            **extra,
        )
        session.add(t)
        return t

    auth_task = task("Add token refresh endpoint", "dev_a1", "lead_a", "platform", TaskStatus.IN_PROGRESS, TaskPriority.High, api,
                     description="Issue a new access token before the old one expires")
    auth_task.updates.append(TaskUpdate(date=now, note="Endpoint skeleton and tests in place", updated_by=users["dev_a1"].id))
    docs_task = task("Document pagination parameters", "dev_a2", "lead_a", "platform", TaskStatus.DONE, TaskPriority.Low, api)
    docs_task.updates.append(TaskUpdate(date=now, note="Published the pagination guide", updated_by=users["dev_a2"].id))
    flaky = task("Fix flaky login test", "qa_a", "qa_a", "platform", TaskStatus.BLOCKED, TaskPriority.High)
    flaky.updates.append(TaskUpdate(
        date=now, note="Test fails only on CI", blocked_reason="Waiting for CI runner logs", updated_by=users["qa_a"].id,
    ))
    flaky.helpers.append(users["dev_a1"])
    cache = task("Cache dependency downloads", "ops_b1", "lead_b", "infra", TaskStatus.IN_PROGRESS, TaskPriority.Medium, pipeline)
    cache.updates.append(TaskUpdate(date=yesterday, note="Measured a cold build at 14 minutes", updated_by=users["ops_b1"].id))
    await session.flush()

    for title in ("Write refresh token model", "Expose refresh route", "Add expiry tests"):
        task(title, "dev_a1", "dev_a1", "platform", priority=TaskPriority.High, project=api,
             parent_task_id=auth_task.id, is_subtask=True)
    await session.flush()

    session.add(AssignRequest(
        task_id=cache.id,
        requester_id=users["ops_b1"].id,
        team_id=teams["infra"].id,
        suggested_member_ids=[users["lead_b"].id],
        note="Need a second pair of eyes on the cache key layout",
        status=AssignRequestStatus.pending,
    ))
    cache.updates.append(TaskUpdate(
        date=now, note='Help request sent to lead: "Need a second pair of eyes on the cache key layout"',
        updated_by=users["ops_b1"].id,
    ))
    session.add(JoinRequest(user_id=users["new_c"].id, team_id=teams["platform"].id, status=JoinRequestStatus.pending))

    await session.commit()
    logger.info(f"Seeded {len(users)} users, {len(teams)} teams and demo tasks")
    return users


async def main():
    await init_db()
    async with SessionLocal() as session:
        await clear(session)
        await seed(session)
    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
