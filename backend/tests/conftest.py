"""Shared fixtures: a throwaway SQLite database, an HTTP client bound to the app, and data builders."""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="tasktracker-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["LLM_API_KEY"] = "test-llm-key"

import httpx
import pytest
import pytest_asyncio

from db import (
    Base, engine, SessionLocal, User, Team, TeamMembership, Project, Task, TaskUpdate,
    TaskStatus, TaskPriority, Role, JoinRequest, AssignRequest,
)
from auth import create_access_token
import app as app_module


@pytest_asyncio.fixture(autouse=True)
async def reset_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest_asyncio.fixture
async def client():
    transport = httpx.ASGITransport(app=app_module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


@pytest.fixture
def headers():
    return auth_headers


class Factory:
    """Writes rows straight to the database, each call in its own session."""

    async def _save(self, *objs):
        async with SessionLocal() as session:
            session.add_all(objs)
            await session.commit()
        return objs[0]

    async def user(self, name="Member", role=Role.Member, email=None, is_active=True) -> User:
        email = email or f"{name.lower().replace(' ', '.')}@example.com"
        return await self._save(
            User(name=name, email=email, password_hash="not-a-real-hash", role=role, is_active=is_active)
        )

    async def team(self, name, creator: User, members=()) -> Team:
        async with SessionLocal() as session:
            team = Team(name=name, created_by=creator.id)
            session.add(team)
            await session.flush()
            roster = ([] if creator.role == Role.Admin else [creator]) + list(members)
            for u in roster:
                session.add(TeamMembership(team_id=team.id, user_id=u.id))
                db_user = await session.get(User, u.id)
                db_user.team_id = team.id
                u.team_id = team.id
            await session.commit()
        return team

    async def project(self, name, team: Team, creator: User) -> Project:
        return await self._save(Project(name=name, team_id=team.id, created_by=creator.id))

    async def task(self, title, assignee: User, reporter: User = None, team: Team = None, **fields) -> Task:
        fields.setdefault("status", TaskStatus.TODO)
        fields.setdefault("priority", TaskPriority.Medium)
        fields.setdefault("restrict_to", [])
        helpers = fields.pop("helpers", [])
        updates = fields.pop("updates", [])
        async with SessionLocal() as session:
            task = Task(
                title=title,
                assignee_id=assignee.id,
                reporter_id=(reporter or assignee).id,
                team_id=team.id if team else None,
                helpers=[await session.get(User, h.id) for h in helpers],
                updates=[TaskUpdate(**u) for u in updates],
                **fields,
            )
            session.add(task)
            await session.commit()
        return task

    async def join_request(self, user: User, team: Team, **fields) -> JoinRequest:
        return await self._save(JoinRequest(user_id=user.id, team_id=team.id, **fields))

    async def assign_request(self, task: Task, requester: User, team: Team, note="Need help", **fields) -> AssignRequest:
        return await self._save(
            AssignRequest(task_id=task.id, requester_id=requester.id, team_id=team.id, note=note, **fields)
        )


@pytest.fixture
def factory():
    return Factory()


@pytest.fixture
def reload():
    """Fetch a fresh copy of a row, bypassing any session the test already holds."""
    async def _reload(model, ident):
        async with SessionLocal() as session:
            return await session.get(model, ident)
    return _reload
