import os
import logging
from datetime import datetime, date, timezone
from typing import Optional, List, Any

from fastapi import FastAPI, Depends, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from dotenv import load_dotenv

from db import (
    init_db, utcnow, to_naive_utc, User, Team, Project, Task, TaskStatus, TaskPriority, Role,
    JoinRequest, JoinRequestStatus, AssignRequest, AssignRequestStatus,
)
from auth import (
    get_db, get_current_user, get_password_hash, verify_password, create_access_token,
    decode_access_token, resolve_user, oauth2_scheme,
)
from migrations import run_migrations
from role_normalizer import normalize_role, is_admin, is_lead, is_lead_or_admin
from team_manager import (
    is_member, get_members, member_counts, can_manage_team, can_view_team, can_delete_team,
    add_member, remove_member, delete_team,
)
from task_manager import (
    can_view_task, can_edit_task, can_delete_task, set_status, record_update, list_visible_tasks, list_subtasks,
    create_subtask, delete_task_tree,
)
from task_assigner import (
    HelperRejected, help_request_note, find_pending_request, approve_request, reject_request,
)
from project_manager import clean_name, find_by_name, list_team_projects, can_manage_project, delete_project
from subtask_generator import generate_subtasks
from note_assistant import autocomplete_note, refine_note, is_usable_text
from summarizer import find_tasks_for_day, build_summary_items, generate_daily_summary, empty_day_message
from progress_reporter import collect_progress_context, generate_task_progress
from llm import LLMError

load_dotenv()

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Team Task Tracker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ORIGIN.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------- Schemas ---------
class SignUpPayload(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    job_title: Optional[str] = None

class SignInPayload(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None

class TeamPayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

class MemberPayload(BaseModel):
    member_id: Optional[int] = None

class JoinRequestPayload(BaseModel):
    team_id: Optional[int] = None

class UpdateEntryPayload(BaseModel):
    note: Optional[str] = None
    blocked_reason: Optional[str] = None
    subtask_completions: Optional[List[Any]] = None

class TaskPayload(BaseModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    assignee_id: Optional[int] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    restrict_to: Optional[List[int]] = None
    project_id: Optional[int] = None
    updates: Optional[UpdateEntryPayload] = None

class SubtaskPayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None

class AssignRequestPayload(BaseModel):
    task_id: Optional[int] = None
    suggested_member_ids: Optional[List[int]] = None
    note: Optional[str] = None

class ApprovePayload(BaseModel):
    new_helper_id: Optional[int] = None
    resolved_note: Optional[str] = None

class RejectPayload(BaseModel):
    resolved_note: Optional[str] = None

class ProjectPayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

class AutocompletePayload(BaseModel):
    partial_text: Any = None
    task_title: Optional[str] = None

class RefinePayload(BaseModel):
    note: Any = None
    task_title: Optional[str] = None

# --------- Serializers ---------
def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def user_summary(u: Optional[User]) -> Optional[dict]:
    if not u:
        return None
    return {"id": u.id, "name": u.name, "email": u.email, "role": u.role.value, "job_title": u.job_title}

def serialize_user(u: User) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role.value,
        "team_id": u.team_id,
        "job_title": u.job_title,
        "is_active": u.is_active,
        "last_update_submitted": iso(u.last_update_submitted),
        "created_at": iso(u.created_at),
        "updated_at": iso(u.updated_at),
    }

def serialize_team(t: Team, member_count: Optional[int] = None) -> dict:
    data = {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "created_by": t.created_by,
        "created_at": iso(t.created_at),
        "updated_at": iso(t.updated_at),
    }
    if member_count is not None:
        data["member_count"] = member_count
    return data

def serialize_project(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "team_id": p.team_id,
        "created_by": p.created_by,
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }

def serialize_task(t: Task) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "summary": t.summary,
        "description": t.description,
        "assignee_id": t.assignee_id,
        "helper_ids": t.helper_ids,
        "reporter_id": t.reporter_id,
        "status": t.status.value,
        "priority": t.priority.value,
        "start_date": iso(t.start_date),
        "due_date": iso(t.due_date),
        "restrict_to": t.restrict_to or [],
        "team_id": t.team_id,
        "project_id": t.project_id,
        "parent_task_id": t.parent_task_id,
        "is_subtask": t.is_subtask,
        "completed_at": iso(t.completed_at),
        "updates": [
            {
                "id": u.id,
                "date": iso(u.date),
                "note": u.note,
                "blocked_reason": u.blocked_reason,
                "subtask_completions": u.subtask_completions or [],
                "updated_by": u.updated_by,
            }
            for u in t.updates
        ],
        "created_at": iso(t.created_at),
        "updated_at": iso(t.updated_at),
    }

def serialize_join_request(r: JoinRequest) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "team_id": r.team_id,
        "status": r.status.value,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }

def serialize_assign_request(r: AssignRequest) -> dict:
    return {
        "id": r.id,
        "task_id": r.task_id,
        "requester_id": r.requester_id,
        "team_id": r.team_id,
        "suggested_member_ids": r.suggested_member_ids or [],
        "note": r.note,
        "status": r.status.value,
        "resolved_by": r.resolved_by,
        "resolved_note": r.resolved_note,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }

# --------- Utilities ---------
async def commit_or_conflict(session: AsyncSession, detail: str, status_code: int = 409):
    """Commit, mapping a uniqueness violation to an HTTP error."""
    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        logger.warning(f"Integrity error: {e.orig}")
        raise HTTPException(status_code=status_code, detail=detail)

async def get_team_or_404(session: AsyncSession, team_id: int) -> Team:
    team = await session.get(Team, team_id)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    return team

async def get_task_or_404(session: AsyncSession, task_id: int, detail: str = "Task not found") -> Task:
    task = await session.get(Task, task_id)
    if not task:
        raise HTTPException(status_code=404, detail=detail)
    return task

async def require_team_manager(session: AsyncSession, user: User, team: Team):
    if not await can_manage_team(session, user, team):
        raise HTTPException(status_code=403, detail="Forbidden")

async def check_project_in_team(session: AsyncSession, project_id: Optional[int], team_id: Optional[int]):
    if project_id is None:
        return
    project = await session.get(Project, project_id)
    if not project or project.team_id != team_id:
        raise HTTPException(status_code=400, detail="Project does not belong to this team")

def clean_title(title: Optional[str]) -> str:
    if not title or not title.strip():
        raise HTTPException(status_code=400, detail="Title is required")
    title = title.strip()
    if len(title) > 255:
        raise HTTPException(status_code=400, detail="Title must be at most 255 characters")
    return title

def parse_day(value: Optional[str]) -> date:
    if not value:
        return utcnow().date()
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date, expected YYYY-MM-DD")

@app.on_event("startup")
async def on_startup():
    await init_db()
    await run_migrations()
    logger.info("Database ready")

# --------- Auth ---------
@app.post("/api/auth/sign-up")
async def sign_up(payload: SignUpPayload, session: AsyncSession = Depends(get_db)):
    if not payload.name or not payload.name.strip() or not payload.email or not payload.email.strip() or not payload.password:
        raise HTTPException(status_code=400, detail="Name, email and password are required")
    role = normalize_role(payload.role)
    if role == Role.Admin:
        raise HTTPException(status_code=400, detail="Admin role cannot be self-assigned")

    email = payload.email.strip().lower()
    existing = await session.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    u = User(
        name=payload.name.strip(),
        email=email,
        password_hash=get_password_hash(payload.password),
        role=role,
        job_title=payload.job_title.strip() if payload.job_title and payload.job_title.strip() else None,
    )
    session.add(u)
    await commit_or_conflict(session, "Email already registered", status_code=400)
    logger.info(f"New user {u.id} signed up as {role.value}")
    token = create_access_token({"sub": str(u.id)})
    return {"ok": True, "token": token, "user": serialize_user(u)}

@app.post("/api/auth/sign-in")
async def sign_in(payload: SignInPayload, session: AsyncSession = Depends(get_db)):
    email = (payload.email or "").strip().lower()
    res = await session.execute(select(User).where(User.email == email))
    u = res.scalar_one_or_none()
    if not u or not payload.password or not verify_password(payload.password, u.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not u.is_active:
        raise HTTPException(status_code=401, detail="Account is disabled")
    token = create_access_token({"sub": str(u.id)})
    return {"ok": True, "token": token, "user": serialize_user(u)}

@app.get("/api/auth/session")
async def get_session(token: Optional[str] = Depends(oauth2_scheme), session: AsyncSession = Depends(get_db)):
    user = await resolve_user(session, token)
    if not user:
        return {"session": None, "user": None}
    claims = decode_access_token(token)
    expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc).isoformat() if claims.get("exp") else None
    return {
        "session": {"token": token, "user_id": user.id, "expires_at": expires_at},
        "user": serialize_user(user),
    }

@app.post("/api/auth/sign-out")
async def sign_out():
    # Tokens are stateless; the client drops its copy
    return {"success": True, "message": "Signed out successfully"}

# --------- Users ---------
@app.get("/api/me")
async def get_me(user: User = Depends(get_current_user)):
    return {"user": serialize_user(user)}

@app.get("/api/users")
async def get_users(user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    res = await session.execute(select(User).order_by(User.id))
    return [serialize_user(u) for u in res.scalars().all()]

@app.get("/api/users/without-team")
async def get_users_without_team(user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    res = await session.execute(
        select(User).where(User.team_id.is_(None), User.is_active.is_(True)).order_by(User.name)
    )
    return {"users": [serialize_user(u) for u in res.scalars().all()]}

@app.get("/api/admin/dashboard")
async def admin_dashboard(user: User = Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return {"message": "Welcome to the admin dashboard", "user": serialize_user(user)}

# --------- Teams ---------
@app.get("/api/teams")
async def get_teams(user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    res = await session.execute(select(Team).order_by(Team.name))
    counts = await member_counts(session)
    return {"teams": [serialize_team(t, counts.get(t.id, 0)) for t in res.scalars().all()]}

@app.post("/api/teams", status_code=status.HTTP_201_CREATED)
async def create_team(payload: TeamPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    name = clean_name(payload.name)
    if not name:
        raise HTTPException(status_code=400, detail="Team name is required")
    if not is_admin(user) and user.team_id:
        raise HTTPException(status_code=400, detail="You are already in a team")
    existing = await session.execute(select(Team).where(Team.name == name))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="A team with this name already exists")

    team = Team(name=name, description=payload.description, created_by=user.id)
    session.add(team)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=409, detail="A team with this name already exists")
    if not is_admin(user):
        await add_member(session, team, user)
    await commit_or_conflict(session, "A team with this name already exists")
    logger.info(f"Team {team.id} created by user {user.id}")
    return {"message": "Team created successfully", "team": serialize_team(team, 0 if is_admin(user) else 1)}

@app.get("/api/teams/{team_id}")
async def get_team(team_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    if not await can_view_team(session, user, team):
        raise HTTPException(status_code=403, detail="Forbidden")
    members = await get_members(session, team.id)
    data = serialize_team(team, len(members))
    data["members"] = [user_summary(m) for m in members]
    return {"team": data}

@app.put("/api/teams/{team_id}")
async def update_team(team_id: int, payload: TeamPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    await require_team_manager(session, user, team)
    if payload.name is not None:
        name = clean_name(payload.name)
        if not name:
            raise HTTPException(status_code=400, detail="Team name is required")
        existing = await session.execute(select(Team).where(Team.name == name, Team.id != team.id))
        if existing.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="A team with this name already exists")
        team.name = name
    if payload.description is not None:
        team.description = payload.description
    await commit_or_conflict(session, "A team with this name already exists")
    return {"message": "Team updated", "team": serialize_team(team)}

@app.delete("/api/teams/{team_id}")
async def remove_team(team_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    if not can_delete_team(user, team):
        raise HTTPException(status_code=403, detail="Only an Admin or the team creator can delete the team")
    await delete_team(session, team)
    await session.commit()
    return {"message": "Team deleted successfully"}

@app.get("/api/teams/{team_id}/members")
async def get_team_members(team_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    if not await can_view_team(session, user, team):
        raise HTTPException(status_code=403, detail="Forbidden")
    members = await get_members(session, team.id)
    return {"team_id": team.id, "team_name": team.name, "members": [serialize_user(m) for m in members]}

@app.post("/api/teams/{team_id}/members")
async def add_team_member(team_id: int, payload: MemberPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    await require_team_manager(session, user, team)
    if payload.member_id is None:
        raise HTTPException(status_code=400, detail="member_id is required")
    member = await session.get(User, payload.member_id)
    if not member:
        raise HTTPException(status_code=404, detail="User not found")
    if await is_member(session, team.id, member.id):
        raise HTTPException(status_code=400, detail="User is already a member of this team")
    if member.team_id:
        raise HTTPException(status_code=400, detail="User already belongs to another team")
    await add_member(session, team, member)
    await commit_or_conflict(session, "User is already a member of this team", status_code=400)
    return {"message": "Member added"}

@app.delete("/api/teams/{team_id}/members/{member_id}")
async def remove_team_member(team_id: int, member_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    await require_team_manager(session, user, team)
    member = await session.get(User, member_id)
    if not member or not await is_member(session, team.id, member.id):
        raise HTTPException(status_code=404, detail="Member not found in this team")
    if member.id == team.created_by:
        raise HTTPException(status_code=400, detail="The team creator cannot be removed")
    reassigned = await remove_member(session, team, member, user)
    await session.commit()
    return {"message": "Member removed", "reassigned_tasks": reassigned}

# --------- Join requests ---------
@app.post("/api/join-requests", status_code=status.HTTP_201_CREATED)
async def create_join_request(payload: JoinRequestPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if payload.team_id is None:
        raise HTTPException(status_code=400, detail="team_id is required")
    if user.team_id:
        raise HTTPException(status_code=400, detail="You are already in a team")
    team = await get_team_or_404(session, payload.team_id)
    existing = await session.execute(
        select(JoinRequest).where(
            JoinRequest.user_id == user.id,
            JoinRequest.team_id == team.id,
            JoinRequest.status == JoinRequestStatus.pending,
        )
    )
    if existing.scalars().first():
        raise HTTPException(status_code=400, detail="You already have a pending request for this team")
    jr = JoinRequest(user_id=user.id, team_id=team.id, status=JoinRequestStatus.pending)
    session.add(jr)
    await session.commit()
    return {"message": "Join request sent successfully", "join_request": serialize_join_request(jr)}

@app.get("/api/join-requests/my")
async def get_my_join_requests(user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    res = await session.execute(
        select(JoinRequest, Team.name)
        .outerjoin(Team, Team.id == JoinRequest.team_id)
        .where(JoinRequest.user_id == user.id)
        .order_by(desc(JoinRequest.created_at), desc(JoinRequest.id))
    )
    requests = []
    for jr, team_name in res.all():
        data = serialize_join_request(jr)
        data["team_name"] = team_name or "Unknown Team"
        requests.append(data)
    return {"requests": requests}

@app.get("/api/join-requests/team/{team_id}")
async def get_team_join_requests(team_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    await require_team_manager(session, user, team)
    res = await session.execute(
        select(JoinRequest, User)
        .outerjoin(User, User.id == JoinRequest.user_id)
        .where(JoinRequest.team_id == team.id, JoinRequest.status == JoinRequestStatus.pending)
        .order_by(desc(JoinRequest.created_at), desc(JoinRequest.id))
    )
    requests = []
    for jr, requester in res.all():
        data = serialize_join_request(jr)
        data["user"] = user_summary(requester)
        requests.append(data)
    return {"requests": requests}

async def load_pending_join_request(session: AsyncSession, request_id: int, user: User):
    jr = await session.get(JoinRequest, request_id)
    if not jr:
        raise HTTPException(status_code=404, detail="Join request not found")
    if jr.status != JoinRequestStatus.pending:
        raise HTTPException(status_code=400, detail="Request already processed")
    team = await get_team_or_404(session, jr.team_id)
    await require_team_manager(session, user, team)
    return jr, team

@app.put("/api/join-requests/{request_id}/accept")
async def accept_join_request(request_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    jr, team = await load_pending_join_request(session, request_id, user)
    requester = await session.get(User, jr.user_id)
    if not requester:
        raise HTTPException(status_code=404, detail="User not found")

    if await is_member(session, team.id, requester.id):
        jr.status = JoinRequestStatus.accepted
        await session.commit()
        return {"message": "User is already a member"}
    if requester.team_id:
        raise HTTPException(status_code=400, detail="User already belongs to another team")

    await add_member(session, team, requester, keep_request_id=jr.id)
    jr.status = JoinRequestStatus.accepted
    await commit_or_conflict(session, "User is already a member of this team", status_code=400)
    logger.info(f"Join request {jr.id} accepted by user {user.id}")
    return {"message": "Join request accepted"}

@app.put("/api/join-requests/{request_id}/reject")
async def reject_join_request(request_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    jr, team = await load_pending_join_request(session, request_id, user)
    jr.status = JoinRequestStatus.rejected
    await session.commit()
    logger.info(f"Join request {jr.id} rejected by user {user.id}")
    return {"message": "Join request rejected"}

# --------- Tasks ---------
@app.post("/api/tasks", status_code=status.HTTP_201_CREATED)
async def create_task(payload: TaskPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if not user.team_id:
        raise HTTPException(status_code=400, detail="You must belong to a team before creating tasks")
    title = clean_title(payload.title)

    if user.role == Role.Member:
        if payload.assignee_id is not None and payload.assignee_id != user.id:
            raise HTTPException(status_code=403, detail="Members can only assign tasks to themselves")
        assignee_id = user.id
    else:
        assignee_id = payload.assignee_id if payload.assignee_id is not None else user.id
        if assignee_id != user.id and not await is_member(session, user.team_id, assignee_id):
            raise HTTPException(status_code=400, detail="Assignee must be a member of your team")
    await check_project_in_team(session, payload.project_id, user.team_id)

    task = Task(
        title=title,
        summary=payload.summary,
        description=payload.description,
        assignee_id=assignee_id,
        reporter_id=user.id,
        status=TaskStatus.TODO,
        priority=payload.priority or TaskPriority.Medium,
        start_date=to_naive_utc(payload.start_date),
        due_date=to_naive_utc(payload.due_date),
        restrict_to=payload.restrict_to or [],
        team_id=user.team_id,
        project_id=payload.project_id,
        is_subtask=False,
        helpers=[],
        updates=[],
    )
    set_status(task, payload.status or TaskStatus.TODO)
    if payload.updates and payload.updates.note and payload.updates.note.strip():
        record_update(
            task,
            payload.updates.note,
            updated_by=user.id,
            blocked_reason=payload.updates.blocked_reason,
            subtask_completions=payload.updates.subtask_completions,
        )
        user.last_update_submitted = utcnow()
    session.add(task)
    await session.commit()
    return serialize_task(task)

@app.get("/api/tasks")
async def get_tasks(main_only: bool = Query(False, alias="mainOnly"), user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    tasks = await list_visible_tasks(session, user, main_only=main_only)
    return [serialize_task(t) for t in tasks]

@app.get("/api/tasks/{task_id}")
async def get_task(task_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    task = await get_task_or_404(session, task_id)
    if not await can_view_task(session, user, task):
        raise HTTPException(status_code=403, detail="Forbidden")
    return serialize_task(task)

@app.api_route("/api/tasks/{task_id}", methods=["PUT", "PATCH"])
async def update_task(task_id: int, payload: TaskPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    task = await get_task_or_404(session, task_id)
    if not await can_edit_task(session, user, task):
        raise HTTPException(status_code=403, detail="You cannot edit this task")
    changes = payload.model_dump(exclude_unset=True)

    if "assignee_id" in changes and changes["assignee_id"] != task.assignee_id:
        if not is_lead_or_admin(user):
            raise HTTPException(status_code=403, detail="Only a Lead or Admin can reassign a task")
        if changes["assignee_id"] is None or not task.team_id or not await is_member(session, task.team_id, changes["assignee_id"]):
            raise HTTPException(status_code=400, detail="Assignee must be a member of the task's team")
    if "updates" in changes and changes["updates"] is not None:
        if not payload.updates.note or not payload.updates.note.strip():
            raise HTTPException(status_code=400, detail="Update note is required")
    if "title" in changes:
        task.title = clean_title(payload.title)
    if "project_id" in changes and changes["project_id"] != task.project_id:
        await check_project_in_team(session, payload.project_id, task.team_id)
        task.project_id = payload.project_id

    if "assignee_id" in changes:
        task.assignee_id = changes["assignee_id"]
    for field in ("summary", "description"):
        if field in changes:
            setattr(task, field, changes[field])
    for field in ("start_date", "due_date"):
        if field in changes:
            setattr(task, field, to_naive_utc(changes[field]))
    if "restrict_to" in changes:
        task.restrict_to = payload.restrict_to or []
    if payload.priority is not None:
        task.priority = payload.priority
    if payload.status is not None:
        set_status(task, payload.status)

    if payload.updates is not None:
        record_update(
            task,
            payload.updates.note,
            updated_by=user.id,
            blocked_reason=payload.updates.blocked_reason,
            subtask_completions=payload.updates.subtask_completions,
        )
        user.last_update_submitted = utcnow()
    task.updated_at = utcnow()
    await session.commit()
    return serialize_task(task)

@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    task = await get_task_or_404(session, task_id)
    if not await can_delete_task(session, user, task):
        raise HTTPException(status_code=403, detail="Only a Lead of the task's team, an Admin or the reporter can delete this task")
    await delete_task_tree(session, task)
    await session.commit()
    return {"message": "Task deleted successfully"}

# --------- Subtasks ---------
@app.post("/api/subtasks/suggest")
async def suggest_subtasks(payload: SubtaskPayload, user: User = Depends(get_current_user)):
    if not payload.title or not payload.title.strip():
        raise HTTPException(status_code=400, detail="Title is required")
    subtasks = await generate_subtasks(payload.title.strip(), payload.description)
    return {"subtasks": subtasks}

@app.post("/api/subtasks/{parent_task_id}", status_code=status.HTTP_201_CREATED)
async def add_subtask(parent_task_id: int, payload: SubtaskPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    parent = await get_task_or_404(session, parent_task_id, detail="Parent task not found")
    if not await can_edit_task(session, user, parent):
        raise HTTPException(status_code=403, detail="You cannot add subtasks to this task")
    title = clean_title(payload.title)
    subtask = create_subtask(parent, title, payload.description, user)
    session.add(subtask)
    await session.commit()
    return serialize_task(subtask)

@app.get("/api/subtasks/{parent_task_id}")
async def get_subtasks(parent_task_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    parent = await get_task_or_404(session, parent_task_id, detail="Parent task not found")
    if not await can_view_task(session, user, parent):
        raise HTTPException(status_code=403, detail="Forbidden")
    return [serialize_task(t) for t in await list_subtasks(session, parent.id)]

# --------- Help requests ---------
@app.post("/api/assign-requests", status_code=status.HTTP_201_CREATED)
async def create_assign_request(payload: AssignRequestPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if payload.task_id is None:
        raise HTTPException(status_code=400, detail="task_id is required")
    if not payload.note or not payload.note.strip():
        raise HTTPException(status_code=400, detail="A note explaining why you need help is required")
    task = await get_task_or_404(session, payload.task_id)
    if task.assignee_id != user.id:
        raise HTTPException(status_code=403, detail="Only the task assignee can request additional help")
    team_id = user.team_id or task.team_id
    if not team_id:
        raise HTTPException(status_code=400, detail="You must belong to a team")
    if await find_pending_request(session, task.id, user.id):
        raise HTTPException(status_code=400, detail="You already have a pending request for this task")

    note = payload.note.strip()
    request = AssignRequest(
        task_id=task.id,
        requester_id=user.id,
        team_id=team_id,
        suggested_member_ids=list(dict.fromkeys(payload.suggested_member_ids or [])),
        note=note,
        status=AssignRequestStatus.pending,
    )
    session.add(request)
    record_update(task, help_request_note(note), updated_by=user.id)
    await session.commit()
    return {"message": "Request sent", "request": serialize_assign_request(request)}

@app.get("/api/assign-requests/my")
async def get_my_assign_requests(user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    res = await session.execute(
        select(AssignRequest, Task.title)
        .outerjoin(Task, Task.id == AssignRequest.task_id)
        .where(AssignRequest.requester_id == user.id)
        .order_by(desc(AssignRequest.created_at), desc(AssignRequest.id))
    )
    requests = []
    for r, task_title in res.all():
        data = serialize_assign_request(r)
        data["task_title"] = task_title or "Unknown Task"
        requests.append(data)
    return {"requests": requests}

@app.get("/api/assign-requests/team/{team_id}")
async def get_team_assign_requests(team_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    await require_team_manager(session, user, team)
    res = await session.execute(
        select(AssignRequest)
        .where(AssignRequest.team_id == team.id, AssignRequest.status == AssignRequestStatus.pending)
        .order_by(desc(AssignRequest.created_at), desc(AssignRequest.id))
    )
    requests = []
    for r in res.scalars().all():
        data = serialize_assign_request(r)
        data["requester"] = user_summary(await session.get(User, r.requester_id))
        suggested = [await session.get(User, uid) for uid in (r.suggested_member_ids or [])]
        data["suggested_members"] = [user_summary(u) for u in suggested if u]
        task = await session.get(Task, r.task_id)
        data["task"] = (
            {"id": task.id, "title": task.title, "status": task.status.value, "priority": task.priority.value}
            if task else None
        )
        requests.append(data)
    return {"requests": requests}

async def load_pending_assign_request(session: AsyncSession, request_id: int, user: User):
    request = await session.get(AssignRequest, request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Request not found")
    if request.status != AssignRequestStatus.pending:
        raise HTTPException(status_code=400, detail="Request already processed")
    team = await get_team_or_404(session, request.team_id)
    await require_team_manager(session, user, team)
    return request, team

@app.put("/api/assign-requests/{request_id}/approve")
async def approve_assign_request(request_id: int, payload: ApprovePayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if payload.new_helper_id is None:
        raise HTTPException(status_code=400, detail="new_helper_id is required")
    request, team = await load_pending_assign_request(session, request_id, user)
    task = await get_task_or_404(session, request.task_id)
    if payload.new_helper_id == task.assignee_id:
        raise HTTPException(status_code=400, detail="This member is already the task assignee")
    if not await is_member(session, team.id, payload.new_helper_id):
        raise HTTPException(status_code=400, detail="Helper must be a member of the team")
    helper = await session.get(User, payload.new_helper_id)
    try:
        await approve_request(session, request, task, helper, user, payload.resolved_note)
    except HelperRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    await session.commit()
    return {"message": "Helper added successfully"}

@app.put("/api/assign-requests/{request_id}/reject")
async def reject_assign_request(request_id: int, payload: Optional[RejectPayload] = None, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    request, team = await load_pending_assign_request(session, request_id, user)
    task = await session.get(Task, request.task_id)
    reject_request(request, task, user, payload.resolved_note if payload else None)
    await session.commit()
    return {"message": "Request rejected"}

# --------- Projects ---------
@app.post("/api/teams/{team_id}/projects", status_code=status.HTTP_201_CREATED)
async def create_project(team_id: int, payload: ProjectPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if not is_lead(user):
        raise HTTPException(status_code=403, detail="Only Leads can create projects")
    name = clean_name(payload.name)
    if not name:
        raise HTTPException(status_code=400, detail="Project name is required")
    team = await get_team_or_404(session, team_id)
    if user.team_id != team.id:
        raise HTTPException(status_code=403, detail="You can only create projects within your own team")
    if await find_by_name(session, team.id, name):
        raise HTTPException(status_code=409, detail="A project with this name already exists in the team")
    project = Project(name=name, description=payload.description, team_id=team.id, created_by=user.id)
    session.add(project)
    await commit_or_conflict(session, "A project with this name already exists in the team")
    return {"message": "Project created successfully", "project": serialize_project(project)}

@app.get("/api/teams/{team_id}/projects")
async def get_team_projects(team_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    team = await get_team_or_404(session, team_id)
    if not await can_view_team(session, user, team):
        raise HTTPException(status_code=403, detail="Forbidden: you are not a member of this team")
    return {"projects": [serialize_project(p) for p in await list_team_projects(session, team.id)]}

async def get_project_or_404(session: AsyncSession, project_id: int) -> Project:
    project = await session.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project

@app.get("/api/projects/{project_id}")
async def get_project(project_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    project = await get_project_or_404(session, project_id)
    if not is_admin(user) and not await is_member(session, project.team_id, user.id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return {"project": serialize_project(project)}

@app.patch("/api/projects/{project_id}")
async def update_project(project_id: int, payload: ProjectPayload, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if not is_lead(user):
        raise HTTPException(status_code=403, detail="Only Leads can update projects")
    project = await get_project_or_404(session, project_id)
    if not can_manage_project(user, project):
        raise HTTPException(status_code=403, detail="Forbidden: project does not belong to your team")
    if payload.name is not None:
        name = clean_name(payload.name)
        if not name:
            raise HTTPException(status_code=400, detail="Project name is required")
        if await find_by_name(session, project.team_id, name, exclude_id=project.id):
            raise HTTPException(status_code=409, detail="A project with this name already exists in the team")
        project.name = name
    if payload.description is not None:
        project.description = payload.description
    await commit_or_conflict(session, "A project with this name already exists in the team")
    return {"message": "Project updated", "project": serialize_project(project)}

@app.delete("/api/projects/{project_id}")
async def remove_project(project_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if not is_lead(user):
        raise HTTPException(status_code=403, detail="Only Leads can delete projects")
    project = await get_project_or_404(session, project_id)
    if not can_manage_project(user, project):
        raise HTTPException(status_code=403, detail="Forbidden: project does not belong to your team")
    await delete_project(session, project)
    await session.commit()
    return {"message": "Project and associated tasks deleted successfully"}

# --------- AI assistance ---------
@app.post("/api/notes/autocomplete")
async def autocomplete(payload: AutocompletePayload, user: User = Depends(get_current_user)):
    if not is_usable_text(payload.partial_text):
        raise HTTPException(status_code=400, detail="partial_text must be at least 3 characters")
    suggestion = await autocomplete_note(payload.partial_text, payload.task_title)
    return {"suggestion": suggestion}

@app.post("/api/notes/refine")
async def refine(payload: RefinePayload, user: User = Depends(get_current_user)):
    if not is_usable_text(payload.note):
        raise HTTPException(status_code=400, detail="note must be at least 3 characters")
    refined = await refine_note(payload.note, payload.task_title)
    return {"refined": refined}

@app.get("/api/summary/daily")
async def daily_summary(date: Optional[str] = None, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    if not is_lead_or_admin(user):
        raise HTTPException(status_code=403, detail="Only Leads and Admins can access the daily summary")
    day = parse_day(date)
    date_str = day.isoformat()

    tasks = await find_tasks_for_day(session, user, day)
    if not tasks:
        return {"summary": empty_day_message(day), "date": date_str, "task_count": 0}

    items = await build_summary_items(session, tasks, day)
    try:
        summary = await generate_daily_summary(date_str, items)
    except LLMError as e:
        logger.error(f"Daily summary error: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate daily summary")
    return {"summary": summary, "date": date_str, "task_count": len(tasks)}

@app.get("/api/tasks/{task_id}/progress")
async def task_progress(task_id: int, user: User = Depends(get_current_user), session: AsyncSession = Depends(get_db)):
    task = await get_task_or_404(session, task_id)
    if not await can_view_task(session, user, task):
        raise HTTPException(status_code=403, detail="Forbidden")
    main_task, subtasks, updates = await collect_progress_context(session, task)
    try:
        progress = await generate_task_progress(main_task, subtasks, updates)
    except LLMError as e:
        logger.error(f"Task progress error: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate task progress")
    return {"progress": progress}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host=APP_HOST, port=APP_PORT)
