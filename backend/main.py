from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import func, or_, desc, select
from sqlalchemy.exc import IntegrityError
from typing import Dict, List, Optional
import logging
import math
import os
import sys

from database import get_db, engine, Base, SessionLocal
import models
import schemas
from time_utils import is_overdue
from auth.routes import router as auth_router
from auth.dependencies import get_current_user, get_current_admin, is_admin
from auth.permissions import (
    can_be_assigned,
    require_project_access,
    require_task_access,
)

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

BOOTSTRAP_ON_STARTUP = os.getenv("BOOTSTRAP_ON_STARTUP", "true").lower() == "true"
DEFAULT_ADMIN_EMAIL = "admin@demo.com"
DEFAULT_ADMIN_PASSWORD = "admin@123"

app = FastAPI(
    title="Nexus Project Management API",
    description="Projects, tasks and task history with role-based access (ADMIN / USER)",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register authentication router
app.include_router(auth_router)


# ============== Error Handlers ==============

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Validation error for {request.method} {request.url.path}: {exc.errors()}")
    return await request_validation_exception_handler(request, exc)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ============== Startup: Schema and Admin User ==============

@app.on_event("startup")
async def bootstrap_database():
    """
    Create tables and ensure an admin user exists on startup.

    Disabled with BOOTSTRAP_ON_STARTUP=false (tests manage their own schema).
    """
    if not BOOTSTRAP_ON_STARTUP:
        logger.debug("Startup bootstrap disabled")
        return

    Base.metadata.create_all(bind=engine)
    ensure_admin_user()


def ensure_admin_user():
    """
    Ensure an admin user exists.

    Uses ADMIN_EMAIL / ADMIN_PASSWORD env vars, falling back to the demo
    credentials for local development. In production-like environments a
    missing, default, or short password aborts startup.
    """
    from auth.security import hash_password, is_production_like

    admin_email = os.getenv("ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL)
    admin_password = os.getenv("ADMIN_PASSWORD", DEFAULT_ADMIN_PASSWORD)

    db = SessionLocal()
    try:
        admin = db.query(models.User).filter(models.User.email == admin_email).first()
        if admin:
            logger.info(f"Admin user already exists (email: {admin_email})")
            return

        if is_production_like():
            stripped = admin_password.strip()
            if not stripped or stripped == DEFAULT_ADMIN_PASSWORD or len(stripped) < 8:
                logger.error(
                    "STARTUP FAILED: a secure ADMIN_PASSWORD (at least 8 characters, "
                    "not the demo default) is required in production/staging"
                )
                sys.exit(1)

        admin = models.User(
            name="Admin",
            email=admin_email,
            role=models.UserRole.ADMIN,
            password_hash=hash_password(admin_password),
        )
        db.add(admin)
        db.commit()

        if admin_password == DEFAULT_ADMIN_PASSWORD:
            logger.warning(
                f"Admin user created with the DEFAULT demo password ({admin_email}). "
                "Set ADMIN_PASSWORD for anything other than local development."
            )
        else:
            logger.info(f"Admin user created: {admin_email}")
    except Exception as e:
        logger.error(f"Failed to ensure admin user exists: {e}")
        db.rollback()
    finally:
        db.close()


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Helper Functions ==============

def validate_user_ids(db: Session, user_ids: List[int]) -> List[int]:
    """
    Check that every user ID exists.

    Returns the IDs de-duplicated in their original order.

    Raises:
        HTTPException: 400 listing the IDs that do not exist
    """
    unique_ids = list(dict.fromkeys(user_ids))
    if not unique_ids:
        return unique_ids

    found_ids = {
        row.id for row in db.query(models.User.id).filter(models.User.id.in_(unique_ids)).all()
    }
    missing_ids = [user_id for user_id in unique_ids if user_id not in found_ids]
    if missing_ids:
        logger.info(f"Unknown user IDs in request: {missing_ids}")
        raise HTTPException(
            status_code=400,
            detail=f"The following user IDs do not exist: {', '.join(str(i) for i in missing_ids)}"
        )
    return unique_ids


def sync_project_members(project: models.Project, user_ids: List[int]) -> tuple[list[int], list[int]]:
    """
    Make the project's membership exactly the given set of users.

    Existing memberships for users that stay keep their original assigned_at.

    Returns:
        tuple: (added_user_ids, removed_user_ids)
    """
    desired = set(user_ids)
    current = {member.user_id: member for member in project.members}

    removed = [user_id for user_id in current if user_id not in desired]
    for user_id in removed:
        project.members.remove(current[user_id])

    added = [user_id for user_id in user_ids if user_id not in current]
    for user_id in added:
        project.members.append(models.ProjectMember(user_id=user_id))

    return added, removed


def commit_or_conflict(db: Session, detail: str):
    """
    Commit the session, mapping integrity violations to 409.

    Covers rows that changed between validation and commit (a user deleted
    mid-request, a duplicate membership inserted concurrently). The session is
    rolled back so it stays usable.

    Raises:
        HTTPException: 409 with the given detail
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Integrity error on commit ({detail}): {e.orig}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def completion_percentage(done: int, total: int) -> int:
    """Whole-number percentage, halves rounded up (1 of 8 is 13)."""
    if total <= 0:
        return 0
    return math.floor(done * 100 / total + 0.5)


def load_project(db: Session, project_id: int, with_tasks: bool = False) -> Optional[models.Project]:
    options = [
        joinedload(models.Project.created_by),
        joinedload(models.Project.members).joinedload(models.ProjectMember.user),
    ]
    if with_tasks:
        options.append(joinedload(models.Project.tasks).joinedload(models.Task.assignee))
    return (
        db.query(models.Project)
        .options(*options)
        .filter(models.Project.id == project_id)
        .first()
    )


def project_to_response(project: models.Project, task_count: int, include_tasks: bool = False) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "created_by": project.created_by,
        "assigned_users": [member.user for member in project.members],
        "tasks": list(project.tasks) if include_tasks else [],
        "task_count": task_count,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
    }


def count_project_tasks(db: Session, project_ids: List[int]) -> Dict[int, int]:
    """Count tasks per project in a single grouped query."""
    if not project_ids:
        return {}
    rows = (
        db.query(models.Task.project_id, func.count(models.Task.id))
        .filter(models.Task.project_id.in_(project_ids))
        .group_by(models.Task.project_id)
        .all()
    )
    return {project_id: count for project_id, count in rows}


def record_task_history(
    db: Session,
    task: models.Task,
    actor_id: Optional[int],
    old_status: Optional[models.TaskStatus] = None,
    old_priority: Optional[models.TaskPriority] = None,
) -> models.TaskHistory:
    """
    Add a history row capturing the task's current status/priority.

    Args:
        db: Database session
        task: Task after the change has been applied
        actor_id: ID of the user who made the change
        old_status: Previous status, or None when status was not changed
        old_priority: Previous priority, or None when priority was not changed

    The row is attached through the task relationship, so it is written in
    the same flush as the task itself. The caller owns the transaction.
    """
    entry = models.TaskHistory(
        task=task,
        updated_by_id=actor_id,
        old_status=old_status,
        new_status=task.status,
        old_priority=old_priority,
        new_priority=task.priority,
    )
    db.add(entry)
    logger.debug(
        f"History recorded for task {task.title!r}: status {old_status} -> {task.status}, "
        f"priority {old_priority} -> {task.priority}"
    )
    return entry


def load_task(db: Session, task_id: int, with_history: bool = False) -> Optional[models.Task]:
    options = [
        joinedload(models.Task.project),
        joinedload(models.Task.assignee),
    ]
    if with_history:
        options.append(joinedload(models.Task.history).joinedload(models.TaskHistory.updated_by))
    return (
        db.query(models.Task)
        .options(*options)
        .filter(models.Task.id == task_id)
        .first()
    )


# ============== Users ==============

@app.get("/api/users", response_model=schemas.UserList)
def list_users(
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    limit: int = Query(10, ge=1, le=100, description="Items per page (max 100)"),
    search: Optional[str] = Query(None, description="Case-insensitive match on name or email"),
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """List users with pagination and search (admin only)."""
    logger.debug(f"Admin {current_user.id} listing users: page={page}, limit={limit}, search={search!r}")

    query = db.query(models.User)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(models.User.name.ilike(pattern), models.User.email.ilike(pattern)))

    total = query.count()
    users = (
        query.order_by(desc(models.User.created_at), desc(models.User.id))
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    logger.info(f"Found {len(users)} users out of {total} total")
    return {
        "users": users,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
    }


@app.get("/api/users/{user_id}", response_model=schemas.User)
def get_user(
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get user by ID (admin or self)."""
    logger.debug(f"User {current_user.id} requesting user {user_id}")

    if not is_admin(current_user) and current_user.id != user_id:
        logger.warning(f"User {current_user.id} attempted to view another user's profile ({user_id})")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to view this user profile"
        )

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.put("/api/users/{user_id}", response_model=schemas.User)
def update_user(
    user_id: int,
    user_update: schemas.UserUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update user (admin or self). Only admins can change roles."""
    logger.debug(f"User {current_user.id} updating user {user_id}")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    if not is_admin(current_user) and current_user.id != user_id:
        logger.warning(f"User {current_user.id} attempted to update another user's profile ({user_id})")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to update this user"
        )

    update_data = user_update.model_dump(exclude_none=True)

    if "role" in update_data and not is_admin(current_user):
        logger.warning(f"User {current_user.id} attempted to update role without admin privileges")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only administrators can update user roles"
        )

    if not update_data:
        raise HTTPException(
            status_code=400,
            detail="At least one field (name or role) must be provided"
        )

    # Prevent demoting the last admin (system lockout)
    if update_data.get("role") == schemas.UserRole.USER and user.role == models.UserRole.ADMIN:
        admin_count = db.query(models.User).filter(models.User.role == models.UserRole.ADMIN).count()
        if admin_count <= 1:
            logger.warning(f"Admin {current_user.id} attempted to demote the last admin user {user_id}")
            raise HTTPException(
                status_code=400,
                detail="Cannot demote the last admin user. Promote another user to admin first."
            )

    for key, value in update_data.items():
        setattr(user, key, value)

    commit_or_conflict(db, f"User {user_id} could not be updated")
    db.refresh(user)

    logger.info(f"User updated: {user.email} (ID: {user.id}) fields={sorted(update_data)}")
    return user


# ============== Projects ==============

@app.post("/api/projects", response_model=schemas.ProjectResponse, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Create a new project, optionally assigning users (admin only)."""
    logger.debug(f"Admin {current_user.id} creating project: {project.name}")

    user_ids = validate_user_ids(db, project.user_ids or [])

    db_project = models.Project(
        name=project.name,
        description=project.description,
        created_by_id=current_user.id,
    )
    db_project.members = [models.ProjectMember(user_id=user_id) for user_id in user_ids]
    db.add(db_project)
    commit_or_conflict(db, "Project could not be created: a referenced user no longer exists or is listed twice")

    db_project = load_project(db, db_project.id)
    logger.info(f"Project created: {db_project.name} (ID: {db_project.id}) by user {current_user.id}")
    return project_to_response(db_project, task_count=0)


@app.get("/api/projects", response_model=List[schemas.ProjectResponse])
def list_projects(
    search: Optional[str] = Query(None, description="Case-insensitive match on project name"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List projects: admins see all, users see the projects they are assigned to."""
    logger.debug(f"User {current_user.id} listing projects")

    query = db.query(models.Project).options(
        joinedload(models.Project.created_by),
        joinedload(models.Project.members).joinedload(models.ProjectMember.user),
    )

    if not is_admin(current_user):
        member_projects = select(models.ProjectMember.project_id).where(
            models.ProjectMember.user_id == current_user.id
        )
        query = query.filter(models.Project.id.in_(member_projects))

    if search and search.strip():
        query = query.filter(models.Project.name.ilike(f"%{search.strip()}%"))

    projects = query.order_by(desc(models.Project.created_at), desc(models.Project.id)).all()
    task_counts = count_project_tasks(db, [p.id for p in projects])

    logger.info(f"User {current_user.id} retrieved {len(projects)} projects")
    return [project_to_response(p, task_counts.get(p.id, 0)) for p in projects]


@app.get("/api/projects/{project_id}", response_model=schemas.ProjectResponse)
def get_project(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get project with its tasks (admins, or users assigned to the project)."""
    logger.debug(f"User {current_user.id} requesting project {project_id}")

    require_project_access(current_user, project_id, db)

    project = load_project(db, project_id, with_tasks=True)
    return project_to_response(project, task_count=len(project.tasks), include_tasks=True)


@app.put("/api/projects/{project_id}", response_model=schemas.ProjectResponse)
def update_project(
    project_id: int,
    project_update: schemas.ProjectUpdate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Update project details; user_ids, when given, replaces the member list (admin only)."""
    logger.debug(f"Admin {current_user.id} updating project {project_id}")

    project = load_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"Project with ID {project_id} not found")

    update_data = project_update.model_dump(exclude_unset=True)
    user_ids = update_data.pop("user_ids", None)

    # name is required on the model; an explicit null leaves it unchanged
    if update_data.get("name") is None:
        update_data.pop("name", None)

    if user_ids is not None:
        user_ids = validate_user_ids(db, user_ids)

    for key, value in update_data.items():
        setattr(project, key, value)

    if user_ids is not None:
        added, removed = sync_project_members(project, user_ids)
        logger.debug(f"Project {project_id} membership synced: added={added}, removed={removed}")
        # Membership changes alone do not trigger onupdate
        project.updated_at = func.now()

    commit_or_conflict(db, f"Project {project_id} membership was modified concurrently, please retry")

    project = load_project(db, project_id)
    task_count = count_project_tasks(db, [project_id]).get(project_id, 0)
    logger.info(f"Project updated: {project.name} (ID: {project_id})")
    return project_to_response(project, task_count)


@app.delete("/api/projects/{project_id}", response_model=schemas.ProjectDeleted)
def delete_project(
    project_id: int,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete project together with its tasks and their history (admin only)."""
    logger.debug(f"Admin {current_user.id} deleting project {project_id}")

    project = db.query(models.Project).filter(models.Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail=f"Project with ID {project_id} not found")

    db.delete(project)
    commit_or_conflict(db, f"Project {project_id} could not be deleted")

    logger.info(f"Project deleted: {project_id} by user {current_user.id}")
    return {"message": "Project deleted successfully", "id": project_id}


# ============== Project Members ==============

@app.post("/api/projects/{project_id}/assign-users", response_model=schemas.ProjectResponse)
def assign_users_to_project(
    project_id: int,
    assignment: schemas.AssignUsers,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Add users to a project; users already assigned are left as they are (admin only)."""
    logger.debug(f"Admin {current_user.id} assigning users {assignment.user_ids} to project {project_id}")

    project = load_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"Project with ID {project_id} not found")

    user_ids = validate_user_ids(db, assignment.user_ids)

    existing_user_ids = {member.user_id for member in project.members}
    new_user_ids = [user_id for user_id in user_ids if user_id not in existing_user_ids]
    for user_id in new_user_ids:
        project.members.append(models.ProjectMember(user_id=user_id))

    commit_or_conflict(db, f"Project {project_id} membership was modified concurrently, please retry")

    project = load_project(db, project_id)
    task_count = count_project_tasks(db, [project_id]).get(project_id, 0)
    logger.info(f"Users {new_user_ids} assigned to project {project_id}")
    return project_to_response(project, task_count)


@app.post("/api/projects/{project_id}/remove-users", response_model=schemas.ProjectResponse)
def remove_users_from_project(
    project_id: int,
    assignment: schemas.AssignUsers,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Remove users from a project; IDs that are not members are ignored (admin only)."""
    logger.debug(f"Admin {current_user.id} removing users {assignment.user_ids} from project {project_id}")

    project = load_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail=f"Project with ID {project_id} not found")

    to_remove = set(assignment.user_ids)
    for member in [m for m in project.members if m.user_id in to_remove]:
        project.members.remove(member)

    commit_or_conflict(db, f"Project {project_id} membership was modified concurrently, please retry")

    project = load_project(db, project_id)
    task_count = count_project_tasks(db, [project_id]).get(project_id, 0)
    logger.info(f"Users {sorted(to_remove)} removed from project {project_id}")
    return project_to_response(project, task_count)


# ============== Tasks ==============

@app.post("/api/tasks", response_model=schemas.TaskEnvelope, status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Create a task in a project for an assignee (admin only)."""
    logger.info(f"Admin {current_user.id} creating task: {task.title} in project {task.project_id}")

    project = db.query(models.Project).filter(models.Project.id == task.project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail=f"Project with ID {task.project_id} not found")

    assignee = db.query(models.User).filter(models.User.id == task.assignee_id).first()
    if not assignee:
        raise HTTPException(status_code=404, detail=f"User with ID {task.assignee_id} not found")

    if not can_be_assigned(assignee, task.project_id, db):
        logger.info(f"Assignee {assignee.id} is not a member of project {task.project_id}")
        raise HTTPException(
            status_code=400,
            detail=f"Cannot assign task to user {assignee.email}: user is not a member of this project"
        )

    db_task = models.Task(**task.model_dump())
    db.add(db_task)

    record_task_history(db, db_task, actor_id=current_user.id)
    commit_or_conflict(db, "Task could not be created: a referenced project or user no longer exists")

    db_task = load_task(db, db_task.id)
    logger.info(f"Task created successfully: id={db_task.id}")
    return {"message": "Task created successfully", "task": db_task}


@app.get("/api/tasks", response_model=schemas.TaskList)
def list_tasks(
    project_id: Optional[int] = Query(None),
    task_status: Optional[schemas.TaskStatus] = Query(None, alias="status"),
    priority: Optional[schemas.TaskPriority] = Query(None),
    search: Optional[str] = Query(None, description="Case-insensitive match on title or description"),
    limit: Optional[int] = Query(None, ge=1, le=500, description="Optional limit for pagination (max 500)"),
    offset: int = Query(0, ge=0, description="Offset for pagination (only used with limit)"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List tasks: admins see all, users see tasks assigned to them."""
    logger.debug(
        f"User {current_user.id} listing tasks: project={project_id}, status={task_status}, "
        f"priority={priority}, search={search!r}, limit={limit}, offset={offset}"
    )

    query = db.query(models.Task).options(
        joinedload(models.Task.project),
        joinedload(models.Task.assignee),
    )

    if not is_admin(current_user):
        query = query.filter(models.Task.assignee_id == current_user.id)

    if project_id is not None:
        query = query.filter(models.Task.project_id == project_id)
    if task_status:
        query = query.filter(models.Task.status == task_status)
    if priority:
        query = query.filter(models.Task.priority == priority)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(models.Task.title.ilike(pattern), models.Task.description.ilike(pattern)))

    query = query.order_by(desc(models.Task.created_at), desc(models.Task.id))

    if limit is not None:
        query = query.offset(offset).limit(limit)

    tasks = query.all()

    logger.info(f"Found {len(tasks)} tasks for user {current_user.id}")
    return {"message": "Tasks fetched successfully", "count": len(tasks), "tasks": tasks}


@app.get("/api/tasks/{task_id}", response_model=schemas.TaskDetailEnvelope)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get task with its history (admins, or the task's assignee)."""
    logger.debug(f"User {current_user.id} requesting task {task_id}")

    task = load_task(db, task_id, with_history=True)
    if not task:
        raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")

    require_task_access(current_user, task, "view")

    return {"message": "Task fetched successfully", "task": task}


@app.put("/api/tasks/{task_id}", response_model=schemas.TaskEnvelope)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update a task (admins, or the task's assignee).

    Only admins may move a task to another project or reassign it. A change of
    status and/or priority is recorded in the task history.
    """
    logger.info(f"User {current_user.id} updating task {task_id}")

    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")

    require_task_access(current_user, task, "update")

    update_data = task_update.model_dump(exclude_unset=True)

    # Required columns: an explicit null leaves the stored value unchanged
    for key in ("title", "status", "priority", "project_id", "assignee_id"):
        if key in update_data and update_data[key] is None:
            update_data.pop(key)

    project_changed = "project_id" in update_data and update_data["project_id"] != task.project_id
    assignee_changed = "assignee_id" in update_data and update_data["assignee_id"] != task.assignee_id

    if (project_changed or assignee_changed) and not is_admin(current_user):
        logger.warning(f"User {current_user.id} attempted to reassign task {task_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only administrators can change a task's project or assignee"
        )

    target_project_id = update_data.get("project_id", task.project_id)
    target_assignee_id = update_data.get("assignee_id", task.assignee_id)

    if project_changed:
        project = db.query(models.Project).filter(models.Project.id == target_project_id).first()
        if not project:
            raise HTTPException(status_code=404, detail=f"Project with ID {target_project_id} not found")

    if project_changed or assignee_changed:
        assignee = None
        if target_assignee_id is not None:
            assignee = db.query(models.User).filter(models.User.id == target_assignee_id).first()
            if not assignee:
                raise HTTPException(status_code=404, detail=f"User with ID {target_assignee_id} not found")

        if assignee is not None and not can_be_assigned(assignee, target_project_id, db):
            logger.info(f"Assignee {assignee.id} is not a member of project {target_project_id}")
            raise HTTPException(
                status_code=400,
                detail=f"Cannot assign task to user {assignee.email}: user is not a member of this project"
            )

    previous_status = task.status
    previous_priority = task.priority

    for key, value in update_data.items():
        setattr(task, key, value)

    status_changed = task.status != previous_status
    priority_changed = task.priority != previous_priority

    if status_changed or priority_changed:
        record_task_history(
            db,
            task,
            actor_id=current_user.id,
            old_status=previous_status if status_changed else None,
            old_priority=previous_priority if priority_changed else None,
        )

    commit_or_conflict(db, f"Task {task_id} was modified concurrently, please retry")

    task = load_task(db, task_id)
    logger.info(f"Task {task_id} updated successfully (fields={sorted(update_data)})")
    return {"message": "Task updated successfully", "task": task}


@app.delete("/api/tasks/{task_id}", response_model=schemas.TaskDeleted)
def delete_task(
    task_id: int,
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Delete a task and its history (admin only)."""
    logger.debug(f"Admin {current_user.id} deleting task {task_id}")

    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")

    db.delete(task)
    commit_or_conflict(db, f"Task {task_id} could not be deleted")

    logger.info(f"Task {task_id} deleted by user {current_user.id}")
    return {"message": "Task deleted successfully", "task_id": task_id}


# ============== Task History ==============

@app.get("/api/tasks/{task_id}/history", response_model=schemas.TaskHistoryList)
def get_task_history(
    task_id: int,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get the status/priority history of a task, newest first.

    Query parameters:
    - limit: Maximum number of entries to return (default: 100, max: 500)
    - offset: Number of entries to skip for pagination (default: 0)
    """
    logger.debug(f"Getting history for task {task_id}: limit={limit}, offset={offset}")

    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail=f"Task with ID {task_id} not found")

    require_task_access(current_user, task, "view")

    query = db.query(models.TaskHistory)\
        .options(joinedload(models.TaskHistory.updated_by))\
        .filter(models.TaskHistory.task_id == task_id)

    total = query.count()

    entries = query.order_by(desc(models.TaskHistory.timestamp), desc(models.TaskHistory.id))\
        .offset(offset)\
        .limit(limit)\
        .all()

    logger.info(f"Found {len(entries)} history entries for task {task_id} (total: {total})")
    return schemas.TaskHistoryList(history=entries, total_count=total)


# ============== Dashboard Stats ==============

@app.get("/api/dashboard/stats", response_model=schemas.DashboardStats)
def get_dashboard_stats(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get dashboard statistics for the current user.

    Projects count covers projects the user created or is assigned to; task
    figures cover tasks assigned to the user.
    """
    logger.debug(f"User {current_user.id} requesting dashboard stats")

    member_projects = select(models.ProjectMember.project_id).where(
        models.ProjectMember.user_id == current_user.id
    )
    total_projects = db.query(models.Project).filter(
        or_(
            models.Project.created_by_id == current_user.id,
            models.Project.id.in_(member_projects),
        )
    ).count()

    tasks = db.query(models.Task.status, models.Task.priority, models.Task.due_date)\
        .filter(models.Task.assignee_id == current_user.id)\
        .all()

    total_tasks = len(tasks)
    done_tasks = sum(1 for t in tasks if t.status == models.TaskStatus.DONE)

    status_distribution = [
        {"status": s, "count": sum(1 for t in tasks if t.status == s)}
        for s in models.TaskStatus
    ]
    priority_distribution = [
        {"priority": p, "count": sum(1 for t in tasks if t.priority == p)}
        for p in models.TaskPriority
    ]

    return {
        "overview": {
            "total_projects": total_projects,
            "tasks_completed": done_tasks,
            "completion_rate": completion_percentage(done_tasks, total_tasks),
            "pending_tasks": total_tasks - done_tasks,
            "overdue_tasks": sum(1 for t in tasks if is_overdue(t.due_date, t.status)),
        },
        "task_status_distribution": [item for item in status_distribution if item["count"] > 0],
        "task_priority_distribution": [item for item in priority_distribution if item["count"] > 0],
    }
