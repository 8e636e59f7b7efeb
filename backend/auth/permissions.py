"""
Project- and task-level permission checking utilities.

Admins can see and modify everything. Regular users see projects they are a
member of and tasks assigned to them.
"""

import logging

from sqlalchemy.orm import Session
from fastapi import HTTPException, status

from models import User, UserRole, Project, ProjectMember, Task

logger = logging.getLogger(__name__)


def is_project_member(user_id: int, project_id: int, db: Session) -> bool:
    """Check if a user has a membership row for a project."""
    membership = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
        .first()
    )
    return membership is not None


def has_project_access(user: User, project_id: int, db: Session) -> bool:
    """
    Check if a user may view a project.

    Args:
        user: User object to check permissions for
        project_id: ID of the project to check access for
        db: Database session

    Returns:
        True for admins and project members, False otherwise
    """
    if user.role == UserRole.ADMIN:
        logger.debug(f"User {user.id} is admin, granting access to project {project_id}")
        return True

    has_access = is_project_member(user.id, project_id, db)
    if not has_access:
        logger.info(f"User {user.id} has no membership in project {project_id}")
    return has_access


def require_project_access(user: User, project_id: int, db: Session) -> Project:
    """
    Load a project the user may view, or raise.

    Raises:
        HTTPException: 404 if the project does not exist
        HTTPException: 403 if the user is not a member of the project

    Example:
        >>> project = require_project_access(user, project_id, db)
    """
    logger.debug(f"Requiring access for user {user.id} on project {project_id}")

    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        logger.info(f"Project {project_id} not found")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project with ID {project_id} not found",
        )

    if not has_project_access(user, project_id, db):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this project",
        )

    return project


def require_task_access(user: User, task: Task, action: str = "view") -> None:
    """
    Require that a user may view or update a task.

    Admins may act on any task; regular users only on tasks assigned to them.

    Raises:
        HTTPException: 403 if the task is not assigned to the user
    """
    if user.role == UserRole.ADMIN:
        return

    if task.assignee_id != user.id:
        logger.info(f"User {user.id} attempted to {action} task {task.id} assigned to {task.assignee_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"You can only {action} tasks assigned to you",
        )


def can_be_assigned(assignee: User, project_id: int, db: Session) -> bool:
    """A task may be assigned to a project member or to an admin."""
    return has_project_access(assignee, project_id, db)
