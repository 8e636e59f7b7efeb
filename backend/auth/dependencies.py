"""
FastAPI dependencies for authentication and authorization.

This module provides dependency functions that can be used in route handlers to:
- Extract and validate the current user from a JWT bearer token
- Enforce role-based access control (ADMIN vs USER)
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from models import User, UserRole
from auth.security import verify_token

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials (JWT token)
        db: Database session

    Returns:
        User object if authentication succeeds

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired, or
            refers to a user that no longer exists

    Example:
        @app.get("/api/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise _unauthorized("Not authenticated")

    payload = verify_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    if payload.get("type") != "access":
        logger.info(f"Invalid token type: {payload.get('type')}")
        raise _unauthorized("Invalid token type")

    # Malformed tokens should return 401, not 500
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid user_id format in token: {payload.get('sub')}")
        raise _unauthorized("Invalid token payload")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise _unauthorized("User not found")

    logger.debug(f"User authenticated via JWT: {user.id}")
    return user


def require_role(*allowed_roles: UserRole):
    """
    Create a dependency that requires the current user to hold one of the given roles.

    Example:
        @app.delete("/api/projects/{id}")
        async def delete_project(
            project_id: int,
            current_user: User = Depends(require_role(UserRole.ADMIN))
        ):
            pass
    """
    allowed = {UserRole(role) for role in allowed_roles}

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        """Check if the current user has one of the required roles."""
        if current_user.role not in allowed:
            logger.info(
                f"Access denied: user {current_user.id} has role '{current_user.role.value}', "
                f"but one of {sorted(role.value for role in allowed)} is required"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied. You do not have the required permissions to access this resource.",
            )
        return current_user

    return role_checker


async def get_current_admin(current_user: User = Depends(require_role(UserRole.ADMIN))) -> User:
    """
    Convenience dependency for admin-only endpoints.

    Example:
        @app.get("/api/users")
        async def list_users(admin: User = Depends(get_current_admin)):
            pass
    """
    return current_user


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN
