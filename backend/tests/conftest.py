"""
Test configuration and fixtures for Nexus API tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, projects, and tasks
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict

# Never touch a real database or bootstrap an admin from tests
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BOOTSTRAP_ON_STARTUP"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.security import hash_password, create_access_token

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(
    db: Session,
    name: str,
    email: str,
    password: str,
    role: models.UserRole = models.UserRole.USER,
) -> models.User:
    user = models.User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created {role.value} user with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    """Create an admin user for testing."""
    return make_user(test_db, "Admin User", "admin@test.com", "admin1234", models.UserRole.ADMIN)


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    """Create a regular user for testing."""
    return make_user(test_db, "Regular User", "user@test.com", "user12345")


@pytest.fixture(scope="function")
def another_user(test_db: Session) -> models.User:
    """Create another user for testing multi-user scenarios."""
    return make_user(test_db, "Another User", "another@test.com", "another123")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "role": user.role.value,
        "email": user.email
    }
    return create_access_token(token_data, expires_delta)


@pytest.fixture(scope="function")
def auth_headers(admin_user: models.User) -> Dict[str, str]:
    """Authorization headers with admin token."""
    return {"Authorization": f"Bearer {create_auth_token(admin_user)}"}


@pytest.fixture(scope="function")
def user_auth_headers(regular_user: models.User) -> Dict[str, str]:
    """Authorization headers for regular user."""
    return {"Authorization": f"Bearer {create_auth_token(regular_user)}"}


@pytest.fixture(scope="function")
def another_user_auth_headers(another_user: models.User) -> Dict[str, str]:
    """Authorization headers for another user."""
    return {"Authorization": f"Bearer {create_auth_token(another_user)}"}


@pytest.fixture(scope="function")
def project(test_db: Session, admin_user: models.User, regular_user: models.User) -> models.Project:
    """
    Create a project owned by admin with regular_user as its only member.
    """
    logger.debug("Creating test project")
    project = models.Project(
        name="Test Project",
        description="A project for testing",
        created_by_id=admin_user.id,
    )
    project.members = [models.ProjectMember(user_id=regular_user.id)]
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    logger.info(f"Created test project with ID: {project.id}")
    return project


@pytest.fixture(scope="function")
def task(test_db: Session, project: models.Project, regular_user: models.User, admin_user: models.User) -> models.Task:
    """
    Create a TODO/MEDIUM task assigned to regular_user with its creation history row.
    """
    logger.debug("Creating test task")
    task = models.Task(
        title="Test Task",
        description="A task for testing",
        status=models.TaskStatus.TODO,
        priority=models.TaskPriority.MEDIUM,
        project_id=project.id,
        assignee_id=regular_user.id,
    )
    test_db.add(task)
    test_db.flush()
    test_db.add(models.TaskHistory(
        task_id=task.id,
        updated_by_id=admin_user.id,
        new_status=task.status,
        new_priority=task.priority,
    ))
    test_db.commit()
    test_db.refresh(task)

    logger.info(f"Created test task with ID: {task.id}")
    return task
