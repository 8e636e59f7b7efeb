#!/usr/bin/env python3
"""
Load demo data into the database.

Wipes every table and recreates a small demo dataset: one admin, two users,
two projects with memberships, four tasks and their history.

Usage:
    DATABASE_URL=postgresql://... python seed.py
"""
import logging
import sys
from datetime import timedelta

from sqlalchemy.orm import Session

from database import Base, SessionLocal, engine
import models
from auth.security import hash_password
from time_utils import utc_now

logger = logging.getLogger(__name__)

DEMO_USERS = [
    ("Admin Demo", "admin@demo.com", "admin@123", models.UserRole.ADMIN),
    ("User Demo", "user@demo.com", "user@123", models.UserRole.USER),
    ("Jane Smith", "jane@nexus.com", "password123", models.UserRole.USER),
]


def clear_data(db: Session) -> None:
    """Delete all rows, children first."""
    for model in (models.TaskHistory, models.Task, models.ProjectMember, models.Project, models.User):
        deleted = db.query(model).delete(synchronize_session=False)
        logger.debug(f"Deleted {deleted} rows from {model.__tablename__}")
    db.commit()
    # Loaded instances refer to rows that no longer exist
    db.expunge_all()


def seed_demo_data(db: Session) -> dict:
    """
    Replace the database contents with the demo dataset.

    Returns:
        Row counts per table after seeding
    """
    logger.info("Cleaning existing data...")
    clear_data(db)

    logger.info("Creating users...")
    users = {}
    for name, email, password, role in DEMO_USERS:
        user = models.User(name=name, email=email, password_hash=hash_password(password), role=role)
        db.add(user)
        users[email] = user
    db.flush()

    admin = users["admin@demo.com"]
    demo_user = users["user@demo.com"]
    jane = users["jane@nexus.com"]

    logger.info("Creating projects...")
    website = models.Project(
        name="Website Redesign",
        description="Complete redesign of the company website",
        created_by_id=admin.id,
    )
    mobile = models.Project(
        name="Mobile App Development",
        description="Build native mobile apps for iOS and Android",
        created_by_id=admin.id,
    )
    website.members = [
        models.ProjectMember(user_id=demo_user.id),
        models.ProjectMember(user_id=jane.id),
    ]
    mobile.members = [
        models.ProjectMember(user_id=demo_user.id),
        models.ProjectMember(user_id=jane.id),
    ]
    db.add_all([website, mobile])
    db.flush()

    logger.info("Creating tasks...")
    now = utc_now()
    homepage = models.Task(
        title="Design Homepage Mockup",
        description="Create high-fidelity mockups for the new homepage",
        status=models.TaskStatus.IN_PROGRESS,
        priority=models.TaskPriority.HIGH,
        due_date=now + timedelta(days=7),
        project_id=website.id,
        assignee_id=jane.id,
    )
    dev_env = models.Task(
        title="Set up Development Environment",
        description="Configure development tools and dependencies",
        status=models.TaskStatus.DONE,
        priority=models.TaskPriority.MEDIUM,
        due_date=now + timedelta(days=2),
        project_id=website.id,
        assignee_id=demo_user.id,
    )
    research = models.Task(
        title="Research React Native Framework",
        description="Evaluate React Native for mobile app development",
        status=models.TaskStatus.TODO,
        priority=models.TaskPriority.HIGH,
        due_date=now - timedelta(days=1),
        project_id=mobile.id,
        assignee_id=demo_user.id,
    )
    app_design = models.Task(
        title="Design App UI/UX",
        description="Create wireframes and user flows for mobile app",
        status=models.TaskStatus.TODO,
        priority=models.TaskPriority.MEDIUM,
        project_id=mobile.id,
        assignee_id=jane.id,
    )
    tasks = [homepage, dev_env, research, app_design]
    db.add_all(tasks)
    db.flush()

    logger.info("Creating task history...")
    # Creation rows first, then the later status/priority changes
    for task in tasks:
        db.add(models.TaskHistory(
            task_id=task.id,
            updated_by_id=admin.id,
            new_status=models.TaskStatus.TODO if task in (homepage, dev_env) else task.status,
            new_priority=models.TaskPriority.MEDIUM if task is homepage else task.priority,
            timestamp=now - timedelta(days=3),
        ))
    db.add_all([
        models.TaskHistory(
            task_id=homepage.id,
            updated_by_id=jane.id,
            old_status=models.TaskStatus.TODO,
            new_status=models.TaskStatus.IN_PROGRESS,
            old_priority=models.TaskPriority.MEDIUM,
            new_priority=models.TaskPriority.HIGH,
            timestamp=now - timedelta(hours=6),
        ),
        models.TaskHistory(
            task_id=dev_env.id,
            updated_by_id=demo_user.id,
            old_status=models.TaskStatus.TODO,
            new_status=models.TaskStatus.DONE,
            new_priority=models.TaskPriority.MEDIUM,
            timestamp=now - timedelta(hours=8),
        ),
    ])
    db.commit()

    counts = {
        "users": db.query(models.User).count(),
        "projects": db.query(models.Project).count(),
        "project_members": db.query(models.ProjectMember).count(),
        "tasks": db.query(models.Task).count(),
        "task_history": db.query(models.TaskHistory).count(),
    }
    logger.info(f"Database seeded successfully: {counts}")
    return counts


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seed_demo_data(db)
    except Exception:
        logger.exception("Error seeding database")
        db.rollback()
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
