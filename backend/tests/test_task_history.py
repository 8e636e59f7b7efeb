"""
Tests for the task status/priority audit trail.

A history row is written when a task is created and whenever an update
changes its status and/or priority. A field that did not change keeps
old_* as NULL while new_* still carries its current value.
"""

import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def history_rows(db: Session, task_id: int):
    return (
        db.query(models.TaskHistory)
        .filter(models.TaskHistory.task_id == task_id)
        .order_by(models.TaskHistory.id)
        .all()
    )


# ============== Audit Rule (5 tests) ==============


def test_status_change_recorded(client: TestClient, test_db: Session, task, regular_user, user_auth_headers):
    response = client.put(f"/api/tasks/{task.id}", json={"status": "IN_PROGRESS"}, headers=user_auth_headers)
    assert response.status_code == 200

    rows = history_rows(test_db, task.id)
    assert len(rows) == 2
    latest = rows[-1]
    assert latest.updated_by_id == regular_user.id
    assert latest.old_status == models.TaskStatus.TODO
    assert latest.new_status == models.TaskStatus.IN_PROGRESS
    assert latest.old_priority is None
    assert latest.new_priority == models.TaskPriority.MEDIUM
    logger.info("✓ Status-only change recorded with untouched priority")


def test_priority_change_recorded(client: TestClient, test_db: Session, task, auth_headers):
    client.put(f"/api/tasks/{task.id}", json={"priority": "HIGH"}, headers=auth_headers)

    latest = history_rows(test_db, task.id)[-1]
    assert latest.old_status is None
    assert latest.new_status == models.TaskStatus.TODO
    assert latest.old_priority == models.TaskPriority.MEDIUM
    assert latest.new_priority == models.TaskPriority.HIGH


def test_status_and_priority_change_single_row(client: TestClient, test_db: Session, task, auth_headers):
    client.put(f"/api/tasks/{task.id}", json={"status": "DONE", "priority": "LOW"}, headers=auth_headers)

    rows = history_rows(test_db, task.id)
    assert len(rows) == 2
    latest = rows[-1]
    assert (latest.old_status, latest.new_status) == (models.TaskStatus.TODO, models.TaskStatus.DONE)
    assert (latest.old_priority, latest.new_priority) == (models.TaskPriority.MEDIUM, models.TaskPriority.LOW)


def test_unchanged_values_not_recorded(client: TestClient, test_db: Session, task, auth_headers):
    response = client.put(
        f"/api/tasks/{task.id}",
        json={"status": "TODO", "priority": "MEDIUM", "title": "Only the title"},
        headers=auth_headers
    )
    assert response.status_code == 200

    assert len(history_rows(test_db, task.id)) == 1


def test_failed_update_writes_no_history(client: TestClient, test_db: Session, task, another_user, auth_headers):
    response = client.put(
        f"/api/tasks/{task.id}",
        json={"status": "DONE", "assignee_id": another_user.id},
        headers=auth_headers
    )
    assert response.status_code == 400

    assert len(history_rows(test_db, task.id)) == 1
    test_db.refresh(task)
    assert task.status == models.TaskStatus.TODO


# ============== History Endpoint (4 tests) ==============


def test_history_endpoint_newest_first(client: TestClient, task, user_auth_headers):
    client.put(f"/api/tasks/{task.id}", json={"status": "IN_PROGRESS"}, headers=user_auth_headers)
    client.put(f"/api/tasks/{task.id}", json={"status": "REVIEW"}, headers=user_auth_headers)

    response = client.get(f"/api/tasks/{task.id}/history", headers=user_auth_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["total_count"] == 3
    assert [h["new_status"] for h in data["history"]] == ["REVIEW", "IN_PROGRESS", "TODO"]
    assert data["history"][0]["old_status"] == "IN_PROGRESS"
    assert data["history"][0]["updated_by"]["name"] == "Regular User"


def test_history_endpoint_pagination(client: TestClient, task, auth_headers):
    for new_status in ("IN_PROGRESS", "REVIEW", "DONE"):
        client.put(f"/api/tasks/{task.id}", json={"status": new_status}, headers=auth_headers)

    data = client.get(f"/api/tasks/{task.id}/history?limit=2&offset=1", headers=auth_headers).json()

    assert data["total_count"] == 4
    assert [h["new_status"] for h in data["history"]] == ["REVIEW", "IN_PROGRESS"]


def test_history_forbidden_for_other_user(client: TestClient, task, another_user_auth_headers):
    response = client.get(f"/api/tasks/{task.id}/history", headers=another_user_auth_headers)
    assert response.status_code == 403


def test_history_missing_task(client: TestClient, auth_headers):
    response = client.get("/api/tasks/9999/history", headers=auth_headers)
    assert response.status_code == 404
