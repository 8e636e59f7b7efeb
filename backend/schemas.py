from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from typing import Optional, List
from enum import Enum


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def _reject_blank(value: Optional[str], field_label: str) -> Optional[str]:
    if value is not None and not value.strip():
        raise ValueError(f"{field_label} must not be blank")
    return value


# User schemas
class UserSummary(BaseModel):
    id: int
    name: str
    email: str

    class Config:
        from_attributes = True


class User(UserSummary):
    role: UserRole
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    role: Optional[UserRole] = None

    class Config:
        extra = "forbid"

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value):
        return _reject_blank(value, "Name")


class UserList(BaseModel):
    users: List[User] = []
    total: int
    page: int
    limit: int
    total_pages: int


# Project schemas
class ProjectBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class ProjectCreate(ProjectBase):
    user_ids: Optional[List[int]] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value):
        return _reject_blank(value, "Project name")


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    user_ids: Optional[List[int]] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value):
        return _reject_blank(value, "Project name")


class AssignUsers(BaseModel):
    user_ids: List[int] = Field(..., min_length=1, description="At least one user ID must be provided")


class ProjectSummary(BaseModel):
    id: int
    name: str
    description: Optional[str] = None

    class Config:
        from_attributes = True


# Task History schemas
class TaskHistoryEntry(BaseModel):
    id: int
    task_id: int
    updated_by_id: Optional[int] = None
    updated_by: Optional[UserSummary] = None
    old_status: Optional[TaskStatus] = None
    new_status: Optional[TaskStatus] = None
    old_priority: Optional[TaskPriority] = None
    new_priority: Optional[TaskPriority] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class TaskHistoryList(BaseModel):
    history: List[TaskHistoryEntry] = []
    total_count: int


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None


class TaskCreate(TaskBase):
    project_id: int
    assignee_id: int

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        return _reject_blank(value, "Task title")


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    project_id: Optional[int] = None
    assignee_id: Optional[int] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        return _reject_blank(value, "Task title")


class Task(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    project_id: int
    project: Optional[ProjectSummary] = None
    assignee_id: Optional[int] = None
    assignee: Optional[UserSummary] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskDetail(Task):
    history: List[TaskHistoryEntry] = Field(default_factory=list)

    class Config:
        from_attributes = True


class TaskEnvelope(BaseModel):
    message: str
    task: Task


class TaskDetailEnvelope(BaseModel):
    message: str
    task: TaskDetail


class TaskList(BaseModel):
    message: str
    count: int
    tasks: List[Task] = []


class TaskDeleted(BaseModel):
    message: str
    task_id: int


# Project response schemas
class ProjectResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_by: Optional[User] = None
    assigned_users: List[User] = []
    tasks: List[Task] = []
    task_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None


class ProjectDeleted(BaseModel):
    message: str
    id: int


# Dashboard schemas
class DashboardOverview(BaseModel):
    total_projects: int
    tasks_completed: int
    completion_rate: int
    pending_tasks: int
    overdue_tasks: int


class TaskStatusCount(BaseModel):
    status: TaskStatus
    count: int


class TaskPriorityCount(BaseModel):
    priority: TaskPriority
    count: int


class DashboardStats(BaseModel):
    overview: DashboardOverview
    task_status_distribution: List[TaskStatusCount] = []
    task_priority_distribution: List[TaskPriorityCount] = []
