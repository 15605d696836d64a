from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


IssueStatus = Literal["Open", "In Progress", "Closed"]
IssuePriority = Literal["Low", "Medium", "High"]
Role = Literal["user", "manager", "admin"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# -----------------------------
# Users
# -----------------------------
class UserCreateIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    role: Role = "user"


class RoleChangeIn(CamelModel):
    role: Role


class UserOut(CamelModel):
    id: int
    name: str
    email: str
    role: Role
    created_at: datetime


class UserEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    data: UserOut


# -----------------------------
# Issues
# -----------------------------
class IssueCreateIn(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    status: Optional[IssueStatus] = None
    priority: Optional[IssuePriority] = None
    assigned_to: Optional[str] = Field(None, max_length=100)
    assignee_id: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)


class IssueUpdateIn(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    status: Optional[IssueStatus] = None
    priority: Optional[IssuePriority] = None
    assigned_to: Optional[str] = Field(None, max_length=100)
    tags: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)


class StatusChangeIn(CamelModel):
    status: IssueStatus


class AssignIn(CamelModel):
    user_id: Optional[int] = None
    assigned_to: Optional[str] = Field(None, max_length=100)


class IssueOut(CamelModel):
    id: int
    code: str
    title: str
    description: str
    status: IssueStatus
    priority: IssuePriority
    assigned_to: Optional[str] = None
    assignee_id: Optional[int] = None
    created_by: Optional[int] = None
    created_by_name: Optional[str] = None
    created_by_email: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    is_overdue: bool = False
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None


class IssueEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    data: IssueOut


class IssueListEnvelope(CamelModel):
    success: bool = True
    count: int
    data: List[IssueOut]


class StatusChangeEnvelope(IssueEnvelope):
    from_status: IssueStatus
    to_status: IssueStatus


class DeletedIssueOut(CamelModel):
    id: int
    code: str
    title: str


class DeletedIssueEnvelope(CamelModel):
    success: bool = True
    message: Optional[str] = None
    data: DeletedIssueOut


# -----------------------------
# Audit / statistics
# -----------------------------
class AuditRecordOut(CamelModel):
    id: int
    action: str
    actor_id: Optional[int] = None
    actor_name: Optional[str] = None
    actor_email: Optional[str] = None
    target_user_id: Optional[int] = None
    target_user_name: Optional[str] = None
    target_user_email: Optional[str] = None
    target_issue_id: Optional[int] = None
    target_issue_code: Optional[str] = None
    target_issue_title: Optional[str] = None
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str
    created_at: datetime


class AuditRecordListEnvelope(CamelModel):
    success: bool = True
    count: int
    data: List[AuditRecordOut]


class BucketOut(CamelModel):
    key: str
    count: int


class UserBucketOut(CamelModel):
    user_id: int
    count: int
    name: Optional[str] = None
    email: Optional[str] = None


class ActivitySummaryOut(CamelModel):
    start: datetime
    end: datetime
    by_action: List[BucketOut]
    by_user: List[UserBucketOut]
    by_status: List[BucketOut]
    total: int


class ActivitySummaryEnvelope(CamelModel):
    success: bool = True
    data: ActivitySummaryOut


class IssueStatsOut(CamelModel):
    by_status: List[BucketOut]
    by_priority: List[BucketOut]
    total: int
    resolved_count: int
    avg_resolution_time: Optional[timedelta] = None
    avg_resolution_seconds: Optional[float] = None


class IssueStatsEnvelope(CamelModel):
    success: bool = True
    data: IssueStatsOut
