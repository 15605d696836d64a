from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class AuditAction(str, Enum):
    USER_REGISTER = "USER_REGISTER"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    ISSUE_CREATE = "ISSUE_CREATE"
    ISSUE_UPDATE = "ISSUE_UPDATE"
    ISSUE_DELETE = "ISSUE_DELETE"
    ISSUE_STATUS_CHANGE = "ISSUE_STATUS_CHANGE"
    ISSUE_ASSIGN = "ISSUE_ASSIGN"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    ROLE_CHANGE = "ROLE_CHANGE"
    OTHER = "OTHER"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


@dataclass(frozen=True)
class AuditEntry:
    """One completed action, as handed to the ActivityRecorder."""
    action: str
    description: str
    actor_id: Optional[int] = None
    target_user_id: Optional[int] = None
    target_issue_id: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str = AuditOutcome.SUCCESS.value


@dataclass(frozen=True)
class CountBucket:
    key: str
    count: int


@dataclass(frozen=True)
class UserBucket:
    user_id: int
    count: int
    name: Optional[str]
    email: Optional[str]


@dataclass(frozen=True)
class ActivitySummary:
    start: datetime
    end: datetime
    by_action: list[CountBucket]
    by_user: list[UserBucket]
    by_status: list[CountBucket]
    total: int


@dataclass(frozen=True)
class IssueStatistics:
    by_status: list[CountBucket]
    by_priority: list[CountBucket]
    total: int
    resolved_count: int
    avg_resolution_time: Optional[timedelta]
