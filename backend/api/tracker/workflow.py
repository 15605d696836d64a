from __future__ import annotations

from datetime import datetime
from typing import Optional

# Closed enumerations stored verbatim in issues.status / issues.priority
STATUSES: list[str] = ["Open", "In Progress", "Closed"]
PRIORITIES: list[str] = ["Low", "Medium", "High"]

DEFAULT_STATUS = "Open"
DEFAULT_PRIORITY = "Medium"
TERMINAL_STATUS = "Closed"

# Filter value meaning "no filter" in listing requests
ALL = "all"


class WorkflowError(Exception):
    """Raised when a status or priority value is not part of the enumeration."""


def list_statuses() -> list[str]:
    return list(STATUSES)


def list_priorities() -> list[str]:
    return list(PRIORITIES)


def _match(value: str, allowed: list[str]) -> Optional[str]:
    v = (value or "").strip().lower()
    for candidate in allowed:
        if candidate.lower() == v:
            return candidate
    return None


def normalize_status(status: str) -> str:
    """
    Returns the canonical spelling of `status` ("in progress" -> "In Progress").

    Raises WorkflowError for anything outside STATUSES.
    """
    s = _match(status, STATUSES)
    if s is None:
        raise WorkflowError(f"Unknown status: {status}. Allowed: {STATUSES}")
    return s


def normalize_priority(priority: str) -> str:
    p = _match(priority, PRIORITIES)
    if p is None:
        raise WorkflowError(f"Unknown priority: {priority}. Allowed: {PRIORITIES}")
    return p


def resolution_timestamp(
    resolved_at: Optional[datetime],
    new_status: str,
    now: datetime,
) -> Optional[datetime]:
    """
    Sticky first resolution.

    resolved_at is stamped the first time an issue enters TERMINAL_STATUS and
    is kept as-is afterwards, even when the issue is reopened and closed again.
    """
    if resolved_at is not None:
        return resolved_at
    if new_status == TERMINAL_STATUS:
        return now
    return None


def is_overdue(due_date: Optional[datetime], status: str, now: datetime) -> bool:
    if due_date is None or status == TERMINAL_STATUS:
        return False
    return due_date < now
