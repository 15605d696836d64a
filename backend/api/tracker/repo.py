from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from tracker.query import IssueQuery
from tracker.tables import issue_counters, issues, users
from tracker.time_utils import as_utc, utcnow
from tracker.workflow import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    TERMINAL_STATUS,
    is_overdue,
    normalize_priority,
    normalize_status,
    resolution_timestamp,
)

ISSUE_SEQUENCE = "issue"
ISSUE_CODE_PREFIX = "ISSUE-"
ROLES = ("user", "manager", "admin")

UPDATABLE_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "assigned_to",
    "tags",
    "due_date",
    "estimated_hours",
    "actual_hours",
)

# NOT NULL columns: an explicit None in `changes` leaves them untouched.
REQUIRED_FIELDS = ("title", "description", "status", "priority")


# ----------------------------
# Helpers (safe + deterministic)
# ----------------------------

def format_issue_code(n: int) -> str:
    return f"{ISSUE_CODE_PREFIX}{n:03d}"


def _normalize_tags(tags: Optional[List[str]]) -> List[str]:
    out: List[str] = []
    for t in tags or []:
        t = (t or "").strip().lower()
        if t and t not in out:
            out.append(t)
    return out


def _issue_select():
    creator = users.alias("creator")
    return select(
        issues,
        creator.c.name.label("created_by_name"),
        creator.c.email.label("created_by_email"),
    ).select_from(issues.outerjoin(creator, creator.c.id == issues.c.created_by))


def _issue_row(row: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    d = dict(row)
    for key in ("created_at", "updated_at", "resolved_at", "due_date"):
        d[key] = as_utc(d.get(key))
    d["tags"] = list(d.get("tags") or [])
    d["is_overdue"] = is_overdue(d["due_date"], d["status"], now or utcnow())
    return d


def _user_row(row: Any) -> Dict[str, Any]:
    d = dict(row)
    d["created_at"] = as_utc(d.get("created_at"))
    return d


def _fetch_issue(conn: Connection, issue_id: int) -> Dict[str, Any]:
    row = conn.execute(_issue_select().where(issues.c.id == issue_id)).mappings().first()
    if row is None:
        raise KeyError(f"Issue {issue_id} not found")
    return _issue_row(row)


def next_issue_code(conn: Connection) -> str:
    """
    Bumps the issue counter inside the caller's transaction.

    The UPDATE takes a row lock (PostgreSQL) or the write lock (SQLite) that is
    held until the surrounding insert commits, so two writers can never read
    the same value, and deleting an issue never frees its number.
    """
    value = conn.execute(
        update(issue_counters)
        .where(issue_counters.c.name == ISSUE_SEQUENCE)
        .values(value=issue_counters.c.value + 1)
        .returning(issue_counters.c.value)
    ).scalar_one_or_none()

    if value is None:
        # First issue ever on a database that was not seeded by the migration.
        value = 1
        conn.execute(insert(issue_counters).values(name=ISSUE_SEQUENCE, value=value))

    return format_issue_code(int(value))


# ----------------------------
# Users
# ----------------------------

def create_user(engine: Engine, name: str, email: str, role: str = "user") -> Dict[str, Any]:
    if role not in ROLES:
        raise ValueError(f"role must be one of {ROLES}")

    with engine.begin() as conn:
        user_id = conn.execute(
            insert(users)
            .values(name=name.strip(), email=email.strip().lower(), role=role, created_at=utcnow())
            .returning(users.c.id)
        ).scalar_one()
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()

    return _user_row(row)


def get_user(engine: Engine, user_id: int) -> Dict[str, Any]:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()

    if row is None:
        raise KeyError(f"User {user_id} not found")
    return _user_row(row)


def set_user_role(engine: Engine, user_id: int, role: str) -> Dict[str, Any]:
    if role not in ROLES:
        raise ValueError(f"role must be one of {ROLES}")

    with engine.begin() as conn:
        res = conn.execute(update(users).where(users.c.id == user_id).values(role=role))
        if res.rowcount == 0:
            raise KeyError(f"User {user_id} not found")
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()

    return _user_row(row)


# ----------------------------
# Issues: CRUD / queries
# ----------------------------

def create_issue(
    engine: Engine,
    *,
    title: str,
    description: str,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[str] = None,
    assignee_id: Optional[int] = None,
    created_by: Optional[int] = None,
    tags: Optional[List[str]] = None,
    due_date: Optional[datetime] = None,
    estimated_hours: Optional[float] = None,
    actual_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    status = normalize_status(status or DEFAULT_STATUS)
    priority = normalize_priority(priority or DEFAULT_PRIORITY)
    now = now or utcnow()

    with engine.begin() as conn:
        code = next_issue_code(conn)
        issue_id = conn.execute(
            insert(issues)
            .values(
                code=code,
                title=title.strip(),
                description=description.strip(),
                status=status,
                priority=priority,
                assigned_to=(assigned_to.strip() if assigned_to else None),
                assignee_id=assignee_id,
                created_by=created_by,
                tags=_normalize_tags(tags),
                due_date=due_date,
                estimated_hours=estimated_hours,
                actual_hours=actual_hours,
                created_at=now,
                updated_at=now,
                resolved_at=resolution_timestamp(None, status, now),
            )
            .returning(issues.c.id)
        ).scalar_one()

        return _fetch_issue(conn, issue_id)


def get_issue(engine: Engine, issue_id: int) -> Dict[str, Any]:
    with engine.begin() as conn:
        return _fetch_issue(conn, issue_id)


def list_issues(engine: Engine, query: IssueQuery) -> List[Dict[str, Any]]:
    sql = _issue_select().where(query.where()).order_by(*query.order_by())

    with engine.begin() as conn:
        rows = conn.execute(sql).mappings().all()

    now = utcnow()
    return [_issue_row(r, now) for r in rows]


def update_issue(
    engine: Engine,
    issue_id: int,
    changes: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Applies `changes` (keys from UPDATABLE_FIELDS, others ignored). None for
    one of REQUIRED_FIELDS means "no change".

    resolved_at is maintained here and only here: it is stamped in the same
    UPDATE statement the first time status becomes terminal.
    """
    now = now or utcnow()
    values: Dict[str, Any] = {
        k: v
        for k, v in changes.items()
        if k in UPDATABLE_FIELDS and not (v is None and k in REQUIRED_FIELDS)
    }

    if "status" in values:
        values["status"] = normalize_status(values["status"])
        if values["status"] == TERMINAL_STATUS:
            values["resolved_at"] = func.coalesce(issues.c.resolved_at, now)
    if "priority" in values:
        values["priority"] = normalize_priority(values["priority"])
    if "tags" in values:
        values["tags"] = _normalize_tags(values["tags"])
    for key in ("title", "description"):
        if key in values:
            values[key] = values[key].strip()
    if "assigned_to" in values and values["assigned_to"] is not None:
        values["assigned_to"] = values["assigned_to"].strip() or None

    values["updated_at"] = now

    with engine.begin() as conn:
        res = conn.execute(update(issues).where(issues.c.id == issue_id).values(**values))
        if res.rowcount == 0:
            raise KeyError(f"Issue {issue_id} not found")
        return _fetch_issue(conn, issue_id)


def change_status(engine: Engine, issue_id: int, to_status: str) -> Dict[str, Any]:
    to_status = normalize_status(to_status)
    current = get_issue(engine, issue_id)
    updated = update_issue(engine, issue_id, {"status": to_status})

    return {
        "issue": updated,
        "from_status": current["status"],
        "to_status": to_status,
    }


def assign_issue(
    engine: Engine,
    issue_id: int,
    assignee_id: Optional[int] = None,
    assigned_to: Optional[str] = None,
) -> Dict[str, Any]:
    """Assign to a registered user (label defaults to their name) or to a free-text label."""
    label = assigned_to
    if assignee_id is not None:
        user = get_user(engine, assignee_id)
        label = assigned_to or user["name"]

    now = utcnow()
    with engine.begin() as conn:
        res = conn.execute(
            update(issues)
            .where(issues.c.id == issue_id)
            .values(assignee_id=assignee_id, assigned_to=label, updated_at=now)
        )
        if res.rowcount == 0:
            raise KeyError(f"Issue {issue_id} not found")
        return _fetch_issue(conn, issue_id)


def delete_issue(engine: Engine, issue_id: int) -> Dict[str, Any]:
    with engine.begin() as conn:
        current = _fetch_issue(conn, issue_id)
        conn.execute(delete(issues).where(issues.c.id == issue_id))

    return current
