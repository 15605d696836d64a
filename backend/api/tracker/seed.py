"""Local bootstrap data.

    ops-tracker-seed              wipe users/issues/audit logs, then load the sample set
    ops-tracker-seed -d           wipe only
    ops-tracker-seed --create-schema   create tables first (SQLite / scratch databases)
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine

from tracker import repo
from tracker.audit import ActivityRecorder
from tracker.config import configure_logging, get_settings
from tracker.db import get_engine, init_db
from tracker.models import AuditAction, AuditEntry
from tracker.tables import audit_logs, issue_counters, issues, users
from tracker.time_utils import utcnow

logger = logging.getLogger(__name__)

SEED_USERS: List[Dict[str, str]] = [
    {"name": "Admin User", "email": "admin@opstracker.com", "role": "admin"},
    {"name": "John Manager", "email": "manager@opstracker.com", "role": "manager"},
    {"name": "Jane Developer", "email": "jane@opstracker.com", "role": "user"},
    {"name": "Bob Developer", "email": "bob@opstracker.com", "role": "user"},
]

SEED_ISSUES: List[Dict[str, Any]] = [
    {
        "title": "Fix login authentication bug",
        "description": "Users are experiencing issues logging in with special characters in their passwords.",
        "status": "Open",
        "priority": "High",
        "assignee": "jane@opstracker.com",
        "tags": ["authentication", "bug", "urgent"],
        "estimated_hours": 8,
    },
    {
        "title": "Implement password reset feature",
        "description": "Add functionality for users to reset their passwords via email.",
        "status": "In Progress",
        "priority": "Medium",
        "assignee": "bob@opstracker.com",
        "tags": ["feature", "authentication"],
        "estimated_hours": 16,
        "actual_hours": 6,
    },
    {
        "title": "Optimize database queries",
        "description": "Several dashboard queries are running slowly. Need to add indexes.",
        "status": "Open",
        "priority": "Medium",
        "assignee": "jane@opstracker.com",
        "tags": ["performance", "database"],
        "estimated_hours": 12,
    },
    {
        "title": "Add dark mode to UI",
        "description": "Implement dark mode theme toggle.",
        "status": "Open",
        "priority": "Low",
        "tags": ["feature", "ui", "enhancement"],
        "estimated_hours": 20,
    },
    {
        "title": "Fix mobile responsive layout",
        "description": "Dashboard table not displaying correctly on mobile.",
        "status": "Closed",
        "priority": "High",
        "assignee": "bob@opstracker.com",
        "tags": ["bug", "ui", "mobile"],
        "estimated_hours": 10,
        "actual_hours": 12,
        "resolved_days_ago": 2,
    },
]

# How far back the sample issues are opened.
OPENED_DAYS_AGO = 5


def destroy(engine: Engine) -> None:
    """Delete every user, issue and audit record and restart issue numbering."""
    with engine.begin() as conn:
        conn.execute(delete(audit_logs))
        conn.execute(delete(issues))
        conn.execute(delete(users))
        conn.execute(update(issue_counters).values(value=0))


def seed(
    engine: Engine,
    recorder: Optional[ActivityRecorder] = None,
    now: Optional[datetime] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    now = now or utcnow()
    recorder = recorder or ActivityRecorder(engine, logger=logging.getLogger("tracker.audit"))

    destroy(engine)

    created_users = [repo.create_user(engine, **u) for u in SEED_USERS]
    by_email = {u["email"]: u for u in created_users}
    admin = next(u for u in created_users if u["role"] == "admin")
    logger.info("Created %d users", len(created_users))

    opened_at = now - timedelta(days=OPENED_DAYS_AGO)
    created_issues = []
    for item in SEED_ISSUES:
        assignee = by_email.get(item.get("assignee") or "")
        issue = repo.create_issue(
            engine,
            title=item["title"],
            description=item["description"],
            priority=item["priority"],
            assigned_to=assignee["name"] if assignee else None,
            assignee_id=assignee["id"] if assignee else None,
            created_by=admin["id"],
            tags=item.get("tags"),
            estimated_hours=item.get("estimated_hours"),
            actual_hours=item.get("actual_hours"),
            now=opened_at,
        )
        if item["status"] != issue["status"]:
            moved_at = now - timedelta(days=item.get("resolved_days_ago", 0))
            issue = repo.update_issue(engine, issue["id"], {"status": item["status"]}, now=moved_at)
        created_issues.append(issue)
    logger.info("Created %d issues", len(created_issues))

    first = created_issues[0]
    recorder.record(
        AuditEntry(
            action=AuditAction.USER_REGISTER.value,
            description="Admin user registered",
            actor_id=admin["id"],
            target_user_id=admin["id"],
        )
    )
    recorder.record(
        AuditEntry(
            action=AuditAction.ISSUE_CREATE.value,
            description=f"Issue created: {first['title']} ({first['code']})",
            actor_id=admin["id"],
            target_issue_id=first["id"],
        )
    )

    return {"users": created_users, "issues": created_issues}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Load (or wipe) the Ops Tracker sample data.")
    parser.add_argument("-d", "--destroy", action="store_true", help="only delete existing data")
    parser.add_argument("--create-schema", action="store_true", help="create missing tables first")
    args = parser.parse_args(argv)

    configure_logging(get_settings())
    engine = get_engine()
    if args.create_schema:
        init_db(engine)

    if args.destroy:
        destroy(engine)
        logger.info("All data deleted")
        return 0

    data = seed(engine)
    for user in data["users"]:
        logger.info("Seed user: %s <%s> (%s) id=%s", user["name"], user["email"], user["role"], user["id"])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
