from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()


users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


issues = Table(
    "issues",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(32), nullable=False, unique=True),
    Column("title", String(200), nullable=False),
    Column("description", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="Open"),
    Column("priority", String(10), nullable=False, server_default="Medium"),
    Column("assigned_to", String(100), nullable=True),
    Column("assignee_id", Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    Column("created_by", Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    Column("tags", JSON, nullable=False, default=list),
    Column("due_date", DateTime(timezone=True), nullable=True),
    Column("estimated_hours", Float, nullable=True),
    Column("actual_hours", Float, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    # Sticky: first transition into the terminal status only.
    Column("resolved_at", DateTime(timezone=True), nullable=True),
    Index("ix_issues_status_priority", "status", "priority"),
    Index("ix_issues_status_created_at", "status", "created_at"),
    Index("ix_issues_created_by_status", "created_by", "status"),
    Index("ix_issues_assignee_status", "assignee_id", "status"),
    Index("ix_issues_created_at", "created_at"),
    Index("ix_issues_updated_at", "updated_at"),
)


# One row per sequence; bumped in the same transaction as the insert it numbers.
issue_counters = Table(
    "issue_counters",
    metadata,
    Column("name", String(50), primary_key=True),
    Column("value", Integer, nullable=False, server_default="0"),
)


# Append-only ledger. Reference columns carry no foreign keys so a record
# outlives the issue or user it mentions.
audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(40), nullable=False),
    Column("actor_id", Integer, nullable=True),
    Column("target_user_id", Integer, nullable=True),
    Column("target_issue_id", Integer, nullable=True),
    Column("description", String(500), nullable=False),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("ip_address", String(64), nullable=True),
    Column("user_agent", String(512), nullable=True),
    Column("status", String(10), nullable=False, server_default="success"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_audit_logs_created_at", "created_at"),
    Index("ix_audit_logs_actor_created_at", "actor_id", "created_at"),
    Index("ix_audit_logs_action_created_at", "action", "created_at"),
    Index("ix_audit_logs_target_issue_created_at", "target_issue_id", "created_at"),
    Index("ix_audit_logs_status_created_at", "status", "created_at"),
    Index("ix_audit_logs_action_status_created_at", "action", "status", "created_at"),
)
