"""Initial schema: users, issues, issue counter, audit ledger

- users
- issues (sequential code, sticky resolved_at)
- issue_counters (seeded with the "issue" sequence at 0)
- audit_logs (append-only, reference columns without foreign keys)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "issues",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="Open"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="Medium"),
        sa.Column("assigned_to", sa.String(100), nullable=True),
        sa.Column("assignee_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_by", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("tags", sa.JSON, nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_hours", sa.Float, nullable=True),
        sa.Column("actual_hours", sa.Float, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_issues_status_priority", "issues", ["status", "priority"])
    op.create_index("ix_issues_status_created_at", "issues", ["status", "created_at"])
    op.create_index("ix_issues_created_by_status", "issues", ["created_by", "status"])
    op.create_index("ix_issues_assignee_status", "issues", ["assignee_id", "status"])
    op.create_index("ix_issues_created_at", "issues", ["created_at"])
    op.create_index("ix_issues_updated_at", "issues", ["updated_at"])

    counters = op.create_table(
        "issue_counters",
        sa.Column("name", sa.String(50), primary_key=True),
        sa.Column("value", sa.Integer, nullable=False, server_default="0"),
    )
    op.bulk_insert(counters, [{"name": "issue", "value": 0}])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("actor_id", sa.Integer, nullable=True),
        sa.Column("target_user_id", sa.Integer, nullable=True),
        sa.Column("target_issue_id", sa.Integer, nullable=True),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("status", sa.String(10), nullable=False, server_default="success"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_actor_created_at", "audit_logs", ["actor_id", "created_at"])
    op.create_index("ix_audit_logs_action_created_at", "audit_logs", ["action", "created_at"])
    op.create_index("ix_audit_logs_target_issue_created_at", "audit_logs", ["target_issue_id", "created_at"])
    op.create_index("ix_audit_logs_status_created_at", "audit_logs", ["status", "created_at"])
    op.create_index(
        "ix_audit_logs_action_status_created_at", "audit_logs", ["action", "status", "created_at"]
    )


def downgrade() -> None:
    raise NotImplementedError("Downgrades are not supported: audit_logs is an append-only ledger.")
