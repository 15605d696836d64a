"""Activity Recorder: the append-only audit ledger.

This module is the only writer of audit_logs, and it only ever inserts.
Writes are best effort: a failed insert is reported on the injected logger
and swallowed, so nothing that records an action ever has to handle it.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from tracker.models import (
    ActivitySummary,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    UserBucket,
)
from tracker.stats import AggregationError, sorted_buckets
from tracker.tables import audit_logs, issues, users
from tracker.time_utils import as_utc, utcnow

DESCRIPTION_MAX = 500
DEFAULT_LIMIT = 50
DEFAULT_SUMMARY_DAYS = 30
TOP_USERS = 10


class ActivityRecorder:
    def __init__(
        self,
        engine: Engine,
        logger: Optional[logging.Logger] = None,
        summary_days: int = DEFAULT_SUMMARY_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)
        self.summary_days = summary_days
        self.clock = clock

    # ----------------------------
    # Write path
    # ----------------------------

    def record(self, entry: AuditEntry) -> Optional[int]:
        """Persist one entry. Returns the new record id, or None if it was dropped."""
        try:
            action = AuditAction(entry.action).value
        except ValueError:
            self.logger.error("Audit log rejected: unknown action %r", entry.action)
            return None

        try:
            status = AuditOutcome(entry.status or AuditOutcome.SUCCESS).value
        except ValueError:
            self.logger.error("Audit log rejected: unknown status %r (action=%s)", entry.status, action)
            return None

        description = (entry.description or action)[:DESCRIPTION_MAX]

        values = {
            "action": action,
            "actor_id": entry.actor_id,
            "target_user_id": entry.target_user_id,
            "target_issue_id": entry.target_issue_id,
            "description": description,
            "metadata": dict(entry.metadata or {}),
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "status": status,
            "created_at": self.clock(),
        }

        try:
            with self.engine.begin() as conn:
                return conn.execute(insert(audit_logs).values(**values).returning(audit_logs.c.id)).scalar_one()
        except Exception:
            self.logger.exception("Audit log write failed (action=%s, actor=%s)", action, entry.actor_id)
            return None

    # ----------------------------
    # Read path
    # ----------------------------

    def _enriched_select(self):
        actor = users.alias("actor")
        target_user = users.alias("target_user")
        return select(
            audit_logs,
            actor.c.name.label("actor_name"),
            actor.c.email.label("actor_email"),
            target_user.c.name.label("target_user_name"),
            target_user.c.email.label("target_user_email"),
            issues.c.code.label("target_issue_code"),
            issues.c.title.label("target_issue_title"),
        ).select_from(
            audit_logs.outerjoin(actor, actor.c.id == audit_logs.c.actor_id)
            .outerjoin(target_user, target_user.c.id == audit_logs.c.target_user_id)
            .outerjoin(issues, issues.c.id == audit_logs.c.target_issue_id)
        )

    def _recent(self, where: Any, limit: int) -> List[Dict[str, Any]]:
        sql = (
            self._enriched_select()
            .where(where)
            .order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc())
            .limit(max(0, int(limit)))
        )

        with self.engine.begin() as conn:
            rows = conn.execute(sql).mappings().all()

        out = []
        for r in rows:
            d = dict(r)
            d["created_at"] = as_utc(d["created_at"])
            d["metadata"] = dict(d.get("metadata") or {})
            out.append(d)
        return out

    def activity_for(self, user_id: int, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """Most recent records acted by `user_id`, newest first."""
        return self._recent(audit_logs.c.actor_id == user_id, limit)

    def history_for(self, issue_id: int, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """Most recent records that touched `issue_id`, newest first. Survives issue deletion."""
        return self._recent(audit_logs.c.target_issue_id == issue_id, limit)

    # ----------------------------
    # Aggregation
    # ----------------------------

    def summarize(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ActivitySummary:
        """
        Activity in the half-open window [start, end).

        end defaults to now and start to `summary_days` before end. Counts by
        action, by outcome status, the top actors and the total are folded
        from a single grouped SELECT, so they always agree with each other.
        """
        end = as_utc(end) or self.clock()
        start = as_utc(start) or (end - timedelta(days=self.summary_days))
        if start > end:
            raise AggregationError(
                f"Invalid window: start {start.isoformat()} is after end {end.isoformat()}",
                kind="window",
            )

        actor = users.alias("actor")
        sql = (
            select(
                audit_logs.c.action,
                audit_logs.c.status,
                audit_logs.c.actor_id,
                actor.c.name.label("actor_name"),
                actor.c.email.label("actor_email"),
                func.count().label("count"),
            )
            .select_from(audit_logs.outerjoin(actor, actor.c.id == audit_logs.c.actor_id))
            .where(audit_logs.c.created_at >= start, audit_logs.c.created_at < end)
            .group_by(
                audit_logs.c.action,
                audit_logs.c.status,
                audit_logs.c.actor_id,
                actor.c.name,
                actor.c.email,
            )
        )

        try:
            with self.engine.begin() as conn:
                rows = conn.execute(sql).mappings().all()
        except SQLAlchemyError as e:
            self.logger.error("Activity summary failed: %s", e)
            raise AggregationError("Activity summary is unavailable") from e

        by_action: Counter = Counter()
        by_status: Counter = Counter()
        by_user: Counter = Counter()
        user_info: Dict[int, tuple] = {}
        total = 0

        for r in rows:
            n = int(r["count"])
            total += n
            by_action[r["action"]] += n
            by_status[r["status"]] += n
            # Only actors that still resolve to a user are ranked.
            if r["actor_id"] is not None and r["actor_name"] is not None:
                by_user[r["actor_id"]] += n
                user_info[r["actor_id"]] = (r["actor_name"], r["actor_email"])

        top = sorted(by_user.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_USERS]

        return ActivitySummary(
            start=start,
            end=end,
            by_action=sorted_buckets(by_action),
            by_user=[
                UserBucket(user_id=uid, count=n, name=user_info[uid][0], email=user_info[uid][1])
                for uid, n in top
            ],
            by_status=sorted_buckets(by_status),
            total=total,
        )
