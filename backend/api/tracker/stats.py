"""Issue statistics for the dashboard.

Every facet is folded from one grouped SELECT, so status counts, priority
counts, the total and the average resolution time always describe the same
snapshot of the issues table, whatever isolation level the database runs at.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from tracker.models import CountBucket, IssueStatistics
from tracker.tables import issues
from tracker.workflow import TERMINAL_STATUS

logger = logging.getLogger(__name__)


class AggregationError(Exception):
    """
    An aggregation could not be computed as a whole.

    kind is "window" for a malformed time window, "storage" when the store
    failed underneath.
    """

    def __init__(self, message: str, kind: str = "storage") -> None:
        super().__init__(message)
        self.kind = kind


def _seconds_between_sql(dialect_name: str, start: Any, end: Any) -> Any:
    """
    `end - start` in seconds as a float SQL expression.

    SQLite has no interval type; julianday() gives fractional days.
    """
    if dialect_name == "sqlite":
        return (func.julianday(end) - func.julianday(start)) * 86400.0
    return func.extract("epoch", end - start)


def sorted_buckets(counts: Counter) -> list[CountBucket]:
    """Count buckets, largest first; ties broken by key for stable output."""
    items = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [CountBucket(key=k, count=int(v)) for k, v in items]


def fold_issue_rows(rows: Iterable[Any]) -> IssueStatistics:
    by_status: Counter = Counter()
    by_priority: Counter = Counter()
    total = 0
    resolved_count = 0
    resolved_seconds = 0.0

    for r in rows:
        n = int(r["count"])
        by_status[r["status"]] += n
        by_priority[r["priority"]] += n
        total += n
        resolved_count += int(r["resolved_count"] or 0)
        resolved_seconds += float(r["resolved_seconds"] or 0.0)

    avg: Optional[timedelta] = None
    if resolved_count:
        avg = timedelta(seconds=resolved_seconds / resolved_count)

    return IssueStatistics(
        by_status=sorted_buckets(by_status),
        by_priority=sorted_buckets(by_priority),
        total=total,
        resolved_count=resolved_count,
        avg_resolution_time=avg,
    )


def issue_statistics(engine: Engine) -> IssueStatistics:
    """
    Counts by status and priority, total, and average resolution time.

    Resolution time uses the sticky first resolved_at, and only issues that
    are currently in the terminal status take part in the average.
    """
    resolved = and_(issues.c.status == TERMINAL_STATUS, issues.c.resolved_at.isnot(None))
    seconds = _seconds_between_sql(engine.dialect.name, issues.c.created_at, issues.c.resolved_at)

    sql = (
        select(
            issues.c.status,
            issues.c.priority,
            func.count().label("count"),
            func.sum(case((resolved, 1), else_=0)).label("resolved_count"),
            func.sum(case((resolved, seconds), else_=None)).label("resolved_seconds"),
        )
        .group_by(issues.c.status, issues.c.priority)
    )

    try:
        with engine.begin() as conn:
            rows = conn.execute(sql).mappings().all()
    except SQLAlchemyError as e:
        logger.error("Issue statistics failed: %s", e)
        raise AggregationError("Issue statistics are unavailable") from e

    return fold_issue_rows(rows)
