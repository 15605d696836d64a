"""Issue listing filters.

Turns the loosely typed listing parameters (status, priority, search, sortBy,
order) into a filter and sort description over the issues table. Nothing in
here touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import and_, func, or_, true
from sqlalchemy.sql.elements import ColumnElement

from tracker.tables import issues
from tracker.workflow import ALL

DEFAULT_SORT_FIELD = "created_at"

# Explicit allow-list: the sort field ends up in ORDER BY.
SORTABLE_FIELDS: dict[str, str] = {
    "created_at": "created_at",
    "createdAt": "created_at",
    "updated_at": "updated_at",
    "updatedAt": "updated_at",
    "resolved_at": "resolved_at",
    "resolvedAt": "resolved_at",
    "due_date": "due_date",
    "dueDate": "due_date",
    "title": "title",
    "status": "status",
    "priority": "priority",
    "code": "code",
    "issueId": "code",
}

SEARCH_ESCAPE = "\\"


@dataclass(frozen=True)
class IssueQuery:
    clauses: List[ColumnElement] = field(default_factory=list)
    sort_field: str = DEFAULT_SORT_FIELD
    descending: bool = True
    # Sort field the caller asked for but that is not sortable.
    ignored_sort: Optional[str] = None

    def where(self) -> ColumnElement:
        if not self.clauses:
            return true()
        return and_(*self.clauses)

    def order_by(self) -> list[Any]:
        column = issues.c[self.sort_field]
        tiebreak = issues.c.id
        if self.descending:
            return [column.desc(), tiebreak.desc()]
        return [column.asc(), tiebreak.asc()]


def _present(value: Optional[str]) -> bool:
    if value is None:
        return False
    v = value.strip()
    return bool(v) and v.lower() != ALL


def _escape_like(text: str) -> str:
    return (
        text.replace(SEARCH_ESCAPE, SEARCH_ESCAPE * 2)
        .replace("%", SEARCH_ESCAPE + "%")
        .replace("_", SEARCH_ESCAPE + "_")
    )


def _search_clause(search: str) -> ColumnElement:
    pattern = f"%{_escape_like(search.lower())}%"
    return or_(
        func.lower(issues.c.title).like(pattern, escape=SEARCH_ESCAPE),
        func.lower(issues.c.description).like(pattern, escape=SEARCH_ESCAPE),
        func.lower(func.coalesce(issues.c.assigned_to, "")).like(pattern, escape=SEARCH_ESCAPE),
    )


def build_issue_query(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    order: Optional[str] = None,
) -> IssueQuery:
    """
    Rules (combined with AND):
      - status:   exact match unless missing or "all"
      - priority: exact match unless missing or "all"
      - search:   case-insensitive substring over title OR description OR assigned_to
      - sort:     sort_by (default created_at), order "desc" (default) else ascending
    """
    clauses: List[ColumnElement] = []

    if _present(status):
        clauses.append(issues.c.status == status.strip())

    if _present(priority):
        clauses.append(issues.c.priority == priority.strip())

    if search:
        clauses.append(_search_clause(search))

    requested = (sort_by or "").strip()
    ignored = None
    if not requested:
        sort_field = DEFAULT_SORT_FIELD
    elif requested in SORTABLE_FIELDS:
        sort_field = SORTABLE_FIELDS[requested]
    else:
        sort_field = DEFAULT_SORT_FIELD
        ignored = requested

    descending = (order or "desc") == "desc"

    return IssueQuery(
        clauses=clauses,
        sort_field=sort_field,
        descending=descending,
        ignored_sort=ignored,
    )
