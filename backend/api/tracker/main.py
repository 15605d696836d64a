from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError

from tracker import repo
from tracker.audit import ActivityRecorder
from tracker.auth import optional_user, require_admin, require_user
from tracker.config import configure_logging, get_settings
from tracker.db import db_ping, get_engine
from tracker.interception import (
    AuditDispatcher,
    AuditRoute,
    OutcomeSummary,
    RequestSummary,
    audited,
)
from tracker.middleware import RequestLogMiddleware
from tracker.models import AuditAction
from tracker.query import build_issue_query
from tracker.schemas import (
    ActivitySummaryEnvelope,
    ActivitySummaryOut,
    AssignIn,
    AuditRecordListEnvelope,
    DeletedIssueEnvelope,
    IssueCreateIn,
    IssueEnvelope,
    IssueListEnvelope,
    IssueStatsEnvelope,
    IssueStatsOut,
    IssueUpdateIn,
    RoleChangeIn,
    StatusChangeEnvelope,
    StatusChangeIn,
    UserCreateIn,
    UserEnvelope,
)
from tracker.stats import AggregationError, issue_statistics
from tracker.time_utils import utcnow
from tracker.workflow import WorkflowError, list_priorities, list_statuses

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()
QUIET_PATHS = {"/health", "/healthz", "/readyz"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()

    # Tests may install their own recorder/dispatcher before startup.
    if getattr(app.state, "recorder", None) is None:
        app.state.recorder = ActivityRecorder(
            engine,
            logger=logging.getLogger("tracker.audit"),
            summary_days=settings.audit_summary_days,
        )
    if getattr(app.state, "audit_dispatcher", None) is None:
        app.state.audit_dispatcher = AuditDispatcher(
            app.state.recorder,
            max_workers=settings.audit_workers,
            logger=logging.getLogger("tracker.audit"),
        )

    logger.info("Ops Tracker API starting (%s)", settings.app_env)
    yield

    app.state.audit_dispatcher.shutdown(wait=True)
    logger.info("Ops Tracker API stopped")


app = FastAPI(title="Ops Tracker API", version="1.0.0", lifespan=lifespan)
app.router.route_class = AuditRoute

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.add_middleware(
    RequestLogMiddleware,
    quiet_paths=QUIET_PATHS if settings.is_production else (),
    logger=logging.getLogger("tracker.requests"),
)


def get_recorder(request: Request) -> ActivityRecorder:
    return request.app.state.recorder


def _aggregation_failure(e: AggregationError) -> HTTPException:
    if e.kind == "window":
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=503, detail=str(e))


# -----------------------------
# Audit descriptions
# -----------------------------
def _issue_label(out: OutcomeSummary) -> str:
    data = out.data()
    return f"{data.get('title')} ({data.get('code')})"


def describe_user_register(req: RequestSummary, out: OutcomeSummary) -> str:
    return f"New user registered: {out.data().get('email')}"


def describe_role_change(req: RequestSummary, out: OutcomeSummary) -> str:
    data = out.data()
    return f"Role of {data.get('email')} changed to {data.get('role')}"


def describe_issue_create(req: RequestSummary, out: OutcomeSummary) -> str:
    return f"Issue created: {_issue_label(out)}"


def describe_issue_update(req: RequestSummary, out: OutcomeSummary) -> str:
    return f"Issue updated: {_issue_label(out)}"


def describe_status_change(req: RequestSummary, out: OutcomeSummary) -> str:
    payload = out.payload or {}
    return (
        f"Issue status changed: {_issue_label(out)} "
        f"{payload.get('fromStatus')} -> {payload.get('toStatus')}"
    )


def describe_issue_assign(req: RequestSummary, out: OutcomeSummary) -> str:
    assignee = out.data().get("assignedTo") or "nobody"
    return f"Issue assigned: {_issue_label(out)} -> {assignee}"


def describe_issue_delete(req: RequestSummary, out: OutcomeSummary) -> str:
    return f"Issue deleted: {_issue_label(out)}"


def issue_from_outcome(req: RequestSummary, out: OutcomeSummary) -> Optional[int]:
    issue_id = out.data().get("id")
    return int(issue_id) if issue_id is not None else None


def registered_user(req: RequestSummary, out: OutcomeSummary) -> Optional[int]:
    user_id = out.data().get("id")
    return int(user_id) if user_id is not None else None


# -----------------------------
# Health checks
# -----------------------------
@app.get("/")
def root():
    return {
        "message": "Ops Tracker API",
        "version": app.version,
        "status": "running",
        "endpoints": {"health": "/health", "users": "/api/users", "issues": "/api/issues"},
    }


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/readyz")
def readyz():
    engine = get_engine()
    try:
        db_ping(engine)
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {e}")
    return {"status": "ready", "db": "ok"}


@app.get("/health")
def health():
    engine = get_engine()
    try:
        db_ping(engine)
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    return {
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "message": "OK",
        "timestamp": utcnow().isoformat(),
        "environment": settings.app_env,
        "database": {"status": db_status, "dialect": engine.dialect.name},
    }


@app.get("/workflow/states")
def workflow_states():
    return {"statuses": list_statuses(), "priorities": list_priorities()}


# -----------------------------
# User endpoints
# -----------------------------
@app.post("/api/users", response_model=UserEnvelope, status_code=201)
@audited(AuditAction.USER_REGISTER, describe_user_register, target_user=registered_user)
def register_user(body: UserCreateIn, _: Optional[Dict[str, Any]] = Depends(optional_user)):
    engine = get_engine()

    try:
        user = repo.create_user(engine, name=body.name, email=body.email, role=body.role)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="User already exists with this email")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("User registered: id=%s email=%s", user["id"], user["email"])
    return {"success": True, "message": "User registered successfully", "data": user}


@app.get("/api/users/me", response_model=UserEnvelope)
def get_me(user: Dict[str, Any] = Depends(require_user)):
    return {"success": True, "data": user}


@app.patch("/api/users/{user_id}/role", response_model=UserEnvelope)
@audited(AuditAction.ROLE_CHANGE, describe_role_change)
def change_role(user_id: int, body: RoleChangeIn, _: Dict[str, Any] = Depends(require_admin)):
    engine = get_engine()

    try:
        user = repo.set_user_role(engine, user_id, body.role)
    except KeyError:
        raise HTTPException(status_code=404, detail="User not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "message": "Role updated", "data": user}


@app.get("/api/users/{user_id}/activity", response_model=AuditRecordListEnvelope)
def user_activity(
    user_id: int,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    user: Dict[str, Any] = Depends(require_user),
    recorder: ActivityRecorder = Depends(get_recorder),
):
    if user["id"] != user_id and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not allowed to read this activity")

    try:
        records = recorder.activity_for(user_id, limit or settings.history_limit)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "count": len(records), "data": records}


# -----------------------------
# Issue endpoints
# -----------------------------
@app.get("/api/issues", response_model=IssueListEnvelope)
def list_issues(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
    order: Optional[str] = None,
    _: Dict[str, Any] = Depends(require_user),
):
    query = build_issue_query(status=status, priority=priority, search=search, sort_by=sort_by, order=order)
    if query.ignored_sort:
        logger.warning("Ignoring unsupported sort field %r; using %s", query.ignored_sort, query.sort_field)

    try:
        items = repo.list_issues(get_engine(), query)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "count": len(items), "data": items}


@app.get("/api/issues/stats", response_model=IssueStatsEnvelope)
def get_issue_stats(_: Dict[str, Any] = Depends(require_user)):
    try:
        stats = issue_statistics(get_engine())
    except AggregationError as e:
        raise _aggregation_failure(e)

    out = IssueStatsOut.model_validate(stats)
    if stats.avg_resolution_time is not None:
        out.avg_resolution_seconds = stats.avg_resolution_time.total_seconds()
    return {"success": True, "data": out}


@app.get("/api/issues/{issue_id}", response_model=IssueEnvelope)
def get_issue(issue_id: int, _: Dict[str, Any] = Depends(require_user)):
    try:
        return {"success": True, "data": repo.get_issue(get_engine(), issue_id)}
    except KeyError:
        raise HTTPException(status_code=404, detail="Issue not found")


@app.post("/api/issues", response_model=IssueEnvelope, status_code=201)
@audited(AuditAction.ISSUE_CREATE, describe_issue_create, target_issue=issue_from_outcome)
def create_issue(body: IssueCreateIn, user: Dict[str, Any] = Depends(require_user)):
    engine = get_engine()

    try:
        issue = repo.create_issue(
            engine,
            title=body.title,
            description=body.description,
            status=body.status,
            priority=body.priority,
            assigned_to=body.assigned_to,
            assignee_id=body.assignee_id,
            created_by=user["id"],
            tags=body.tags,
            due_date=body.due_date,
            estimated_hours=body.estimated_hours,
            actual_hours=body.actual_hours,
        )
    except WorkflowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail=str(e.orig))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("Issue created: %s by user=%s", issue["code"], user["id"])
    return {"success": True, "message": "Issue created successfully", "data": issue}


@app.put("/api/issues/{issue_id}", response_model=IssueEnvelope)
@audited(AuditAction.ISSUE_UPDATE, describe_issue_update)
def update_issue(issue_id: int, body: IssueUpdateIn, user: Dict[str, Any] = Depends(require_user)):
    changes = body.model_dump(exclude_unset=True)

    try:
        issue = repo.update_issue(get_engine(), issue_id, changes)
    except KeyError:
        raise HTTPException(status_code=404, detail="Issue not found")
    except WorkflowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("Issue updated: %s by user=%s", issue["code"], user["id"])
    return {"success": True, "message": "Issue updated successfully", "data": issue}


@app.post("/api/issues/{issue_id}/status", response_model=StatusChangeEnvelope)
@audited(AuditAction.ISSUE_STATUS_CHANGE, describe_status_change)
def change_issue_status(issue_id: int, body: StatusChangeIn, _: Dict[str, Any] = Depends(require_user)):
    try:
        result = repo.change_status(get_engine(), issue_id, body.status)
    except KeyError:
        raise HTTPException(status_code=404, detail="Issue not found")
    except WorkflowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "success": True,
        "message": "Status updated",
        "data": result["issue"],
        "from_status": result["from_status"],
        "to_status": result["to_status"],
    }


@app.post("/api/issues/{issue_id}/assign", response_model=IssueEnvelope)
@audited(AuditAction.ISSUE_ASSIGN, describe_issue_assign)
def assign_issue(issue_id: int, body: AssignIn, _: Dict[str, Any] = Depends(require_user)):
    try:
        issue = repo.assign_issue(
            get_engine(),
            issue_id,
            assignee_id=body.user_id,
            assigned_to=body.assigned_to,
        )
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "Not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "message": "Issue assigned", "data": issue}


@app.delete("/api/issues/{issue_id}", response_model=DeletedIssueEnvelope)
@audited(AuditAction.ISSUE_DELETE, describe_issue_delete)
def delete_issue(issue_id: int, user: Dict[str, Any] = Depends(require_user)):
    try:
        issue = repo.delete_issue(get_engine(), issue_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Issue not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("Issue deleted: %s by user=%s", issue["code"], user["id"])
    return {"success": True, "message": "Issue deleted successfully", "data": issue}


@app.get("/api/issues/{issue_id}/history", response_model=AuditRecordListEnvelope)
def issue_history(
    issue_id: int,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    _: Dict[str, Any] = Depends(require_user),
    recorder: ActivityRecorder = Depends(get_recorder),
):
    # No existence check: the ledger outlives deleted issues.
    try:
        records = recorder.history_for(issue_id, limit or settings.history_limit)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "count": len(records), "data": records}


# -----------------------------
# Audit summary
# -----------------------------
@app.get("/api/audit/summary", response_model=ActivitySummaryEnvelope)
def audit_summary(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    _: Dict[str, Any] = Depends(require_admin),
    recorder: ActivityRecorder = Depends(get_recorder),
):
    try:
        summary = recorder.summarize(start, end)
    except AggregationError as e:
        raise _aggregation_failure(e)

    return {"success": True, "data": ActivitySummaryOut.model_validate(summary)}


def run() -> None:
    """Serve the API with uvicorn on HOST:PORT."""
    uvicorn.run(
        "tracker.main:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
