"""Audit interception for FastAPI endpoints.

Endpoints opt in with @audited(action, describe). Routers built with
route_class=AuditRoute look at every response their endpoints produce; when
the endpoint carries a binding and the response is a 2xx, an AuditEntry is
built and handed to the AuditDispatcher from a response background task, i.e.
after the response has been sent. The response itself is never touched.

Errors (4xx/5xx, raised HTTPException) are not recorded here.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from fastapi import Request, Response
from fastapi.routing import APIRoute
from starlette.background import BackgroundTask, BackgroundTasks

from tracker.auth import current_principal
from tracker.models import AuditAction, AuditEntry, AuditOutcome

logger = logging.getLogger(__name__)

AUDIT_ATTR = "__audit_binding__"


@dataclass(frozen=True)
class RequestSummary:
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    path_params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    client_host: Optional[str] = None
    user_agent: Optional[str] = None
    principal_id: Optional[int] = None

    def metadata(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "query": dict(self.query),
            "params": {k: str(v) for k, v in self.path_params.items()},
        }


@dataclass(frozen=True)
class OutcomeSummary:
    status_code: int
    payload: Any = None

    def data(self) -> Dict[str, Any]:
        """The `data` member of the standard response envelope, or {}."""
        if isinstance(self.payload, dict) and isinstance(self.payload.get("data"), dict):
            return self.payload["data"]
        return {}


Describe = Callable[[RequestSummary, OutcomeSummary], str]
TargetExtractor = Callable[[RequestSummary, OutcomeSummary], Optional[int]]


@dataclass(frozen=True)
class AuditBinding:
    action: AuditAction
    describe: Describe
    target_issue: Optional[TargetExtractor] = None
    target_user: Optional[TargetExtractor] = None


def audited(
    action: AuditAction,
    describe: Describe,
    target_issue: Optional[TargetExtractor] = None,
    target_user: Optional[TargetExtractor] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Bind an audit action to an endpoint.

    The endpoint is returned as-is (only an attribute is added), so FastAPI
    still sees its real signature. target_issue / target_user override the
    conventional lookups (body issueId/userId, path issue_id/user_id).
    """
    binding = AuditBinding(
        action=AuditAction(action),
        describe=describe,
        target_issue=target_issue,
        target_user=target_user,
    )

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        setattr(func, AUDIT_ATTR, binding)
        return func

    return decorator


def is_qualifying(status_code: int) -> bool:
    return 200 <= status_code < 300


# ----------------------------
# Target extraction
# ----------------------------

def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _body_value(req: RequestSummary, key: str) -> Any:
    if isinstance(req.body, dict):
        return req.body.get(key)
    return None


def default_target_issue(req: RequestSummary, out: OutcomeSummary) -> Optional[int]:
    found = _as_int(_body_value(req, "issueId"))
    if found is None:
        found = _as_int(req.path_params.get("issue_id"))
    return found


def default_target_user(req: RequestSummary, out: OutcomeSummary) -> Optional[int]:
    found = _as_int(_body_value(req, "userId"))
    if found is None:
        found = _as_int(req.path_params.get("user_id"))
    return found


def build_entry(binding: AuditBinding, req: RequestSummary, out: OutcomeSummary) -> AuditEntry:
    issue_of = binding.target_issue or default_target_issue
    user_of = binding.target_user or default_target_user

    return AuditEntry(
        action=binding.action.value,
        description=binding.describe(req, out),
        actor_id=req.principal_id,
        target_user_id=user_of(req, out),
        target_issue_id=issue_of(req, out),
        metadata=req.metadata(),
        ip_address=req.client_host,
        user_agent=req.user_agent,
        status=AuditOutcome.SUCCESS.value,
    )


# ----------------------------
# Summaries from the live request/response
# ----------------------------

def _parse_json(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


async def summarize_request(request: Request) -> RequestSummary:
    body = None
    if "json" in (request.headers.get("content-type") or ""):
        # Already read (and cached) by FastAPI when the endpoint takes a body.
        body = _parse_json(await request.body())

    return RequestSummary(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        path_params=dict(request.path_params),
        body=body,
        client_host=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        principal_id=current_principal(request),
    )


def summarize_outcome(response: Response) -> OutcomeSummary:
    raw = getattr(response, "body", b"")
    return OutcomeSummary(status_code=response.status_code, payload=_parse_json(raw))


def _append_background(response: Response, task: BackgroundTask) -> None:
    if response.background is None:
        response.background = task
        return
    tasks = BackgroundTasks()
    tasks.add_task(response.background)
    tasks.add_task(task)
    response.background = tasks


# ----------------------------
# Route class
# ----------------------------

class AuditRoute(APIRoute):
    """
    APIRoute that observes the outcome of audited endpoints.

    The dispatcher is looked up on request.app.state.audit_dispatcher; without
    one, audited endpoints behave exactly like plain ones.
    """

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()
        endpoint = self.endpoint

        async def audited_route_handler(request: Request) -> Response:
            response = await original_route_handler(request)

            binding: Optional[AuditBinding] = getattr(endpoint, AUDIT_ATTR, None)
            if binding is None or not is_qualifying(response.status_code):
                return response

            dispatcher: Optional[AuditDispatcher] = getattr(request.app.state, "audit_dispatcher", None)
            if dispatcher is None:
                logger.warning("No audit dispatcher configured; %s not recorded", binding.action.value)
                return response

            try:
                req = await summarize_request(request)
                entry = build_entry(binding, req, summarize_outcome(response))
                _append_background(response, BackgroundTask(dispatcher.submit, entry))
            except Exception:
                dispatcher.logger.exception(
                    "Audit entry for %s %s could not be built", request.method, request.url.path
                )

            return response

        return audited_route_handler


# ----------------------------
# Fire-and-forget persistence
# ----------------------------

class AuditDispatcher:
    """
    Runs ActivityRecorder.record on a detached thread pool.

    submit() never raises and never waits for the write; nothing ties the
    write to the client connection. flush() waits for queued writes.
    """

    def __init__(self, recorder: Any, max_workers: int = 2, logger: Optional[logging.Logger] = None) -> None:
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, entry: AuditEntry) -> None:
        try:
            fut = self._executor.submit(self._write, entry)
        except RuntimeError:
            self.logger.error("Audit dispatcher is shut down; dropped %s entry", entry.action)
            return

        with self._lock:
            self._pending.add(fut)
        fut.add_done_callback(self._forget)

    def _write(self, entry: AuditEntry) -> None:
        try:
            self.recorder.record(entry)
        except Exception:
            self.logger.exception("Audit write crashed (action=%s)", entry.action)

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued writes. Returns False if some were still running at timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
