"""Tests for AuditRoute / @audited / AuditDispatcher on a small standalone app."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import List

import pytest
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from pydantic import BaseModel

from tracker.interception import (
    AuditDispatcher,
    AuditRoute,
    OutcomeSummary,
    RequestSummary,
    audited,
    default_target_issue,
    default_target_user,
)
from tracker.middleware import RequestLogMiddleware
from tracker.models import AuditAction, AuditEntry


class ListRecorder:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry):
        with self._lock:
            self.entries.append(entry)
            return len(self.entries)


class BrokenRecorder:
    def record(self, entry: AuditEntry):
        raise RuntimeError("ledger is on fire")


class Note(BaseModel):
    text: str
    userId: int | None = None


def _describe(req: RequestSummary, out: OutcomeSummary) -> str:
    return f"{req.method} {req.path} -> {out.status_code}"


def _explode(req: RequestSummary, out: OutcomeSummary) -> str:
    raise ValueError("cannot describe")


def fake_principal(request: Request) -> None:
    request.state.user = {"id": 42}


def build_app(side_effects: list) -> FastAPI:
    app = FastAPI(dependencies=[Depends(fake_principal)])
    app.router.route_class = AuditRoute

    @app.post("/issues/{issue_id}/notes", status_code=201)
    @audited(AuditAction.ISSUE_UPDATE, _describe)
    def add_note(issue_id: int, note: Note):
        return {"success": True, "data": {"issueId": issue_id, "text": note.text}}

    @app.get("/plain")
    def plain():
        return {"ok": True}

    @app.get("/issues/{issue_id}/missing")
    @audited(AuditAction.ISSUE_UPDATE, _describe)
    def missing(issue_id: int):
        raise HTTPException(status_code=404, detail="Issue not found")

    @app.get("/issues/{issue_id}/conflict")
    @audited(AuditAction.ISSUE_UPDATE, _describe)
    def conflict(issue_id: int):
        return JSONResponse(status_code=409, content={"success": False})

    @app.delete("/issues/{issue_id}")
    @audited(AuditAction.ISSUE_DELETE, _describe)
    def remove(issue_id: int, tasks: BackgroundTasks):
        tasks.add_task(side_effects.append, issue_id)
        return {"success": True, "data": {"id": issue_id}}

    @app.post("/users/{user_id}/poke")
    @audited(AuditAction.OTHER, _explode)
    def poke(user_id: int):
        return {"success": True}

    return app


@pytest.fixture()
def side_effects() -> list:
    return []


@pytest.fixture()
def app(side_effects) -> FastAPI:
    return build_app(side_effects)


@pytest.fixture()
def ledger() -> ListRecorder:
    return ListRecorder()


@pytest.fixture()
def dispatcher(ledger):
    d = AuditDispatcher(ledger, max_workers=2, logger=logging.getLogger("tests.dispatcher"))
    yield d
    d.shutdown(wait=True)


@pytest.fixture()
def client(app, dispatcher):
    app.state.audit_dispatcher = dispatcher
    with TestClient(app) as c:
        yield c


class TestRecording:
    def test_one_entry_per_successful_call(self, client, dispatcher, ledger):
        r = client.post("/issues/7/notes", json={"text": "hi"}, headers={"User-Agent": "pytest-agent"})
        assert r.status_code == 201
        assert dispatcher.flush(timeout=10)

        [entry] = ledger.entries
        assert entry.action == "ISSUE_UPDATE"
        assert entry.status == "success"
        assert entry.actor_id == 42
        assert entry.target_issue_id == 7
        assert entry.description == "POST /issues/7/notes -> 201"
        assert entry.user_agent == "pytest-agent"
        assert entry.metadata["method"] == "POST"
        assert entry.metadata["params"] == {"issue_id": "7"}

    def test_body_user_id_becomes_target_user(self, client, dispatcher, ledger):
        client.post("/issues/7/notes", json={"text": "hi", "userId": 3})
        assert dispatcher.flush(timeout=10)

        assert ledger.entries[0].target_user_id == 3

    def test_unbound_endpoint_records_nothing(self, client, dispatcher, ledger):
        assert client.get("/plain").json() == {"ok": True}
        assert dispatcher.flush(timeout=10)
        assert ledger.entries == []

    def test_raised_http_error_records_nothing(self, client, dispatcher, ledger):
        assert client.get("/issues/1/missing").status_code == 404
        assert dispatcher.flush(timeout=10)
        assert ledger.entries == []

    def test_returned_error_response_records_nothing(self, client, dispatcher, ledger):
        assert client.get("/issues/1/conflict").status_code == 409
        assert dispatcher.flush(timeout=10)
        assert ledger.entries == []

    def test_validation_error_records_nothing(self, client, dispatcher, ledger):
        assert client.post("/issues/7/notes", json={}).status_code == 422
        assert dispatcher.flush(timeout=10)
        assert ledger.entries == []

    def test_each_endpoint_uses_its_own_binding(self, client, dispatcher, ledger):
        client.post("/issues/1/notes", json={"text": "a"})
        client.delete("/issues/2")
        assert dispatcher.flush(timeout=10)

        assert sorted((e.action, e.target_issue_id) for e in ledger.entries) == [
            ("ISSUE_DELETE", 2),
            ("ISSUE_UPDATE", 1),
        ]

    def test_endpoint_background_tasks_still_run(self, client, dispatcher, ledger, side_effects):
        assert client.delete("/issues/5").status_code == 200
        assert dispatcher.flush(timeout=10)

        assert side_effects == [5]
        assert [e.action for e in ledger.entries] == ["ISSUE_DELETE"]


class TestResponseIsUntouched:
    def _call(self, app):
        with TestClient(app) as c:
            r = c.post("/issues/9/notes", json={"text": "same"})
        return r.status_code, r.content

    def test_same_bytes_with_and_without_auditing(self, side_effects):
        plain = build_app(side_effects)
        plain.state.audit_dispatcher = None

        audited_app = build_app(side_effects)
        d = AuditDispatcher(ListRecorder())
        audited_app.state.audit_dispatcher = d
        try:
            assert self._call(plain) == self._call(audited_app)
        finally:
            d.shutdown()

    def test_failing_recorder_does_not_change_response(self, side_effects, caplog):
        broken_app = build_app(side_effects)
        d = AuditDispatcher(BrokenRecorder(), logger=logging.getLogger("tests.dispatcher.broken"))
        broken_app.state.audit_dispatcher = d

        reference = build_app(side_effects)
        reference.state.audit_dispatcher = None

        with caplog.at_level(logging.ERROR, logger="tests.dispatcher.broken"):
            try:
                got = self._call(broken_app)
                assert d.flush(timeout=10)
            finally:
                d.shutdown()

        assert got == self._call(reference)
        assert "Audit write crashed" in caplog.text

    def test_failing_description_is_logged_not_raised(self, client, dispatcher, ledger, caplog):
        with caplog.at_level(logging.ERROR, logger="tests.dispatcher"):
            r = client.post("/users/3/poke")

        assert r.status_code == 200
        assert r.json() == {"success": True}
        assert dispatcher.flush(timeout=10)
        assert ledger.entries == []
        assert "could not be built" in caplog.text


class TestDispatcher:
    def test_submit_after_shutdown_is_dropped(self, caplog):
        ledger = ListRecorder()
        d = AuditDispatcher(ledger, logger=logging.getLogger("tests.dispatcher.closed"))
        d.shutdown()

        with caplog.at_level(logging.ERROR, logger="tests.dispatcher.closed"):
            d.submit(AuditEntry(action="OTHER", description="late"))

        assert ledger.entries == []
        assert "shut down" in caplog.text

    def test_flush_with_nothing_pending(self, dispatcher):
        assert dispatcher.flush(timeout=0) is True

    def test_flush_reports_timeout(self):
        gate = threading.Event()

        class SlowRecorder:
            def record(self, entry):
                gate.wait(10)

        d = AuditDispatcher(SlowRecorder(), max_workers=1)
        try:
            d.submit(AuditEntry(action="OTHER", description="slow"))
            assert d.flush(timeout=0.05) is False
        finally:
            gate.set()
            d.shutdown()


def _gone_client_call(asgi_app, path: str, body: bytes) -> list:
    """
    Run one POST straight through the ASGI interface as a client that hangs
    up: receive() reports a disconnect once the body is consumed and send()
    discards everything, like a server writing to a closed socket.
    """
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [(b"host", b"testserver"), (b"content-type", b"application/json")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    inbox = [{"type": "http.request", "body": body, "more_body": False}]
    sent: list = []

    async def receive():
        if inbox:
            return inbox.pop(0)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message["type"])

    asyncio.run(asgi_app(scope, receive, send))
    return sent


class TestClientDisconnect:
    def test_write_survives_client_hanging_up(self, app, dispatcher, ledger):
        app.state.audit_dispatcher = dispatcher

        sent = _gone_client_call(RequestLogMiddleware(app), "/issues/7/notes", b'{"text": "bye"}')

        assert sent[0] == "http.response.start"
        assert dispatcher.flush(timeout=10)
        [entry] = ledger.entries
        assert entry.action == "ISSUE_UPDATE"
        assert entry.target_issue_id == 7

    def test_write_outlives_the_request(self, app):
        gate = threading.Event()
        ledger = ListRecorder()

        class GatedRecorder:
            def record(self, entry):
                gate.wait(10)
                return ledger.record(entry)

        d = AuditDispatcher(GatedRecorder(), max_workers=1)
        app.state.audit_dispatcher = d
        try:
            _gone_client_call(app, "/issues/3/notes", b'{"text": "slow"}')

            # request finished, write still pending
            assert d.flush(timeout=0.05) is False
            assert ledger.entries == []

            gate.set()
            assert d.flush(timeout=10)
            assert [e.target_issue_id for e in ledger.entries] == [3]
        finally:
            gate.set()
            d.shutdown()


class TestDefaultTargets:
    def test_body_wins_over_path(self):
        req = RequestSummary(
            method="POST",
            path="/x",
            path_params={"issue_id": "5", "user_id": "6"},
            body={"issueId": 8, "userId": 9},
        )
        out = OutcomeSummary(status_code=200)

        assert default_target_issue(req, out) == 8
        assert default_target_user(req, out) == 9

    def test_unparseable_values_are_ignored(self):
        req = RequestSummary(method="GET", path="/x", path_params={"issue_id": "abc"}, body={"userId": True})
        out = OutcomeSummary(status_code=200)

        assert default_target_issue(req, out) is None
        assert default_target_user(req, out) is None
