"""Pytest configuration for the Ops Tracker API test suite."""

from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from tracker import repo
from tracker.audit import ActivityRecorder
from tracker.db import init_db, set_engine

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Settable clock for ActivityRecorder timestamps."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_engine(path) -> Engine:
    eng = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )

    # pysqlite defers BEGIN until the first write; take the write lock up front
    # so concurrent writers queue on the busy timeout instead of failing.
    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


@pytest.fixture()
def engine(tmp_path) -> Generator[Engine, None, None]:
    """A fresh file-backed SQLite database with the full schema."""
    eng = make_engine(tmp_path / "tracker.db")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def recorder(engine, clock) -> ActivityRecorder:
    return ActivityRecorder(engine, logger=logging.getLogger("tests.audit"), clock=clock)


@pytest.fixture()
def users(engine):
    """An admin and a regular user."""
    admin = repo.create_user(engine, name="Ada Admin", email="ada@example.com", role="admin")
    user = repo.create_user(engine, name="Uma User", email="uma@example.com")
    return {"admin": admin, "user": user}


@pytest.fixture()
def client(engine) -> Generator[TestClient, None, None]:
    """TestClient over the real app, bound to the test database."""
    from tracker.main import app

    set_engine(engine)
    app.state.recorder = None
    app.state.audit_dispatcher = None
    with TestClient(app) as c:
        yield c
    app.state.recorder = None
    app.state.audit_dispatcher = None
    set_engine(None)


def as_user(user) -> dict:
    return {"X-User-Id": str(user["id"])}


def flush_audit(client: TestClient) -> None:
    assert client.app.state.audit_dispatcher.flush(timeout=10)
