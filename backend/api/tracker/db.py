# backend/api/tracker/db.py
from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import create_engine, insert, select, text
from sqlalchemy.engine import Engine

from tracker.config import API_DIR, load_env_once


_engine: Engine | None = None


def get_engine() -> Engine:
    global _engine

    if _engine is not None:
        return _engine

    load_env_once()

    db_url = os.getenv("DATABASE_URL") or os.getenv("DB_URL")
    if not db_url:
        tried = [
            f"ENV_PATH={os.getenv('ENV_PATH')}",
            str(API_DIR / ".env"),
            str(Path.cwd() / ".env"),
        ]
        raise RuntimeError(
            "DATABASE_URL is not set. Ensure it exists in backend/api/.env or set ENV_PATH.\n"
            f"Tried: {', '.join(tried)}"
        )

    _engine = create_engine(db_url, pool_pre_ping=True, future=True)
    return _engine


def set_engine(engine: Engine | None) -> None:
    """Replace the process engine (tests inject a SQLite engine here)."""
    global _engine
    _engine = engine


def db_ping(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def init_db(engine: Engine) -> None:
    """
    Create the schema straight from tables.metadata and seed the issue counter.

    Used by the test-suite and local SQLite setups; real deployments run the
    Alembic migrations instead.
    """
    from tracker.tables import issue_counters, metadata

    metadata.create_all(engine)
    with engine.begin() as conn:
        exists = conn.execute(
            select(issue_counters.c.name).where(issue_counters.c.name == "issue")
        ).first()
        if exists is None:
            conn.execute(insert(issue_counters).values(name="issue", value=0))
