from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from tracker import repo, seed
from tracker.db import set_engine
from tracker.query import build_issue_query
from tracker.stats import issue_statistics


class TestSeed:
    def test_loads_sample_users_and_issues(self, engine, recorder):
        data = seed.seed(engine, recorder=recorder, now=T0)

        assert [u["role"] for u in data["users"]] == ["admin", "manager", "user", "user"]
        assert [i["code"] for i in data["issues"]] == [f"ISSUE-00{n}" for n in range(1, 6)]
        assert [i["status"] for i in data["issues"]] == ["Open", "In Progress", "Open", "Open", "Closed"]

        first = data["issues"][0]
        assert first["assigned_to"] == "Jane Developer"
        assert first["created_by_email"] == "admin@opstracker.com"
        assert data["issues"][3]["assignee_id"] is None

    def test_closed_sample_has_three_day_resolution(self, engine, recorder):
        data = seed.seed(engine, recorder=recorder, now=T0)

        closed = data["issues"][-1]
        assert closed["resolved_at"] == T0 - timedelta(days=2)
        stats = issue_statistics(engine)
        assert stats.resolved_count == 1
        assert stats.avg_resolution_time.total_seconds() == pytest.approx(3 * 86400, abs=1)

    def test_records_bootstrap_audit_entries(self, engine, recorder):
        data = seed.seed(engine, recorder=recorder, now=T0)

        admin_id = data["users"][0]["id"]
        actions = sorted(a["action"] for a in recorder.activity_for(admin_id))
        assert actions == ["ISSUE_CREATE", "USER_REGISTER"]
        assert len(recorder.history_for(data["issues"][0]["id"])) == 1

    def test_reseeding_replaces_everything(self, engine, recorder):
        seed.seed(engine, recorder=recorder, now=T0)
        data = seed.seed(engine, recorder=recorder, now=T0)

        assert data["issues"][0]["code"] == "ISSUE-001"
        assert len(repo.list_issues(engine, build_issue_query())) == 5
        assert recorder.summarize(start=T0 - timedelta(days=1), end=T0 + timedelta(days=1)).total == 2


class TestSeedCommand:
    @pytest.fixture()
    def bound(self, engine):
        set_engine(engine)
        yield engine
        set_engine(None)

    def test_default_loads_data(self, bound):
        assert seed.main([]) == 0
        assert len(repo.list_issues(bound, build_issue_query())) == 5

    def test_destroy_flag_wipes_data(self, bound, recorder):
        seed.seed(bound, recorder=recorder, now=T0)

        assert seed.main(["-d"]) == 0
        assert repo.list_issues(bound, build_issue_query()) == []
        assert recorder.summarize(start=T0 - timedelta(days=1), end=T0 + timedelta(days=1)).total == 0
