from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from tracker.workflow import (
    WorkflowError,
    is_overdue,
    normalize_priority,
    normalize_status,
    resolution_timestamp,
)


class TestNormalize:
    def test_canonical_spelling(self):
        assert normalize_status("in progress") == "In Progress"
        assert normalize_status(" CLOSED ") == "Closed"
        assert normalize_priority("high") == "High"

    def test_unknown_values_raise(self):
        with pytest.raises(WorkflowError):
            normalize_status("Done")
        with pytest.raises(WorkflowError):
            normalize_priority("Urgent")


class TestResolutionTimestamp:
    def test_stamped_on_first_close(self):
        assert resolution_timestamp(None, "Closed", T0) == T0

    def test_not_stamped_for_other_statuses(self):
        assert resolution_timestamp(None, "Open", T0) is None
        assert resolution_timestamp(None, "In Progress", T0) is None

    def test_sticky_after_reopen_and_close(self):
        first = T0
        later = T0 + timedelta(days=3)
        assert resolution_timestamp(first, "Open", later) == first
        assert resolution_timestamp(first, "Closed", later) == first


def test_is_overdue():
    assert is_overdue(T0 - timedelta(days=1), "Open", T0)
    assert not is_overdue(T0 - timedelta(days=1), "Closed", T0)
    assert not is_overdue(T0 + timedelta(days=1), "Open", T0)
    assert not is_overdue(None, "Open", T0)
