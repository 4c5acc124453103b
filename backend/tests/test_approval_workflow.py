"""
test_approval_workflow.py — State-machine closure for versions and estimates.

From draft only submit is legal; from submitted only approve / reject; from
approved only supersede; rejected and superseded are terminal. Every other
call raises InvalidTransition and leaves the record untouched.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from app.services import approval_workflow as wf
from app.services.errors import InvalidTransition, ValidationError, VersionLocked

_LEGAL = {
    wf.DRAFT: {"submit"},
    wf.SUBMITTED: {"approve", "reject"},
    wf.APPROVED: {"supersede"},
    wf.REJECTED: set(),
    wf.SUPERSEDED: set(),
}

_ILLEGAL = [
    (status, action)
    for status in wf.STATUSES
    for action in list(wf.TRANSITIONS) + ["reopen"]
    if action not in _LEGAL[status]
]


def _record(status=wf.DRAFT):
    return SimpleNamespace(
        id="v1", status=status,
        submitted_by=None, submitted_at=None,
        approved_by=None, approved_at=None,
        rejected_by=None, rejected_at=None, rejection_reason=None,
        superseded_at=None,
    )


class TestClosure:

    @pytest.mark.parametrize("status", wf.STATUSES)
    def test_allowed_actions(self, status):
        assert set(wf.allowed_actions(status)) == _LEGAL[status]

    @pytest.mark.parametrize("status,action", _ILLEGAL)
    def test_illegal_transitions_raise_and_leave_state(self, status, action):
        record = _record(status)
        before = dict(vars(record))
        with pytest.raises(InvalidTransition) as exc:
            wf.apply_transition(record, action, actor="eng-1", reason="x")
        assert exc.value.current == status
        assert exc.value.action == action
        assert vars(record) == before

    def test_approve_twice(self):
        record = _record(wf.SUBMITTED)
        wf.apply_transition(record, "approve", actor="reviewer")
        stamped = record.approved_at
        with pytest.raises(InvalidTransition):
            wf.apply_transition(record, "approve", actor="someone-else")
        assert record.status == wf.APPROVED
        assert record.approved_by == "reviewer"
        assert record.approved_at == stamped


class TestStamps:

    def test_full_path_records_actors(self):
        now = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
        record = _record()
        wf.apply_transition(record, "submit", actor="estimator", now=now)
        wf.apply_transition(record, "approve", actor="chief", now=now)
        wf.apply_transition(record, "supersede", now=now)
        assert (record.submitted_by, record.submitted_at) == ("estimator", now)
        assert (record.approved_by, record.approved_at) == ("chief", now)
        assert record.superseded_at == now
        assert record.status == wf.SUPERSEDED

    def test_reject_records_reason(self):
        record = _record(wf.SUBMITTED)
        wf.apply_transition(record, "reject", actor="chief", reason="  Rebar laps missing ")
        assert record.status == wf.REJECTED
        assert record.rejected_by == "chief"
        assert record.rejection_reason == "Rebar laps missing"
        assert record.rejected_at is not None

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reject_requires_reason(self, reason):
        record = _record(wf.SUBMITTED)
        with pytest.raises(ValidationError):
            wf.apply_transition(record, "reject", actor="chief", reason=reason)
        assert record.status == wf.SUBMITTED


class TestEditable:

    def test_draft_is_editable(self):
        wf.ensure_editable(_record(wf.DRAFT))

    @pytest.mark.parametrize("status", [wf.SUBMITTED, wf.APPROVED, wf.REJECTED, wf.SUPERSEDED])
    def test_non_draft_is_locked(self, status):
        with pytest.raises(VersionLocked) as exc:
            wf.ensure_editable(_record(status), "takeoff version")
        assert isinstance(exc.value, InvalidTransition)
        assert exc.value.current == status
