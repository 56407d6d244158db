"""
Status resolution: rule order, the overdue window and completion.
"""

import itertools
from datetime import timedelta

import pytest

from assignment_calendar_sync.models import AssignmentStatus
from assignment_calendar_sync.status import is_completed
from assignment_calendar_sync.status import is_graded_with_score
from assignment_calendar_sync.status import resolve_status
from tests.conftest import make_assignment
from tests.fake_gateway import EPOCH

NOW = EPOCH

_DUE = {
    "past": timedelta(days=-1),
    "future": timedelta(days=2),
    "none": None,
}


def _expected(submitted, graded, missing, late, due, scored):
    if submitted and graded:
        return AssignmentStatus.SUBMITTED
    if missing:
        return AssignmentStatus.MISSING
    if late:
        return AssignmentStatus.LATE
    if due == "past" and not submitted and not (graded and scored):
        return AssignmentStatus.OVERDUE
    return AssignmentStatus.PENDING


@pytest.mark.parametrize(
    "submitted,graded,missing,late,due,scored",
    list(itertools.product(*([[False, True]] * 4), _DUE, [False, True])),
)
def test_truth_table(submitted, graded, missing, late, due, scored):
    """Every flag combination resolves by the first matching rule."""
    assignment = make_assignment(
        1,
        due_in=_DUE[due],
        submitted=submitted,
        graded=graded,
        missing=missing,
        late=late,
        current_grade="9/10" if scored else None,
    )
    assert resolve_status(assignment, NOW) is _expected(
        submitted, graded, missing, late, due, scored
    )


class TestRuleOrder:
    def test_submitted_and_graded_beats_missing(self):
        """A graded submission is SUBMITTED even when the missing flag is stale."""
        a = make_assignment(1, submitted=True, graded=True, missing=True, late=True)
        assert resolve_status(a, NOW) is AssignmentStatus.SUBMITTED

    def test_missing_beats_late(self):
        a = make_assignment(1, missing=True, late=True)
        assert resolve_status(a, NOW) is AssignmentStatus.MISSING

    def test_submitted_but_ungraded_is_pending(self):
        """Submitted work awaiting a grade is neither SUBMITTED nor OVERDUE."""
        a = make_assignment(1, due_in=timedelta(days=-3), submitted=True)
        assert resolve_status(a, NOW) is AssignmentStatus.PENDING


class TestOverdue:
    def test_past_due_unsubmitted_is_overdue(self):
        a = make_assignment(1, due_in=timedelta(minutes=-1))
        assert resolve_status(a, NOW) is AssignmentStatus.OVERDUE

    def test_due_exactly_now_is_not_overdue(self):
        a = make_assignment(1, due_in=timedelta(0))
        assert resolve_status(a, NOW) is AssignmentStatus.PENDING

    def test_no_due_date_is_never_overdue(self):
        a = make_assignment(1, due_in=None)
        assert resolve_status(a, NOW) is AssignmentStatus.PENDING

    def test_graded_with_score_is_not_overdue(self):
        a = make_assignment(1, due_in=timedelta(days=-1), graded=True, current_grade="A")
        assert is_graded_with_score(a)
        assert resolve_status(a, NOW) is AssignmentStatus.PENDING

    def test_graded_without_score_can_be_overdue(self):
        """Graded with no score still counts as overdue once past due."""
        a = make_assignment(1, due_in=timedelta(days=-1), graded=True, current_grade=None)
        assert not is_graded_with_score(a)
        assert resolve_status(a, NOW) is AssignmentStatus.OVERDUE


class TestCompleted:
    def test_only_submitted_status_is_completed(self):
        assert is_completed(make_assignment(1, submitted=True, graded=True), NOW)
        assert not is_completed(make_assignment(2, submitted=True), NOW)
        assert not is_completed(make_assignment(3, missing=True), NOW)

    def test_scenario_pending_assignment(self):
        """Due in two days with no flags set resolves to PENDING."""
        assert resolve_status(make_assignment(1), NOW) is AssignmentStatus.PENDING
