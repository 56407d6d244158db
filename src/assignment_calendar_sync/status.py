"""
Assignment status resolution shared by display and sync filtering.
"""

from datetime import datetime
from datetime import timezone

from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import AssignmentStatus


def is_graded_with_score(assignment: Assignment) -> bool:
    return assignment.graded and assignment.current_grade is not None


def resolve_status(assignment: Assignment, now: datetime | None = None) -> AssignmentStatus:
    """Return the assignment's status; the first matching rule wins.

    1. submitted and graded           -> SUBMITTED
    2. missing                        -> MISSING
    3. late                           -> LATE
    4. past due, not submitted, and
       not (graded with a score)      -> OVERDUE
    5. otherwise                      -> PENDING

    A graded assignment without a score can still be OVERDUE. A null due
    date never is.
    """
    if assignment.submitted and assignment.graded:
        return AssignmentStatus.SUBMITTED
    if assignment.missing:
        return AssignmentStatus.MISSING
    if assignment.late:
        return AssignmentStatus.LATE

    now = now or datetime.now(timezone.utc)
    if (
        assignment.due_at is not None
        and assignment.due_at < now
        and not assignment.submitted
        and not is_graded_with_score(assignment)
    ):
        return AssignmentStatus.OVERDUE
    return AssignmentStatus.PENDING


def is_completed(assignment: Assignment, now: datetime | None = None) -> bool:
    """Completed assignments are those that resolve to SUBMITTED."""
    return resolve_status(assignment, now) is AssignmentStatus.SUBMITTED
