"""
FILTERING and DIFFING: pure functions from cached state to a per-role plan.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Iterable

from assignment_calendar_sync.events import compute_fingerprint
from assignment_calendar_sync.events import infer_assignment_type
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import EventMapping
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.status import is_completed


@dataclass
class RolePlan:
    role: AccountRole
    to_create: list[Assignment] = field(default_factory=list)
    to_update: list[tuple[Assignment, EventMapping]] = field(default_factory=list)
    to_delete: list[EventMapping] = field(default_factory=list)
    unchanged: list[Assignment] = field(default_factory=list)
    fingerprints: dict[int, str] = field(default_factory=dict)

    @property
    def operation_count(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete)


def course_included(settings: SyncSettings, assignment: Assignment) -> bool:
    if not settings.included_courses:
        return True
    keys = {assignment.course_name}
    if assignment.course_id is not None:
        keys.add(str(assignment.course_id))
    return bool(keys & settings.included_courses)


def is_eligible(
    assignment: Assignment, settings: SyncSettings, role: AccountRole, now: datetime
) -> bool:
    if not settings.sync_enabled or not settings.role_enabled(role):
        return False
    # No due date, no event window.
    if assignment.due_at is None:
        return False
    if not course_included(settings, assignment):
        return False
    if infer_assignment_type(assignment.title) in settings.excluded_types:
        return False
    if not settings.sync_completed_assignments and is_completed(assignment, now):
        return False
    return True


def filter_eligible(
    assignments: Iterable[Assignment], settings: SyncSettings, role: AccountRole, now: datetime
) -> list[Assignment]:
    return [a for a in assignments if is_eligible(a, settings, role, now)]


def plan_role(
    role: AccountRole,
    eligible: list[Assignment],
    mappings: dict[int, EventMapping],
    reminders: tuple[int, ...],
    calendar_id: str | None,
    scope: set[int] | None = None,
) -> RolePlan:
    """
    Partition eligible assignments against existing mappings.

    A mapping is deleted when its assignment is not eligible, or when it
    points at a calendar other than the role's current one (the assignment
    is then created again). ``scope`` limits deletions to the given
    assignment ids, for single-assignment passes.
    """
    plan = RolePlan(role)
    eligible_ids = set()

    for assignment in eligible:
        eligible_ids.add(assignment.plannable_id)
        fingerprint = compute_fingerprint(assignment, reminders)
        plan.fingerprints[assignment.plannable_id] = fingerprint
        mapping = mappings.get(assignment.plannable_id)

        if mapping is None:
            plan.to_create.append(assignment)
        elif calendar_id is not None and mapping.external_calendar_id != calendar_id:
            plan.to_delete.append(mapping)
            plan.to_create.append(assignment)
        elif mapping.content_hash != fingerprint:
            plan.to_update.append((assignment, mapping))
        else:
            plan.unchanged.append(assignment)

    for assignment_id, mapping in sorted(mappings.items()):
        if assignment_id in eligible_ids:
            continue
        if scope is not None and assignment_id not in scope:
            continue
        plan.to_delete.append(mapping)

    return plan
