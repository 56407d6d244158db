"""
Event content derivation: turns an assignment into the event we push.
"""

import hashlib
import json
from datetime import timedelta

from assignment_calendar_sync.models import MANAGED_MARKER
from assignment_calendar_sync.models import ROLE_PROFILES
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import EventSpec
from assignment_calendar_sync.models import Reminder
from assignment_calendar_sync.status import is_completed

EVENT_DURATION = timedelta(hours=1)

# Checked in order; the first keyword found in the lower-cased title wins.
_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Quiz", ("quiz",)),
    ("Test", ("test", "exam")),
    ("Discussion", ("discussion", "forum")),
    ("Project", ("project", "presentation")),
    ("Homework", ("homework", "hw")),
    ("Lab", ("lab",)),
)
DEFAULT_TYPE = "Assignment"

# Google Calendar colour ids
_TYPE_COLORS = {
    "Quiz": "9",
    "Test": "9",
    "Discussion": "5",
    "Project": "7",
}
_DEFAULT_COLOR = "4"
# Completed assignments are shown in basil green whatever their type.
_COMPLETED_COLOR = "10"


def infer_assignment_type(title: str | None) -> str:
    """Classify an assignment by keywords in its title."""
    if not title:
        return DEFAULT_TYPE
    lowered = title.lower()
    for type_name, keywords in _TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return type_name
    return DEFAULT_TYPE


def build_reminders(role: AccountRole, minutes: tuple[int, ...] | list[int]) -> tuple[Reminder, ...]:
    threshold = ROLE_PROFILES[role].email_reminder_threshold
    reminders = []
    for offset in minutes:
        method = "email" if threshold is not None and offset >= threshold else "popup"
        reminders.append(Reminder(method=method, minutes=offset))
    return tuple(reminders)


def _format_points(points: float | None) -> str | None:
    if points is None:
        return None
    return str(int(points)) if float(points).is_integer() else str(points)


def format_description(assignment: Assignment) -> str:
    lines = []
    if assignment.course_name:
        lines.append(f"Course: {assignment.course_name}")
    points = _format_points(assignment.points_possible)
    if points is not None:
        lines.append(f"Points: {points}")
    if assignment.current_grade is not None:
        lines.append(f"Grade: {assignment.current_grade}")
    lines.append(f"Type: {infer_assignment_type(assignment.title)}")
    if is_completed(assignment):
        lines.append("Status: Completed")
    lines.append("")
    lines.append(f"Assignment ID: {assignment.plannable_id}")
    return "\n".join(lines)


def build_event_spec(
    assignment: Assignment, role: AccountRole, reminder_minutes: tuple[int, ...] | list[int]
) -> EventSpec:
    """Derive the event for an assignment; identical for create and update.

    The event ends at the due time and starts one hour before it. The
    extended properties let mappings be rebuilt from the remote calendar.
    """
    if assignment.due_at is None:
        raise ValueError(f"Assignment {assignment.plannable_id} has no due date")

    properties = {
        "assignment_id": str(assignment.plannable_id),
        "student_id": str(assignment.student_id),
        "course_id": "" if assignment.course_id is None else str(assignment.course_id),
        "points_possible": _format_points(assignment.points_possible) or "",
        "role": role.value,
        "managed_by": MANAGED_MARKER,
    }
    color_id = _TYPE_COLORS.get(infer_assignment_type(assignment.title), _DEFAULT_COLOR)
    if is_completed(assignment):
        properties["completed"] = "true"
        color_id = _COMPLETED_COLOR
    return EventSpec(
        title=assignment.title,
        description=format_description(assignment),
        start=assignment.due_at - EVENT_DURATION,
        end=assignment.due_at,
        reminders=build_reminders(role, reminder_minutes),
        color_id=color_id,
        extended_properties=properties,
    )


def compute_fingerprint(assignment: Assignment, reminder_minutes: tuple[int, ...] | list[int]) -> str:
    """
    SHA256 over the assignment fields that end up in the event.

    The individual submission flags are left out; only whether the
    assignment counts as completed reaches the event body.
    """
    payload = {
        "title": assignment.title,
        "course_name": assignment.course_name,
        "course_id": assignment.course_id,
        "due_at": assignment.due_at.isoformat() if assignment.due_at else None,
        "points_possible": assignment.points_possible,
        "current_grade": assignment.current_grade,
        "reminders": list(reminder_minutes),
        "completed": is_completed(assignment),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def render_google_event(spec: EventSpec, time_zone: str = "UTC") -> dict:
    """Google Calendar v3 event resource for an EventSpec."""
    body = {
        "summary": spec.title,
        "description": spec.description,
        "start": {"dateTime": spec.start.isoformat(), "timeZone": time_zone},
        "end": {"dateTime": spec.end.isoformat(), "timeZone": time_zone},
        "reminders": {
            "useDefault": False,
            "overrides": [{"method": r.method, "minutes": r.minutes} for r in spec.reminders],
        },
        "extendedProperties": {"private": dict(spec.extended_properties)},
    }
    if spec.color_id:
        body["colorId"] = spec.color_id
    return body
