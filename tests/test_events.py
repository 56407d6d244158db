"""
Event derivation: type inference, reminders, description and fingerprints.
"""

from datetime import timedelta

import pytest

from assignment_calendar_sync.events import build_event_spec
from assignment_calendar_sync.events import build_reminders
from assignment_calendar_sync.events import compute_fingerprint
from assignment_calendar_sync.events import format_description
from assignment_calendar_sync.events import infer_assignment_type
from assignment_calendar_sync.events import render_google_event
from assignment_calendar_sync.models import MANAGED_MARKER
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import Reminder
from tests.conftest import make_assignment


class TestTypeInference:
    @pytest.mark.parametrize(
        "title,expected",
        [
            ("Unit 2 Quiz", "Quiz"),
            ("Midterm Exam", "Test"),
            ("Chapter test review", "Test"),
            ("Discussion: week 4", "Discussion"),
            ("Science fair project", "Project"),
            ("HW 7", "Homework"),
            ("Lab report", "Lab"),
            ("Reading log", "Assignment"),
            ("", "Assignment"),
        ],
    )
    def test_keywords(self, title, expected):
        assert infer_assignment_type(title) == expected

    def test_first_keyword_wins(self):
        """'Quiz' is checked before 'Project'."""
        assert infer_assignment_type("Project quiz") == "Quiz"


class TestReminders:
    def test_parent_long_offsets_use_email(self):
        assert build_reminders(AccountRole.PARENT, (1440, 120)) == (
            Reminder("email", 1440),
            Reminder("popup", 120),
        )

    def test_student_reminders_are_popups(self):
        assert build_reminders(AccountRole.STUDENT, (2880, 30)) == (
            Reminder("popup", 2880),
            Reminder("popup", 30),
        )

    def test_empty_list_means_no_reminders(self):
        assert build_reminders(AccountRole.PARENT, ()) == ()


class TestEventSpec:
    def test_window_ends_at_due_time(self):
        a = make_assignment(7)
        spec = build_event_spec(a, AccountRole.PARENT, (1440,))
        assert spec.end == a.due_at
        assert spec.end - spec.start == timedelta(hours=1)
        assert spec.title == a.title

    def test_extended_properties_identify_the_assignment(self):
        spec = build_event_spec(make_assignment(7), AccountRole.STUDENT, ())
        assert spec.extended_properties == {
            "assignment_id": "7",
            "student_id": "42",
            "course_id": "101",
            "points_possible": "10",
            "role": "STUDENT",
            "managed_by": MANAGED_MARKER,
        }

    def test_description_lines(self):
        a = make_assignment(7, title="Unit quiz", points_possible=12.5, current_grade="11")
        assert format_description(a) == (
            "Course: Biology\nPoints: 12.5\nGrade: 11\nType: Quiz\n\nAssignment ID: 7"
        )

    def test_description_skips_missing_fields(self):
        a = make_assignment(7, course_name=None, points_possible=None)
        assert format_description(a) == "Type: Assignment\n\nAssignment ID: 7"

    def test_no_due_date_is_rejected(self):
        with pytest.raises(ValueError):
            build_event_spec(make_assignment(7, due_in=None), AccountRole.PARENT, ())

    def test_quiz_colour(self):
        spec = build_event_spec(make_assignment(7, title="Pop quiz"), AccountRole.PARENT, ())
        assert spec.color_id == "9"

    def test_google_body(self):
        spec = build_event_spec(make_assignment(7), AccountRole.PARENT, (1440, 120))
        body = render_google_event(spec, "America/Chicago")
        assert body["summary"] == spec.title
        assert body["start"] == {"dateTime": spec.start.isoformat(), "timeZone": "America/Chicago"}
        assert body["reminders"] == {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 1440},
                {"method": "popup", "minutes": 120},
            ],
        }
        assert body["extendedProperties"]["private"]["assignment_id"] == "7"


class TestFingerprint:
    def test_stable_for_identical_input(self):
        assert compute_fingerprint(make_assignment(1), (60,)) == compute_fingerprint(
            make_assignment(1), (60,)
        )

    def test_due_date_change_changes_fingerprint(self):
        before = compute_fingerprint(make_assignment(1, due_in=timedelta(days=2)), (60,))
        after = compute_fingerprint(make_assignment(1, due_in=timedelta(days=3)), (60,))
        assert before != after

    def test_reminder_change_changes_fingerprint(self):
        a = make_assignment(1)
        assert compute_fingerprint(a, (60,)) != compute_fingerprint(a, (60, 30))

    def test_submission_flags_do_not_change_fingerprint(self):
        plain = make_assignment(1)
        flagged = make_assignment(1, submitted=True, late=True, missing=True)
        assert compute_fingerprint(plain, ()) == compute_fingerprint(flagged, ())


class TestCompletedAssignments:
    def test_completed_event_is_marked(self):
        """Title and reminders stay; colour, status line and a property change."""
        done = make_assignment(7, submitted=True, graded=True)
        spec = build_event_spec(done, AccountRole.PARENT, (1440,))
        pending = build_event_spec(make_assignment(7), AccountRole.PARENT, (1440,))

        assert spec.color_id == "10"
        assert spec.extended_properties["completed"] == "true"
        assert "Status: Completed" in spec.description
        assert (spec.title, spec.reminders) == (pending.title, pending.reminders)
        assert "completed" not in pending.extended_properties

    def test_submitted_but_ungraded_is_not_marked(self):
        spec = build_event_spec(make_assignment(7, submitted=True), AccountRole.PARENT, ())
        assert spec.color_id != "10"

    def test_completion_changes_fingerprint(self):
        before = compute_fingerprint(make_assignment(1, submitted=True), (60,))
        after = compute_fingerprint(make_assignment(1, submitted=True, graded=True), (60,))
        assert before != after
