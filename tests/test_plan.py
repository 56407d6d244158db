"""
FILTERING and DIFFING without any gateway: eligibility rules and how a
role's mappings are partitioned into creates, updates and deletes.
"""

from datetime import timedelta

from assignment_calendar_sync.events import compute_fingerprint
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import EventMapping
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.sync.plan import filter_eligible
from assignment_calendar_sync.sync.plan import is_eligible
from assignment_calendar_sync.sync.plan import plan_role
from tests.conftest import STUDENT_ID
from tests.conftest import USER_ID
from tests.conftest import make_assignment
from tests.fake_gateway import EPOCH

PARENT = AccountRole.PARENT
REMINDERS = (1440, 120)


def _settings(**changes):
    return SyncSettings(USER_ID, STUDENT_ID).with_changes(**changes)


def _mapping(assignment, calendar_id="cal-1", content_hash=None):
    return EventMapping(
        assignment_id=assignment.plannable_id,
        student_id=STUDENT_ID,
        role=PARENT,
        external_event_id=f"evt-{assignment.plannable_id}",
        external_calendar_id=calendar_id,
        content_hash=content_hash or compute_fingerprint(assignment, REMINDERS),
    )


class TestEligibility:
    def test_pending_assignment_is_eligible(self):
        assert is_eligible(make_assignment(1), _settings(), PARENT, EPOCH)

    def test_disabled_role_excludes_everything(self):
        assert not is_eligible(make_assignment(1), _settings(sync_to_parent=False), PARENT, EPOCH)
        assert is_eligible(
            make_assignment(1), _settings(sync_to_parent=False), AccountRole.STUDENT, EPOCH
        )

    def test_no_due_date_is_dropped(self):
        assert not is_eligible(make_assignment(1, due_in=None), _settings(), PARENT, EPOCH)

    def test_course_filter_matches_name_or_id(self):
        by_name = _settings(included_courses=frozenset({"Biology"}))
        by_id = _settings(included_courses=frozenset({"101"}))
        other = _settings(included_courses=frozenset({"Algebra"}))

        a = make_assignment(1)
        assert is_eligible(a, by_name, PARENT, EPOCH)
        assert is_eligible(a, by_id, PARENT, EPOCH)
        assert not is_eligible(a, other, PARENT, EPOCH)

    def test_excluded_type(self):
        settings = _settings(excluded_types=frozenset({"Quiz"}))
        assert not is_eligible(make_assignment(1, title="Unit quiz"), settings, PARENT, EPOCH)
        assert is_eligible(make_assignment(2, title="Essay"), settings, PARENT, EPOCH)

    def test_completed_excluded_unless_requested(self):
        done = make_assignment(1, submitted=True, graded=True)
        assert not is_eligible(done, _settings(), PARENT, EPOCH)
        assert is_eligible(done, _settings(sync_completed_assignments=True), PARENT, EPOCH)

    def test_overdue_assignments_stay_on_calendar(self):
        late = make_assignment(1, due_in=timedelta(days=-2))
        assert is_eligible(late, _settings(), PARENT, EPOCH)

    def test_filter_keeps_order(self):
        items = [make_assignment(3), make_assignment(1, due_in=None), make_assignment(2)]
        kept = filter_eligible(items, _settings(), PARENT, EPOCH)
        assert [a.plannable_id for a in kept] == [3, 2]


class TestPlanRole:
    def test_new_assignments_are_created(self):
        plan = plan_role(PARENT, [make_assignment(1)], {}, REMINDERS, "cal-1")

        assert [a.plannable_id for a in plan.to_create] == [1]
        assert plan.operation_count == 1

    def test_matching_fingerprint_is_unchanged(self):
        a = make_assignment(1)
        plan = plan_role(PARENT, [a], {1: _mapping(a)}, REMINDERS, "cal-1")

        assert plan.operation_count == 0
        assert plan.unchanged == [a]

    def test_due_date_change_is_an_update(self):
        old = make_assignment(1, due_in=timedelta(days=2))
        new = make_assignment(1, due_in=timedelta(days=3))
        mapping = _mapping(old)

        plan = plan_role(PARENT, [new], {1: mapping}, REMINDERS, "cal-1")

        assert plan.to_update == [(new, mapping)]
        assert plan.to_create == []
        assert plan.fingerprints[1] == compute_fingerprint(new, REMINDERS)

    def test_reminder_change_updates_every_event(self):
        items = [make_assignment(1), make_assignment(2)]
        mappings = {a.plannable_id: _mapping(a) for a in items}

        plan = plan_role(PARENT, items, mappings, (60,), "cal-1")

        assert len(plan.to_update) == 2

    def test_ineligible_mapping_is_deleted(self):
        gone = make_assignment(9)
        plan = plan_role(PARENT, [], {9: _mapping(gone)}, REMINDERS, "cal-1")

        assert [m.assignment_id for m in plan.to_delete] == [9]

    def test_calendar_change_deletes_then_recreates(self):
        a = make_assignment(1)
        mapping = _mapping(a, calendar_id="cal-old")

        plan = plan_role(PARENT, [a], {1: mapping}, REMINDERS, "cal-new")

        assert plan.to_delete == [mapping]
        assert plan.to_create == [a]

    def test_unknown_calendar_keeps_mapping(self):
        a = make_assignment(1)
        plan = plan_role(PARENT, [a], {1: _mapping(a)}, REMINDERS, None)
        assert plan.operation_count == 0

    def test_scope_limits_deletions(self):
        a, b = make_assignment(1), make_assignment(2)
        mappings = {1: _mapping(a), 2: _mapping(b)}

        plan = plan_role(PARENT, [], mappings, REMINDERS, "cal-1", scope={1})

        assert [m.assignment_id for m in plan.to_delete] == [1]
