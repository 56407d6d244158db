"""
Unit tests for the SQLite stores: upsert semantics, the JSON boundary for
settings lists, token calendar ids and mapping summaries.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from assignment_calendar_sync.db import MappingStore
from assignment_calendar_sync.db import SettingsStore
from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.db import from_db_time
from assignment_calendar_sync.db import to_db_time
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import EventMapping
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.models import TokenRecord
from tests.conftest import STUDENT_ID
from tests.conftest import USER_ID
from tests.conftest import make_assignment

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _mapping(assignment_id, event_id="E1", calendar_id="cal-1", content_hash="h1", role=None):
    return EventMapping(
        assignment_id=assignment_id,
        student_id=STUDENT_ID,
        role=role or AccountRole.PARENT,
        external_event_id=event_id,
        external_calendar_id=calendar_id,
        content_hash=content_hash,
        last_synced_at=T0,
    )


def _token(calendar_id=None, requires_reauth=False, expires_at=T0):
    return TokenRecord(
        user_id=USER_ID,
        student_id=STUDENT_ID,
        role=AccountRole.PARENT,
        encrypted_access_token="enc-access",
        encrypted_refresh_token="enc-refresh",
        expires_at=expires_at,
        calendar_id=calendar_id,
        requires_reauth=requires_reauth,
    )


class TestTimestamps:
    def test_naive_values_are_treated_as_utc(self):
        assert to_db_time(datetime(2026, 1, 1, 8, 0)) == "2026-01-01T08:00:00+00:00"

    def test_round_trip_normalises_offsets(self):
        local = datetime(2026, 1, 1, 8, 0, tzinfo=timezone(timedelta(hours=-6)))
        assert from_db_time(to_db_time(local)) == datetime(2026, 1, 1, 14, 0, tzinfo=timezone.utc)


class TestAssignmentCache:
    def test_upsert_replaces_fields(self, assignment_cache):
        assignment_cache.upsert(make_assignment(1, title="Old"))
        assignment_cache.upsert(make_assignment(1, title="New", submitted=True))

        rows = assignment_cache.fetch_assignments(STUDENT_ID)
        assert len(rows) == 1
        assert rows[0].title == "New"
        assert rows[0].submitted is True

    def test_replace_for_student_drops_absent_rows(self, assignment_cache):
        assignment_cache.upsert(make_assignment(1))
        assignment_cache.upsert(make_assignment(2))

        removed = assignment_cache.replace_for_student(STUDENT_ID, [make_assignment(2)])

        assert removed == 1
        assert [a.plannable_id for a in assignment_cache.fetch_assignments(STUDENT_ID)] == [2]

    def test_null_due_date_survives_storage(self, assignment_cache):
        assignment_cache.upsert(make_assignment(1, due_in=None))
        assert assignment_cache.get(STUDENT_ID, 1).due_at is None

    def test_evict_student_only_touches_that_student(self, assignment_cache):
        assignment_cache.upsert(make_assignment(1))
        assignment_cache.upsert(make_assignment(2, student_id=7))

        assert assignment_cache.evict_student(STUDENT_ID) == 1
        assert assignment_cache.fetch_assignments(STUDENT_ID) == []
        assert len(assignment_cache.fetch_assignments(7)) == 1


class TestSettingsStore:
    def test_missing_row_returns_none(self, state_db):
        assert SettingsStore(state_db).get(USER_ID, STUDENT_ID) is None

    def test_lists_come_back_typed(self, state_db):
        """Reminder lists and course sets are decoded at the storage boundary."""
        store = SettingsStore(state_db)
        store.save(
            SyncSettings(
                USER_ID,
                STUDENT_ID,
                parent_reminders=(2880, 60),
                included_courses=frozenset({"Biology", "101"}),
                excluded_types=frozenset({"Quiz"}),
            )
        )

        loaded = store.get(USER_ID, STUDENT_ID)
        assert loaded.parent_reminders == (2880, 60)
        assert loaded.included_courses == frozenset({"Biology", "101"})
        assert loaded.excluded_types == frozenset({"Quiz"})

    def test_empty_reminder_list_is_kept(self, state_db):
        store = SettingsStore(state_db)
        store.save(SyncSettings(USER_ID, STUDENT_ID, student_reminders=()))
        assert store.get(USER_ID, STUDENT_ID).student_reminders == ()

    def test_list_auto_sync_skips_disabled(self, state_db):
        store = SettingsStore(state_db)
        store.save(SyncSettings("u1", 1))
        store.save(SyncSettings("u2", 2, auto_sync_enabled=False))
        store.save(SyncSettings("u3", 3, sync_enabled=False))

        assert [(s.user_id, s.student_id) for s in store.list_auto_sync()] == [("u1", 1)]


class TestTokenStore:
    def test_upsert_keeps_existing_calendar_id(self, token_store):
        """Reconnecting without a calendar id keeps the provisioned calendar."""
        token_store.upsert(_token(calendar_id="cal-1"))
        token_store.upsert(_token(calendar_id=None))

        assert token_store.get(USER_ID, STUDENT_ID, AccountRole.PARENT).calendar_id == "cal-1"

    def test_update_access_clears_reauth_flag(self, token_store):
        token_store.upsert(_token(requires_reauth=True))
        token_store.update_access(
            USER_ID, STUDENT_ID, AccountRole.PARENT, "enc-new", T0 + timedelta(hours=1)
        )

        record = token_store.get(USER_ID, STUDENT_ID, AccountRole.PARENT)
        assert record.encrypted_access_token == "enc-new"
        assert record.encrypted_refresh_token == "enc-refresh"
        assert record.requires_reauth is False

    def test_roles_are_independent_rows(self, token_store):
        token_store.upsert(_token())
        assert token_store.get(USER_ID, STUDENT_ID, AccountRole.STUDENT) is None
        assert len(token_store.list_for_student(USER_ID, STUDENT_ID)) == 1

    def test_delete_reauth_required_before(self, token_store):
        token_store.upsert(_token(requires_reauth=True, expires_at=T0 - timedelta(days=40)))

        assert token_store.delete_reauth_required_before(T0 - timedelta(days=30)) == 1
        assert token_store.get(USER_ID, STUDENT_ID, AccountRole.PARENT) is None


class TestMappingStore:
    def test_upsert_on_conflict_updates_not_errors(self, mapping_store):
        mapping_store.upsert(_mapping(1, event_id="E-old", content_hash="old"))
        mapping_store.upsert(_mapping(1, event_id="E-new", content_hash="new"))

        rows = mapping_store.get_all(STUDENT_ID, AccountRole.PARENT)
        assert list(rows) == [1]
        assert rows[1].external_event_id == "E-new"
        assert rows[1].content_hash == "new"

    def test_upsert_preserves_created_at(self, mapping_store, state_db):
        mapping_store.upsert(_mapping(1))
        created = state_db.query_one("SELECT created_at FROM event_mappings")["created_at"]

        mapping_store.upsert(
            EventMapping(
                1, STUDENT_ID, AccountRole.PARENT, "E2", "cal-1", "h2", T0 + timedelta(days=1)
            )
        )

        row = state_db.query_one("SELECT created_at, last_synced_at FROM event_mappings")
        assert row["created_at"] == created
        assert from_db_time(row["last_synced_at"]) == T0 + timedelta(days=1)

    def test_same_assignment_maps_per_role(self, mapping_store):
        mapping_store.upsert(_mapping(1, event_id="P1"))
        mapping_store.upsert(_mapping(1, event_id="S1", role=AccountRole.STUDENT))

        assert mapping_store.get(1, STUDENT_ID, AccountRole.PARENT).external_event_id == "P1"
        assert mapping_store.get(1, STUDENT_ID, AccountRole.STUDENT).external_event_id == "S1"
        assert mapping_store.get_by_event_id("S1").role is AccountRole.STUDENT

    def test_clear_role_leaves_other_role(self, mapping_store):
        mapping_store.upsert(_mapping(1))
        mapping_store.upsert(_mapping(1, event_id="S1", role=AccountRole.STUDENT))

        assert mapping_store.clear_role(STUDENT_ID, AccountRole.PARENT) == 1
        assert mapping_store.get_all(STUDENT_ID, AccountRole.PARENT) == {}
        assert len(mapping_store.get_all(STUDENT_ID, AccountRole.STUDENT)) == 1

    def test_summary_groups_by_role(self, mapping_store):
        mapping_store.upsert(_mapping(1, event_id="P1"))
        mapping_store.upsert(_mapping(2, event_id="P2"))
        mapping_store.upsert(_mapping(1, event_id="S1", role=AccountRole.STUDENT))

        rows = [(r["account_role"], r["count"]) for r in mapping_store.summary()]
        assert rows == [("PARENT", 2), ("STUDENT", 1)]


class TestConnection:
    def test_reopen_sees_committed_rows(self, db_path):
        with StateDatabase(db_path) as db:
            MappingStore(db).upsert(_mapping(1))

        with StateDatabase(db_path) as db:
            assert MappingStore(db).get(1, STUDENT_ID, AccountRole.PARENT) is not None
