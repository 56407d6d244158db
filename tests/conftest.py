"""
Shared pytest fixtures and assignment/token helpers.

Everything runs against a temporary SQLite file, the in-memory fakes in
tests/fake_gateway.py and a FakeClock, so retries and deadlines never
actually sleep.
"""

import logging
from datetime import timedelta

import pytest

from assignment_calendar_sync.crypto import TokenCipher
from assignment_calendar_sync.crypto import generate_key
from assignment_calendar_sync.db import AssignmentCache
from assignment_calendar_sync.db import MappingStore
from assignment_calendar_sync.db import SettingsStore
from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.db import TokenStore
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.preferences import SyncSettingsService
from assignment_calendar_sync.sync import SyncReconciler
from assignment_calendar_sync.sync.retry import RetryPolicy
from assignment_calendar_sync.tokens import TokenLifecycleManager
from tests.fake_gateway import EPOCH
from tests.fake_gateway import FakeCalendarGateway
from tests.fake_gateway import FakeClock
from tests.fake_gateway import FakeOAuthClient

USER_ID = "parent-user-1"
STUDENT_ID = 42


def make_assignment(
    plannable_id: int,
    title: str = "Chapter 3 worksheet",
    due_in: timedelta | None = timedelta(days=2),
    student_id: int = STUDENT_ID,
    **fields,
) -> Assignment:
    """Return an assignment due ``due_in`` after the fake clock's start."""
    fields.setdefault("course_name", "Biology")
    fields.setdefault("course_id", 101)
    fields.setdefault("points_possible", 10.0)
    return Assignment(
        student_id=student_id,
        plannable_id=plannable_id,
        title=title,
        due_at=EPOCH + due_in if due_in is not None else None,
        **fields,
    )


def connect_role(
    tokens: TokenLifecycleManager,
    role: AccountRole,
    expires_in: timedelta = timedelta(hours=1),
    calendar_id: str | None = None,
    user_id: str = USER_ID,
    student_id: int = STUDENT_ID,
):
    """Store credentials for one role as if the OAuth callback had completed."""
    return tokens.store(
        user_id,
        student_id,
        role,
        f"{role.value.lower()}-access",
        f"{role.value.lower()}-refresh",
        tokens.clock() + expires_in,
        account_email=f"{role.value.lower()}@example.com",
        calendar_id=calendar_id,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def assignment_cache(state_db):
    return AssignmentCache(state_db)


@pytest.fixture
def mapping_store(state_db):
    return MappingStore(state_db)


@pytest.fixture
def token_store(state_db):
    return TokenStore(state_db)


@pytest.fixture
def settings_service(state_db):
    return SyncSettingsService(SettingsStore(state_db))


@pytest.fixture
def cipher():
    return TokenCipher(generate_key())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oauth(clock):
    return FakeOAuthClient(clock)


@pytest.fixture
def tokens(token_store, cipher, oauth, clock):
    return TokenLifecycleManager(token_store, cipher, oauth, clock=clock.now)


@pytest.fixture
def gateway(clock):
    return FakeCalendarGateway(clock)


@pytest.fixture
def reconciler(assignment_cache, settings_service, mapping_store, tokens, gateway, clock):
    return SyncReconciler(
        assignment_cache,
        settings_service,
        mapping_store,
        tokens,
        gateway,
        policy=RetryPolicy(jitter=0.0),
        timeout=10.0,
        clock=clock.now,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
    )


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")
