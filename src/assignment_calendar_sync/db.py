"""
SQLite persistence for cached assignments, settings, tokens and event mappings.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from datetime import timezone
from pathlib import Path

from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import EventMapping
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.models import TokenRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS assignments (
        student_id INTEGER NOT NULL,
        plannable_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        course_name TEXT,
        course_id INTEGER,
        due_at TEXT,
        points_possible REAL,
        current_grade TEXT,
        submitted INTEGER NOT NULL DEFAULT 0,
        missing INTEGER NOT NULL DEFAULT 0,
        late INTEGER NOT NULL DEFAULT 0,
        graded INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (student_id, plannable_id)
    );

    CREATE TABLE IF NOT EXISTS token_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        student_id INTEGER NOT NULL,
        account_role TEXT NOT NULL CHECK (account_role IN ('PARENT', 'STUDENT')),
        encrypted_access TEXT NOT NULL,
        encrypted_refresh TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        calendar_id TEXT,
        account_email TEXT,
        requires_reauth INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(user_id, student_id, account_role)
    );

    CREATE TABLE IF NOT EXISTS sync_settings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        student_id INTEGER NOT NULL,
        sync_enabled INTEGER NOT NULL,
        sync_to_parent INTEGER NOT NULL,
        sync_to_student INTEGER NOT NULL,
        parent_reminder_minutes TEXT NOT NULL,
        student_reminder_minutes TEXT NOT NULL,
        included_courses TEXT NOT NULL,
        excluded_types TEXT NOT NULL,
        sync_completed INTEGER NOT NULL,
        auto_sync INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(user_id, student_id)
    );

    CREATE TABLE IF NOT EXISTS event_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        assignment_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        account_role TEXT NOT NULL CHECK (account_role IN ('PARENT', 'STUDENT')),
        external_event_id TEXT NOT NULL,
        external_calendar_id TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_synced_at TEXT,
        UNIQUE(assignment_id, student_id, account_role)
    );

    CREATE INDEX IF NOT EXISTS idx_event_mappings_student_role
        ON event_mappings(student_id, account_role);
    CREATE INDEX IF NOT EXISTS idx_token_records_expires_at
        ON token_records(expires_at);
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StateDatabase:
    """Owns the SQLite connection; every statement runs under one re-entrant lock."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Role sub-flows of one pass share this connection from worker threads.
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        with self.lock:
            self.conn.executescript(_SCHEMA)
            self.conn.commit()

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise CalendarSyncError("State database is not connected")
        return self.conn

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self._require_conn().execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self.lock:
            return self._require_conn().execute(sql, params).fetchone()

    def write(self, sql: str, params: tuple = ()) -> int:
        """Execute a single statement and commit; returns the affected row count."""
        with self.lock:
            conn = self._require_conn()
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    def close(self):
        """Close the database connection."""
        with self.lock:
            if self.conn:
                self.conn.close()
                self.conn = None


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


class AssignmentCache:
    """Locally cached assignments; the reconciler only ever reads from here."""

    def __init__(self, db: StateDatabase):
        self.db = db

    def upsert(self, assignment: Assignment):
        self.db.write(
            "INSERT INTO assignments "
            "(student_id, plannable_id, title, course_name, course_id, due_at, "
            " points_possible, current_grade, submitted, missing, late, graded, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(student_id, plannable_id) DO UPDATE SET "
            "title = excluded.title, course_name = excluded.course_name, "
            "course_id = excluded.course_id, due_at = excluded.due_at, "
            "points_possible = excluded.points_possible, "
            "current_grade = excluded.current_grade, submitted = excluded.submitted, "
            "missing = excluded.missing, late = excluded.late, graded = excluded.graded, "
            "updated_at = excluded.updated_at",
            (
                assignment.student_id,
                assignment.plannable_id,
                assignment.title,
                assignment.course_name,
                assignment.course_id,
                to_db_time(assignment.due_at),
                assignment.points_possible,
                assignment.current_grade,
                int(assignment.submitted),
                int(assignment.missing),
                int(assignment.late),
                int(assignment.graded),
                to_db_time(_now()),
            ),
        )

    def replace_for_student(self, student_id: int, assignments: list[Assignment]) -> int:
        """Make the cache for a student match exactly the given assignments."""
        keep = {a.plannable_id for a in assignments}
        for assignment in assignments:
            if assignment.student_id != student_id:
                raise CalendarSyncError(
                    f"Assignment {assignment.plannable_id} belongs to student "
                    f"{assignment.student_id}, not {student_id}"
                )
            self.upsert(assignment)
        removed = 0
        for row in self.db.query(
            "SELECT plannable_id FROM assignments WHERE student_id = ?", (student_id,)
        ):
            if row["plannable_id"] not in keep:
                removed += self.delete(student_id, row["plannable_id"])
        return removed

    def fetch_assignments(self, student_id: int) -> list[Assignment]:
        rows = self.db.query(
            "SELECT * FROM assignments WHERE student_id = ? ORDER BY due_at DESC", (student_id,)
        )
        return [self._from_row(row) for row in rows]

    def get(self, student_id: int, plannable_id: int) -> Assignment | None:
        row = self.db.query_one(
            "SELECT * FROM assignments WHERE student_id = ? AND plannable_id = ?",
            (student_id, plannable_id),
        )
        return self._from_row(row) if row else None

    def delete(self, student_id: int, plannable_id: int) -> int:
        return self.db.write(
            "DELETE FROM assignments WHERE student_id = ? AND plannable_id = ?",
            (student_id, plannable_id),
        )

    def evict_student(self, student_id: int) -> int:
        count = self.db.write("DELETE FROM assignments WHERE student_id = ?", (student_id,))
        logger.info(f"Evicted {count} cached assignment(s) for student {student_id}")
        return count

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Assignment:
        return Assignment(
            student_id=row["student_id"],
            plannable_id=row["plannable_id"],
            title=row["title"],
            course_name=row["course_name"],
            course_id=row["course_id"],
            due_at=from_db_time(row["due_at"]),
            points_possible=row["points_possible"],
            current_grade=row["current_grade"],
            submitted=bool(row["submitted"]),
            missing=bool(row["missing"]),
            late=bool(row["late"]),
            graded=bool(row["graded"]),
        )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class SettingsStore:
    """sync_settings rows; list columns are JSON only inside this class."""

    def __init__(self, db: StateDatabase):
        self.db = db

    def get(self, user_id: str, student_id: int) -> SyncSettings | None:
        row = self.db.query_one(
            "SELECT * FROM sync_settings WHERE user_id = ? AND student_id = ?",
            (user_id, student_id),
        )
        return self._from_row(row) if row else None

    def save(self, settings: SyncSettings):
        self.db.write(
            "INSERT INTO sync_settings "
            "(user_id, student_id, sync_enabled, sync_to_parent, sync_to_student, "
            " parent_reminder_minutes, student_reminder_minutes, included_courses, "
            " excluded_types, sync_completed, auto_sync, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, student_id) DO UPDATE SET "
            "sync_enabled = excluded.sync_enabled, sync_to_parent = excluded.sync_to_parent, "
            "sync_to_student = excluded.sync_to_student, "
            "parent_reminder_minutes = excluded.parent_reminder_minutes, "
            "student_reminder_minutes = excluded.student_reminder_minutes, "
            "included_courses = excluded.included_courses, "
            "excluded_types = excluded.excluded_types, "
            "sync_completed = excluded.sync_completed, auto_sync = excluded.auto_sync, "
            "updated_at = excluded.updated_at",
            (
                settings.user_id,
                settings.student_id,
                int(settings.sync_enabled),
                int(settings.sync_to_parent),
                int(settings.sync_to_student),
                json.dumps(list(settings.parent_reminders)),
                json.dumps(list(settings.student_reminders)),
                json.dumps(sorted(settings.included_courses)),
                json.dumps(sorted(settings.excluded_types)),
                int(settings.sync_completed_assignments),
                int(settings.auto_sync_enabled),
                to_db_time(_now()),
            ),
        )

    def delete(self, user_id: str, student_id: int) -> int:
        return self.db.write(
            "DELETE FROM sync_settings WHERE user_id = ? AND student_id = ?",
            (user_id, student_id),
        )

    def list_auto_sync(self) -> list[SyncSettings]:
        rows = self.db.query(
            "SELECT * FROM sync_settings WHERE auto_sync = 1 AND sync_enabled = 1 "
            "ORDER BY user_id, student_id"
        )
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _decode_list(raw: str | None) -> list:
        if not raw:
            return []
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed list column value: {raw!r}")
            return []
        return value if isinstance(value, list) else []

    @classmethod
    def _from_row(cls, row: sqlite3.Row) -> SyncSettings:
        return SyncSettings(
            user_id=row["user_id"],
            student_id=row["student_id"],
            sync_enabled=bool(row["sync_enabled"]),
            sync_to_parent=bool(row["sync_to_parent"]),
            sync_to_student=bool(row["sync_to_student"]),
            parent_reminders=tuple(int(m) for m in cls._decode_list(row["parent_reminder_minutes"])),
            student_reminders=tuple(
                int(m) for m in cls._decode_list(row["student_reminder_minutes"])
            ),
            included_courses=frozenset(str(c) for c in cls._decode_list(row["included_courses"])),
            excluded_types=frozenset(str(t) for t in cls._decode_list(row["excluded_types"])),
            sync_completed_assignments=bool(row["sync_completed"]),
            auto_sync_enabled=bool(row["auto_sync"]),
        )


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenStore:
    """token_records rows. Values are stored exactly as given (already encrypted)."""

    def __init__(self, db: StateDatabase):
        self.db = db

    def get(self, user_id: str, student_id: int, role: AccountRole) -> TokenRecord | None:
        row = self.db.query_one(
            "SELECT * FROM token_records "
            "WHERE user_id = ? AND student_id = ? AND account_role = ?",
            (user_id, student_id, role.value),
        )
        return self._from_row(row) if row else None

    def upsert(self, record: TokenRecord):
        """Insert or replace credentials; an existing calendar id survives a null one."""
        now = to_db_time(_now())
        self.db.write(
            "INSERT INTO token_records "
            "(user_id, student_id, account_role, encrypted_access, encrypted_refresh, "
            " expires_at, calendar_id, account_email, requires_reauth, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, student_id, account_role) DO UPDATE SET "
            "encrypted_access = excluded.encrypted_access, "
            "encrypted_refresh = excluded.encrypted_refresh, "
            "expires_at = excluded.expires_at, "
            "calendar_id = COALESCE(excluded.calendar_id, token_records.calendar_id), "
            "account_email = excluded.account_email, "
            "requires_reauth = excluded.requires_reauth, "
            "updated_at = excluded.updated_at",
            (
                record.user_id,
                record.student_id,
                record.role.value,
                record.encrypted_access_token,
                record.encrypted_refresh_token,
                to_db_time(record.expires_at),
                record.calendar_id,
                record.account_email,
                int(record.requires_reauth),
                now,
                now,
            ),
        )

    def update_access(
        self,
        user_id: str,
        student_id: int,
        role: AccountRole,
        encrypted_access: str,
        expires_at: datetime,
        encrypted_refresh: str | None = None,
    ) -> bool:
        if encrypted_refresh is None:
            count = self.db.write(
                "UPDATE token_records SET encrypted_access = ?, expires_at = ?, "
                "requires_reauth = 0, updated_at = ? "
                "WHERE user_id = ? AND student_id = ? AND account_role = ?",
                (
                    encrypted_access,
                    to_db_time(expires_at),
                    to_db_time(_now()),
                    user_id,
                    student_id,
                    role.value,
                ),
            )
        else:
            count = self.db.write(
                "UPDATE token_records SET encrypted_access = ?, encrypted_refresh = ?, "
                "expires_at = ?, requires_reauth = 0, updated_at = ? "
                "WHERE user_id = ? AND student_id = ? AND account_role = ?",
                (
                    encrypted_access,
                    encrypted_refresh,
                    to_db_time(expires_at),
                    to_db_time(_now()),
                    user_id,
                    student_id,
                    role.value,
                ),
            )
        return count > 0

    def set_calendar_id(
        self, user_id: str, student_id: int, role: AccountRole, calendar_id: str
    ) -> bool:
        return (
            self.db.write(
                "UPDATE token_records SET calendar_id = ?, updated_at = ? "
                "WHERE user_id = ? AND student_id = ? AND account_role = ?",
                (calendar_id, to_db_time(_now()), user_id, student_id, role.value),
            )
            > 0
        )

    def set_requires_reauth(
        self, user_id: str, student_id: int, role: AccountRole, flag: bool = True
    ) -> bool:
        return (
            self.db.write(
                "UPDATE token_records SET requires_reauth = ?, updated_at = ? "
                "WHERE user_id = ? AND student_id = ? AND account_role = ?",
                (int(flag), to_db_time(_now()), user_id, student_id, role.value),
            )
            > 0
        )

    def delete(self, user_id: str, student_id: int, role: AccountRole) -> bool:
        return (
            self.db.write(
                "DELETE FROM token_records "
                "WHERE user_id = ? AND student_id = ? AND account_role = ?",
                (user_id, student_id, role.value),
            )
            > 0
        )

    def delete_reauth_required_before(self, cutoff: datetime) -> int:
        """Delete records flagged for re-authentication whose access token expired before cutoff."""
        return self.db.write(
            "DELETE FROM token_records WHERE requires_reauth = 1 AND expires_at < ?",
            (to_db_time(cutoff),),
        )

    def list_for_student(self, user_id: str, student_id: int) -> list[TokenRecord]:
        rows = self.db.query(
            "SELECT * FROM token_records WHERE user_id = ? AND student_id = ?",
            (user_id, student_id),
        )
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> TokenRecord:
        return TokenRecord(
            user_id=row["user_id"],
            student_id=row["student_id"],
            role=AccountRole(row["account_role"]),
            encrypted_access_token=row["encrypted_access"],
            encrypted_refresh_token=row["encrypted_refresh"],
            expires_at=from_db_time(row["expires_at"]),
            calendar_id=row["calendar_id"],
            account_email=row["account_email"],
            requires_reauth=bool(row["requires_reauth"]),
        )


# ---------------------------------------------------------------------------
# Event mappings
# ---------------------------------------------------------------------------


class MappingStore:
    """event_mappings rows, scoped by (student, role)."""

    def __init__(self, db: StateDatabase):
        self.db = db

    def get_all(self, student_id: int, role: AccountRole) -> dict[int, EventMapping]:
        """Return mappings for (student, role) keyed by assignment id."""
        rows = self.db.query(
            "SELECT * FROM event_mappings WHERE student_id = ? AND account_role = ?",
            (student_id, role.value),
        )
        return {row["assignment_id"]: self._from_row(row) for row in rows}

    def get(self, assignment_id: int, student_id: int, role: AccountRole) -> EventMapping | None:
        row = self.db.query_one(
            "SELECT * FROM event_mappings "
            "WHERE assignment_id = ? AND student_id = ? AND account_role = ?",
            (assignment_id, student_id, role.value),
        )
        return self._from_row(row) if row else None

    def get_by_event_id(self, external_event_id: str) -> EventMapping | None:
        row = self.db.query_one(
            "SELECT * FROM event_mappings WHERE external_event_id = ? LIMIT 1",
            (external_event_id,),
        )
        return self._from_row(row) if row else None

    def upsert(self, mapping: EventMapping):
        """Insert or update; created_at survives an update."""
        synced_at = to_db_time(mapping.last_synced_at or _now())
        self.db.write(
            "INSERT INTO event_mappings "
            "(assignment_id, student_id, account_role, external_event_id, "
            " external_calendar_id, content_hash, created_at, last_synced_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(assignment_id, student_id, account_role) DO UPDATE SET "
            "external_event_id = excluded.external_event_id, "
            "external_calendar_id = excluded.external_calendar_id, "
            "content_hash = excluded.content_hash, "
            "last_synced_at = excluded.last_synced_at",
            (
                mapping.assignment_id,
                mapping.student_id,
                mapping.role.value,
                mapping.external_event_id,
                mapping.external_calendar_id,
                mapping.content_hash,
                synced_at,
                synced_at,
            ),
        )

    def delete(self, assignment_id: int, student_id: int, role: AccountRole) -> bool:
        return (
            self.db.write(
                "DELETE FROM event_mappings "
                "WHERE assignment_id = ? AND student_id = ? AND account_role = ?",
                (assignment_id, student_id, role.value),
            )
            > 0
        )

    def clear_role(self, student_id: int, role: AccountRole) -> int:
        return self.db.write(
            "DELETE FROM event_mappings WHERE student_id = ? AND account_role = ?",
            (student_id, role.value),
        )

    def summary(self) -> list[sqlite3.Row]:
        """Per (student, role) row counts and most recent sync time."""
        return self.db.query("""
            SELECT
                student_id,
                account_role,
                COUNT(*)            AS count,
                MAX(last_synced_at) AS last_synced_at
            FROM event_mappings
            GROUP BY student_id, account_role
            ORDER BY student_id, account_role
        """)

    @staticmethod
    def _from_row(row: sqlite3.Row) -> EventMapping:
        return EventMapping(
            assignment_id=row["assignment_id"],
            student_id=row["student_id"],
            role=AccountRole(row["account_role"]),
            external_event_id=row["external_event_id"],
            external_calendar_id=row["external_calendar_id"],
            content_hash=row["content_hash"],
            last_synced_at=from_db_time(row["last_synced_at"]),
        )
