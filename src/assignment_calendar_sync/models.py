"""
Pure data models; no sqlite, HTTP or crypto imports.
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/assignment-calendar-sync.db"
DEFAULT_CONFIG = Path.home() / ".config/assignment-calendar-sync.conf"

MANAGED_MARKER = "assignment-calendar-sync"
MAX_REPORTED_ERRORS = 20


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for assignment calendar sync errors."""

    pass


class ConfigError(CalendarSyncError):
    """Configuration is missing or malformed."""


class NotConnectedError(CalendarSyncError):
    """No token record exists for the requested role."""


class AuthorizationExpiredError(CalendarSyncError):
    """The stored credentials can no longer be refreshed; the user must reconnect."""


class TokenRefreshError(CalendarSyncError):
    """A refresh attempt failed for a reason that may resolve on its own."""


class SyncInProgressError(CalendarSyncError):
    """Another reconciliation pass already holds the lock for this student."""


class SettingsValidationError(CalendarSyncError):
    """A settings update was rejected."""


# ---------------------------------------------------------------------------
# Account roles
# ---------------------------------------------------------------------------


class AccountRole(str, enum.Enum):
    PARENT = "PARENT"
    STUDENT = "STUDENT"


@dataclass(frozen=True)
class RoleProfile:
    """Role-specific configuration looked up by AccountRole."""

    default_reminders: tuple[int, ...]
    calendar_name_template: str
    calendar_description_template: str
    # Offsets at or above this threshold are delivered by e-mail; None = always popup.
    email_reminder_threshold: int | None


ROLE_PROFILES: dict[AccountRole, RoleProfile] = {
    AccountRole.PARENT: RoleProfile(
        default_reminders=(1440, 120),
        calendar_name_template="Student Assignments - {student_name}",
        calendar_description_template="Assignments and quizzes for {student_name}",
        email_reminder_threshold=1440,
    ),
    AccountRole.STUDENT: RoleProfile(
        default_reminders=(120, 30),
        calendar_name_template="My Assignments",
        calendar_description_template="Assignments and quizzes for {student_name}",
        email_reminder_threshold=None,
    ),
}


def calendar_display_name(role: AccountRole, student_name: str) -> str:
    return ROLE_PROFILES[role].calendar_name_template.format(student_name=student_name)


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


class AssignmentStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    MISSING = "missing"
    LATE = "late"
    OVERDUE = "overdue"
    PENDING = "pending"


@dataclass(frozen=True)
class Assignment:
    """A cached learning-system task; identity is (student_id, plannable_id)."""

    student_id: int
    plannable_id: int
    title: str
    course_name: str | None = None
    course_id: int | None = None
    due_at: datetime | None = None
    points_possible: float | None = None
    current_grade: str | None = None
    submitted: bool = False
    missing: bool = False
    late: bool = False
    graded: bool = False


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class ConnectionState(str, enum.Enum):
    CONNECTED = "connected"
    REAUTH_REQUIRED = "reauth_required"
    NOT_CONNECTED = "not_connected"


@dataclass
class TokenRecord:
    """Stored OAuth credentials for one (user, student, role); tokens are ciphertext."""

    user_id: str
    student_id: int
    role: AccountRole
    encrypted_access_token: str
    encrypted_refresh_token: str
    expires_at: datetime
    calendar_id: str | None = None
    account_email: str | None = None
    requires_reauth: bool = False


@dataclass(frozen=True)
class AccessToken:
    """A decrypted access token that is valid beyond the refresh margin."""

    value: str
    expires_at: datetime
    calendar_id: str | None = None
    account_email: str | None = None


@dataclass(frozen=True)
class RoleConnection:
    role: AccountRole
    state: ConnectionState
    account_email: str | None = None
    calendar_id: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ConnectionStatus:
    parent: RoleConnection
    student: RoleConnection

    def for_role(self, role: AccountRole) -> RoleConnection:
        return self.parent if role is AccountRole.PARENT else self.student

    @property
    def any_connected(self) -> bool:
        return ConnectionState.CONNECTED in (self.parent.state, self.student.state)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncSettings:
    """Per (user, student) sync preferences; absence in storage means these defaults."""

    user_id: str
    student_id: int
    sync_enabled: bool = True
    sync_to_parent: bool = True
    sync_to_student: bool = True
    parent_reminders: tuple[int, ...] = ROLE_PROFILES[AccountRole.PARENT].default_reminders
    student_reminders: tuple[int, ...] = ROLE_PROFILES[AccountRole.STUDENT].default_reminders
    included_courses: frozenset[str] = frozenset()
    excluded_types: frozenset[str] = frozenset()
    sync_completed_assignments: bool = False
    auto_sync_enabled: bool = True

    def role_enabled(self, role: AccountRole) -> bool:
        return self.sync_to_parent if role is AccountRole.PARENT else self.sync_to_student

    def reminders_for(self, role: AccountRole) -> tuple[int, ...]:
        return self.parent_reminders if role is AccountRole.PARENT else self.student_reminders

    def with_changes(self, **changes) -> "SyncSettings":
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# Event mappings and event content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventMapping:
    """Durable link between one assignment and its external event for one role."""

    assignment_id: int
    student_id: int
    role: AccountRole
    external_event_id: str
    external_calendar_id: str
    content_hash: str
    last_synced_at: datetime | None = None


@dataclass(frozen=True)
class Reminder:
    method: str  # 'email' | 'popup'
    minutes: int


@dataclass(frozen=True)
class EventSpec:
    """Provider-neutral description of the event representing an assignment."""

    title: str
    description: str
    start: datetime
    end: datetime
    reminders: tuple[Reminder, ...]
    color_id: str | None
    extended_properties: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ManagedEvent:
    """An event found in a remote calendar that carries our marker."""

    event_id: str
    properties: dict[str, str]

    @property
    def assignment_id(self) -> int | None:
        raw = self.properties.get("assignment_id")
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PassState(str, enum.Enum):
    LOADING = "loading"
    FILTERING = "filtering"
    DIFFING = "diffing"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


class ErrorKind(str, enum.Enum):
    NOT_CONNECTED = "not_connected"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    PERMANENT_REJECTION = "permanent_rejection"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ItemError:
    """Summary of one failed operation, safe to show to a user."""

    role: AccountRole | None
    kind: ErrorKind
    message: str
    assignment_id: int | None = None

    def as_dict(self) -> dict:
        return {
            "role": self.role.value if self.role else None,
            "kind": self.kind.value,
            "assignment_id": self.assignment_id,
            "message": self.message,
        }


@dataclass
class RoleSyncResult:
    """Counts for one role in one pass."""

    role: AccountRole
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[ItemError] = field(default_factory=list)
    skipped: bool = False
    skip_reason: ErrorKind | None = None
    requires_reauth: bool = False
    timed_out: bool = False

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def add_error(self, kind: ErrorKind, message: str, assignment_id: int | None = None):
        self.errors.append(ItemError(self.role, kind, message, assignment_id))


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass for a student."""

    user_id: str
    student_id: int
    state: PassState = PassState.LOADING
    status: str = "success"  # success | disabled | in_progress | failed
    roles: dict[AccountRole, RoleSyncResult] = field(default_factory=dict)
    errors: list[ItemError] = field(default_factory=list)
    timed_out: bool = False

    def role(self, role: AccountRole) -> RoleSyncResult:
        if role not in self.roles:
            self.roles[role] = RoleSyncResult(role)
        return self.roles[role]

    @property
    def created(self) -> int:
        return sum(r.created for r in self.roles.values())

    @property
    def updated(self) -> int:
        return sum(r.updated for r in self.roles.values())

    @property
    def deleted(self) -> int:
        return sum(r.deleted for r in self.roles.values())

    def all_errors(self) -> list[ItemError]:
        collected = list(self.errors)
        for role in AccountRole:
            if role in self.roles:
                collected.extend(self.roles[role].errors)
        return collected

    @property
    def error_count(self) -> int:
        return len(self.all_errors())

    @property
    def total_operations(self) -> int:
        return self.created + self.updated + self.deleted

    def as_dict(self) -> dict:
        """Serialisable summary with a bounded error list."""
        errors = self.all_errors()
        return {
            "user_id": self.user_id,
            "student_id": self.student_id,
            "status": self.status,
            "state": self.state.value,
            "timed_out": self.timed_out,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "error_count": len(errors),
            "errors": [e.as_dict() for e in errors[:MAX_REPORTED_ERRORS]],
            "roles": {
                role.value: {
                    "created": r.created,
                    "updated": r.updated,
                    "deleted": r.deleted,
                    "errors": r.error_count,
                    "skipped": r.skipped,
                    "skip_reason": r.skip_reason.value if r.skip_reason else None,
                    "requires_reauth": r.requires_reauth,
                    "timed_out": r.timed_out,
                }
                for role, r in self.roles.items()
            },
        }


# ---------------------------------------------------------------------------
# Application configuration
# ---------------------------------------------------------------------------


@dataclass
class AppConfig:
    """Configuration for the sync service and CLI."""

    state_db_path: Path = DEFAULT_STATE_DB
    encryption_key: str | None = None
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_redirect_uri: str = "http://localhost:8080/oauth/callback"
    sync_timeout_seconds: float = 10.0
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0
    token_refresh_margin_minutes: int = 5
    request_timeout_seconds: float = 8.0
    auto_sync_workers: int = 4
    time_zone: str = "UTC"
    verbose: bool = False
