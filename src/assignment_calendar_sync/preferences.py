"""
Sync preferences per (user, student): defaults, validated updates and
resync detection.
"""

import logging
from dataclasses import fields
from typing import Iterable

from assignment_calendar_sync.db import SettingsStore
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import SettingsValidationError
from assignment_calendar_sync.models import SyncSettings

logger = logging.getLogger(__name__)

MAX_REMINDER_MINUTES = 40320  # four weeks
MAX_REMINDERS = 5  # Google Calendar accepts at most five overrides

_BOOL_FIELDS = frozenset(
    {
        "sync_enabled",
        "sync_to_parent",
        "sync_to_student",
        "sync_completed_assignments",
        "auto_sync_enabled",
    }
)
_REMINDER_FIELDS = frozenset({"parent_reminders", "student_reminders"})
_SET_FIELDS = frozenset({"included_courses", "excluded_types"})
_IDENTITY_FIELDS = frozenset({"user_id", "student_id"})

# Changing anything except the auto-sync flag changes what the calendars should contain.
_SCOPE_FIELDS = tuple(
    f.name
    for f in fields(SyncSettings)
    if f.name not in _IDENTITY_FIELDS and f.name != "auto_sync_enabled"
)


def normalize_reminders(minutes: Iterable[int]) -> tuple[int, ...]:
    """Validate reminder offsets and return them de-duplicated, largest first.

    An empty list is valid and means no reminders.
    """
    cleaned: set[int] = set()
    for value in minutes:
        if isinstance(value, bool) or not isinstance(value, int):
            raise SettingsValidationError(f"Reminder minutes must be integers, got {value!r}")
        if value < 0:
            raise SettingsValidationError("Reminder minutes must be non-negative")
        if value > MAX_REMINDER_MINUTES:
            raise SettingsValidationError(
                f"Reminder minutes cannot exceed 4 weeks ({MAX_REMINDER_MINUTES} minutes)"
            )
        cleaned.add(value)
    if len(cleaned) > MAX_REMINDERS:
        raise SettingsValidationError(f"At most {MAX_REMINDERS} reminders are allowed")
    return tuple(sorted(cleaned, reverse=True))


def _normalize_names(values: Iterable[str], label: str) -> frozenset[str]:
    if isinstance(values, str):
        raise SettingsValidationError(f"{label} must be a list, not a string")
    names = set()
    for value in values:
        name = str(value).strip()
        if name:
            names.add(name)
    return frozenset(names)


def settings_require_resync(old: SyncSettings, new: SyncSettings) -> bool:
    return any(getattr(old, name) != getattr(new, name) for name in _SCOPE_FIELDS)


class SyncSettingsService:
    def __init__(self, store: SettingsStore):
        self.store = store

    def get(self, user_id: str, student_id: int) -> SyncSettings:
        """Stored settings, or the system defaults when none were saved."""
        return self.store.get(user_id, student_id) or SyncSettings(user_id, student_id)

    def update(self, user_id: str, student_id: int, **changes) -> SyncSettings:
        """Validate and persist a partial update; returns the saved settings."""
        validated = {}
        for name, value in changes.items():
            if name in _BOOL_FIELDS:
                if not isinstance(value, bool):
                    raise SettingsValidationError(f"{name} must be true or false")
                validated[name] = value
            elif name in _REMINDER_FIELDS:
                validated[name] = normalize_reminders(value)
            elif name in _SET_FIELDS:
                validated[name] = _normalize_names(value, name)
            else:
                raise SettingsValidationError(f"Unknown setting: {name}")

        current = self.get(user_id, student_id)
        updated = current.with_changes(**validated)
        self.store.save(updated)
        logger.info(
            f"Updated sync settings for user {user_id}, student {student_id}: "
            f"{', '.join(sorted(validated)) or 'no changes'}"
        )
        return updated

    def set_sync_enabled(self, user_id: str, student_id: int, enabled: bool) -> SyncSettings:
        return self.update(user_id, student_id, sync_enabled=enabled)

    def set_auto_sync_enabled(self, user_id: str, student_id: int, enabled: bool) -> SyncSettings:
        return self.update(user_id, student_id, auto_sync_enabled=enabled)

    def set_role_enabled(
        self, user_id: str, student_id: int, role: AccountRole, enabled: bool
    ) -> SyncSettings:
        name = "sync_to_parent" if role is AccountRole.PARENT else "sync_to_student"
        return self.update(user_id, student_id, **{name: enabled})

    def set_reminders(
        self, user_id: str, student_id: int, role: AccountRole, minutes: Iterable[int]
    ) -> SyncSettings:
        name = "parent_reminders" if role is AccountRole.PARENT else "student_reminders"
        return self.update(user_id, student_id, **{name: list(minutes)})

    def set_included_courses(
        self, user_id: str, student_id: int, courses: Iterable[str]
    ) -> SyncSettings:
        return self.update(user_id, student_id, included_courses=courses)

    def set_excluded_types(
        self, user_id: str, student_id: int, types: Iterable[str]
    ) -> SyncSettings:
        return self.update(user_id, student_id, excluded_types=types)

    def delete(self, user_id: str, student_id: int) -> bool:
        return self.store.delete(user_id, student_id) > 0

    def list_auto_sync(self) -> list[SyncSettings]:
        return self.store.list_auto_sync()
