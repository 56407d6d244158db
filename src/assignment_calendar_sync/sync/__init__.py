"""
SyncReconciler: one reconciliation pass per student, across both account roles.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from datetime import timezone
from typing import Callable

from assignment_calendar_sync.db import AssignmentCache
from assignment_calendar_sync.db import MappingStore
from assignment_calendar_sync.gateway import CalendarGateway
from assignment_calendar_sync.models import ROLE_PROFILES
from assignment_calendar_sync.models import AccessToken
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import AuthorizationExpiredError
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import ErrorKind
from assignment_calendar_sync.models import ItemError
from assignment_calendar_sync.models import NotConnectedError
from assignment_calendar_sync.models import PassState
from assignment_calendar_sync.models import RoleSyncResult
from assignment_calendar_sync.models import SyncInProgressError
from assignment_calendar_sync.models import SyncResult
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.models import TokenRefreshError
from assignment_calendar_sync.models import calendar_display_name
from assignment_calendar_sync.preferences import SyncSettingsService
from assignment_calendar_sync.preferences import settings_require_resync
from assignment_calendar_sync.sync.apply import RoleApplier
from assignment_calendar_sync.sync.locks import StudentLockRegistry
from assignment_calendar_sync.sync.plan import RolePlan
from assignment_calendar_sync.sync.plan import filter_eligible
from assignment_calendar_sync.sync.plan import plan_role
from assignment_calendar_sync.sync.refresh import clear_role
from assignment_calendar_sync.sync.refresh import rebuild_mappings
from assignment_calendar_sync.sync.retry import Deadline
from assignment_calendar_sync.sync.retry import RetryPolicy
from assignment_calendar_sync.tokens import TokenLifecycleManager


def _default_student_name(student_id: int) -> str:
    return f"Student {student_id}"


class SyncReconciler:
    """Main synchronization engine."""

    def __init__(
        self,
        assignments: AssignmentCache,
        settings: SyncSettingsService,
        mappings: MappingStore,
        tokens: TokenLifecycleManager,
        gateway: CalendarGateway,
        policy: RetryPolicy | None = None,
        timeout: float | None = 10.0,
        locks: StudentLockRegistry | None = None,
        student_name: Callable[[int], str] = _default_student_name,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.assignments = assignments
        self.settings = settings
        self.mappings = mappings
        self.tokens = tokens
        self.gateway = gateway
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.locks = locks or StudentLockRegistry()
        self.student_name = student_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.monotonic = monotonic
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def trigger_sync(
        self, user_id: str, student_id: int, wait: float | None = None
    ) -> SyncResult:
        """Run a full pass for the student. Never raises; failures are in the result."""
        return self._guarded(user_id, student_id, wait, only=None)

    def sync_assignment(self, user_id: str, student_id: int, plannable_id: int) -> SyncResult:
        """Reconcile a single assignment across the enabled roles."""
        return self._guarded(user_id, student_id, None, only=plannable_id)

    def apply_settings(
        self, user_id: str, student_id: int, **changes
    ) -> tuple[SyncSettings, SyncResult | None]:
        """Save a settings change; run a pass right away when it affects calendar contents."""
        before = self.settings.get(user_id, student_id)
        after = self.settings.update(user_id, student_id, **changes)
        if not settings_require_resync(before, after):
            return after, None
        self.logger.info(f"Settings change for student {student_id} requires a resync")
        return after, self.trigger_sync(user_id, student_id)

    def rebuild(self, user_id: str, student_id: int, role: AccountRole) -> int:
        with self.locks.hold(student_id):
            return rebuild_mappings(self, user_id, student_id, role)

    def clear(self, user_id: str, student_id: int, role: AccountRole) -> int:
        with self.locks.hold(student_id):
            return clear_role(self, user_id, student_id, role)

    def disconnect(
        self, user_id: str, student_id: int, role: AccountRole, remote: bool = True
    ) -> bool:
        """
        Revoke the role's credentials and drop its event mappings.

        Events already in the calendar are left there; use ``clear`` first to
        remove them. Returns False when the role was not connected.
        """
        with self.locks.hold(student_id):
            existed = self.tokens.revoke(user_id, student_id, role, remote=remote)
            dropped = self.mappings.clear_role(student_id, role)
        if dropped:
            self.logger.info(
                f"{role.value}: forgot {dropped} event mapping(s) for student {student_id}"
            )
        return existed

    def _guarded(
        self, user_id: str, student_id: int, wait: float | None, only: int | None
    ) -> SyncResult:
        result = SyncResult(user_id=user_id, student_id=student_id)
        try:
            with self.locks.hold(student_id, wait=wait):
                self.run_pass(user_id, student_id, result, only=only)
        except SyncInProgressError as e:
            self.logger.warning(str(e))
            result.status = "in_progress"
            result.state = PassState.DONE
        except Exception as e:
            self.logger.exception(f"Sync pass for student {student_id} failed: {e}")
            result.state = PassState.FAILED
            result.status = "failed"
            result.errors.append(ItemError(None, ErrorKind.INTERNAL, f"Sync failed: {e}"))
        return result

    # ------------------------------------------------------------------
    # The pass
    # ------------------------------------------------------------------

    def run_pass(
        self, user_id: str, student_id: int, result: SyncResult, only: int | None = None
    ) -> SyncResult:
        """LOADING -> FILTERING -> DIFFING -> APPLYING -> DONE. Caller holds the lock."""
        deadline = Deadline(self.timeout, self.monotonic)
        now = self.clock()
        self.logger.info(f"Starting sync for user {user_id}, student {student_id}")

        # -- LOADING ---------------------------------------------------------
        result.state = PassState.LOADING
        settings = self.settings.get(user_id, student_id)
        if not settings.sync_enabled:
            self.logger.info(f"Sync disabled for student {student_id}; nothing to do")
            result.status = "disabled"
            result.state = PassState.DONE
            return result

        if only is None:
            assignments = self.assignments.fetch_assignments(student_id)
        else:
            single = self.assignments.get(student_id, only)
            assignments = [single] if single else []
        existing = {role: self.mappings.get_all(student_id, role) for role in AccountRole}

        # A disabled role is still visited when it has events left to remove.
        roles = [
            role for role in AccountRole if settings.role_enabled(role) or existing[role]
        ]
        role_results = {role: result.role(role) for role in roles}
        with ThreadPoolExecutor(max_workers=len(AccountRole)) as pool:
            loaded = dict(
                zip(
                    roles,
                    pool.map(
                        lambda role: self._load_token(user_id, student_id, role, role_results[role]),
                        roles,
                    ),
                )
            )
        active = [role for role in roles if loaded[role] is not None]

        # -- FILTERING -------------------------------------------------------
        result.state = PassState.FILTERING
        eligible = {role: filter_eligible(assignments, settings, role, now) for role in active}

        # -- DIFFING ---------------------------------------------------------
        result.state = PassState.DIFFING
        scope = {only} if only is not None else None
        plans: dict[AccountRole, RolePlan] = {}
        for role in active:
            plans[role] = plan_role(
                role,
                eligible[role],
                existing[role],
                settings.reminders_for(role),
                loaded[role].calendar_id,
                scope=scope,
            )
            self.logger.debug(
                f"{role.value}: {len(plans[role].to_create)} to create, "
                f"{len(plans[role].to_update)} to update, "
                f"{len(plans[role].to_delete)} to delete, "
                f"{len(plans[role].unchanged)} unchanged"
            )

        # -- APPLYING --------------------------------------------------------
        result.state = PassState.APPLYING
        with ThreadPoolExecutor(max_workers=len(AccountRole)) as pool:
            futures = {
                role: pool.submit(
                    self._apply_role,
                    user_id,
                    student_id,
                    role,
                    loaded[role],
                    plans[role],
                    settings,
                    existing[role],
                    deadline,
                    result.role(role),
                )
                for role in active
                if plans[role].operation_count
            }
            for role, future in futures.items():
                try:
                    future.result()
                except Exception as e:
                    self.logger.exception(f"{role.value}: unexpected error while applying: {e}")
                    result.role(role).add_error(ErrorKind.INTERNAL, f"Unexpected error: {e}")

        # -- DONE ------------------------------------------------------------
        result.timed_out = any(r.timed_out for r in result.roles.values())
        result.state = PassState.DONE
        for role, role_result in result.roles.items():
            self.logger.info(
                f"{role.value}: created {role_result.created}, updated {role_result.updated}, "
                f"deleted {role_result.deleted}, errors {role_result.error_count}"
                + (" (skipped)" if role_result.skipped else "")
                + (" (timed out)" if role_result.timed_out else "")
            )
        return result

    def _load_token(
        self, user_id: str, student_id: int, role: AccountRole, role_result: RoleSyncResult
    ) -> AccessToken | None:
        try:
            return self.tokens.get_valid_token(user_id, student_id, role)
        except NotConnectedError:
            self.logger.debug(f"{role.value}: not connected; skipping")
            role_result.skipped = True
            role_result.skip_reason = ErrorKind.NOT_CONNECTED
        except AuthorizationExpiredError as e:
            self.logger.error(f"{role.value}: {e}")
            role_result.skipped = True
            role_result.skip_reason = ErrorKind.AUTHORIZATION_EXPIRED
            role_result.requires_reauth = True
            role_result.add_error(ErrorKind.AUTHORIZATION_EXPIRED, "Reconnect required")
        except TokenRefreshError as e:
            self.logger.warning(f"{role.value}: token refresh failed: {e}")
            role_result.skipped = True
            role_result.skip_reason = ErrorKind.TRANSIENT_NETWORK
            role_result.add_error(ErrorKind.TRANSIENT_NETWORK, f"Token refresh failed: {e}")
        except CalendarSyncError as e:
            self.logger.error(f"{role.value}: cannot use stored credentials: {e}")
            role_result.skipped = True
            role_result.skip_reason = ErrorKind.INTERNAL
            role_result.add_error(ErrorKind.INTERNAL, str(e))
        return None

    def make_applier(
        self,
        user_id: str,
        student_id: int,
        role: AccountRole,
        token: AccessToken,
        deadline: Deadline,
        role_result: RoleSyncResult,
    ) -> RoleApplier:
        return RoleApplier(
            user_id,
            student_id,
            role,
            token,
            self.gateway,
            self.tokens,
            self.mappings,
            self.policy,
            deadline,
            role_result,
            self.logger,
            sleep=self.sleep,
            clock=self.clock,
        )

    def ensure_calendar(
        self, applier: RoleApplier, user_id: str, student_id: int, role: AccountRole
    ) -> str | None:
        """Return the role's calendar id, creating the calendar on first use."""
        if applier.token.calendar_id:
            return applier.token.calendar_id
        name = self.student_name(student_id)
        outcome = applier.call(
            "create calendar",
            lambda token: self.gateway.ensure_calendar(
                token,
                calendar_display_name(role, name),
                description=ROLE_PROFILES[role].calendar_description_template.format(
                    student_name=name
                ),
            ),
        )
        if not outcome.ok:
            if not applier.aborted:
                applier.result.add_error(
                    outcome.kind, f"Could not create calendar: {outcome.error or outcome.kind.value}"
                )
            return None
        self.tokens.update_calendar_id(user_id, student_id, role, outcome.value)
        return outcome.value

    def _apply_role(
        self,
        user_id: str,
        student_id: int,
        role: AccountRole,
        token: AccessToken,
        plan: RolePlan,
        settings: SyncSettings,
        mappings: dict,
        deadline: Deadline,
        role_result: RoleSyncResult,
    ) -> None:
        applier = self.make_applier(user_id, student_id, role, token, deadline, role_result)
        calendar_id = token.calendar_id
        if plan.to_create:
            calendar_id = self.ensure_calendar(applier, user_id, student_id, role)
            if calendar_id is None:
                # Deletes and updates target the calendars recorded on each mapping.
                plan.to_create.clear()
        known_event_ids = {m.external_event_id for m in mappings.values()}
        applier.apply(plan, calendar_id, settings.reminders_for(role), known_event_ids)
