"""
APPLYING for one role: sequential gateway calls and mapping writes.
"""

import time
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import TypeVar

from assignment_calendar_sync.db import MappingStore
from assignment_calendar_sync.events import build_event_spec
from assignment_calendar_sync.gateway import CalendarGateway
from assignment_calendar_sync.gateway import NotFound
from assignment_calendar_sync.gateway import Unauthorized
from assignment_calendar_sync.models import AccessToken
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import AuthorizationExpiredError
from assignment_calendar_sync.models import ErrorKind
from assignment_calendar_sync.models import EventMapping
from assignment_calendar_sync.models import RoleSyncResult
from assignment_calendar_sync.models import TokenRefreshError
from assignment_calendar_sync.sync.plan import RolePlan
from assignment_calendar_sync.sync.retry import Deadline
from assignment_calendar_sync.sync.retry import Outcome
from assignment_calendar_sync.sync.retry import RetryPolicy
from assignment_calendar_sync.sync.retry import call_with_retry
from assignment_calendar_sync.tokens import TokenLifecycleManager

T = TypeVar("T")


class RoleApplier:
    """
    Drives one role's gateway calls for one pass.

    Calls are issued one at a time. An Unauthorized response triggers a
    single token refresh for the whole role; a second Unauthorized, or a
    refresh the provider rejects, marks the credentials invalid and stops
    the role.
    """

    def __init__(
        self,
        user_id: str,
        student_id: int,
        role: AccountRole,
        token: AccessToken,
        gateway: CalendarGateway,
        tokens: TokenLifecycleManager,
        mappings: MappingStore,
        policy: RetryPolicy,
        deadline: Deadline,
        result: RoleSyncResult,
        logger,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self.user_id = user_id
        self.student_id = student_id
        self.role = role
        self.token = token
        self.gateway = gateway
        self.tokens = tokens
        self.mappings = mappings
        self.policy = policy
        self.deadline = deadline
        self.result = result
        self.logger = logger
        self.sleep = sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.refreshed = False
        self.aborted = False
        self._orphans: dict[int, str] | None = None

    # ------------------------------------------------------------------
    # Gateway calls
    # ------------------------------------------------------------------

    def call(self, description: str, operation: Callable[[str], T]) -> Outcome[T]:
        """Run ``operation(access_token)`` with retries and the refresh-once rule."""
        outcome = self._attempt(description, operation)
        if not isinstance(outcome.error, Unauthorized):
            return outcome

        if self.refreshed:
            self._abort_for_auth(f"{description}: provider rejected refreshed credentials")
            return outcome

        self.refreshed = True
        self.logger.info(f"{self.role.value}: access token rejected; refreshing once")
        try:
            self.token = self.tokens.force_refresh(self.user_id, self.student_id, self.role)
        except AuthorizationExpiredError as e:
            self._abort_for_auth(f"Token refresh rejected: {e}", already_marked=True)
            return Outcome(kind=ErrorKind.AUTHORIZATION_EXPIRED, error=outcome.error)
        except TokenRefreshError as e:
            self.aborted = True
            self.result.add_error(ErrorKind.TRANSIENT_NETWORK, f"Token refresh failed: {e}")
            self.logger.error(f"{self.role.value}: token refresh failed: {e}")
            return Outcome(kind=ErrorKind.TRANSIENT_NETWORK, error=outcome.error)

        outcome = self._attempt(description, operation)
        if isinstance(outcome.error, Unauthorized):
            self._abort_for_auth(f"{description}: still unauthorized after token refresh")
        return outcome

    def _attempt(self, description: str, operation: Callable[[str], T]) -> Outcome[T]:
        return call_with_retry(
            lambda: operation(self.token.value),
            self.policy,
            self.deadline,
            sleep=self.sleep,
            description=f"{self.role.value} {description}",
            logger=self.logger,
        )

    def _abort_for_auth(self, message: str, already_marked: bool = False) -> None:
        self.aborted = True
        self.result.requires_reauth = True
        if not already_marked:
            self.tokens.mark_invalid(self.user_id, self.student_id, self.role)
        self.result.add_error(ErrorKind.AUTHORIZATION_EXPIRED, "Reconnect required: " + message)
        self.logger.error(f"{self.role.value}: {message}")

    # ------------------------------------------------------------------
    # Plan execution
    # ------------------------------------------------------------------

    def _should_stop(self) -> bool:
        if self.aborted:
            return True
        if self.deadline.expired():
            if not self.result.timed_out:
                self.logger.warning(f"{self.role.value}: sync deadline reached; stopping")
            self.result.timed_out = True
            return True
        return False

    def _record_failure(self, action: str, outcome: Outcome, assignment_id: int) -> None:
        if self.aborted and isinstance(outcome.error, Unauthorized):
            # Already reported once for the role.
            return
        if outcome.kind is ErrorKind.TIMEOUT:
            self.result.timed_out = True
        detail = str(outcome.error) if outcome.error else outcome.kind.value
        self.result.add_error(outcome.kind, f"{action} failed: {detail}", assignment_id)
        self.logger.error(
            f"{self.role.value}: {action} of assignment {assignment_id} failed: {detail}"
        )

    def apply(
        self, plan: RolePlan, calendar_id: str, reminders: tuple[int, ...], known_event_ids: set[str]
    ) -> None:
        """
        Deletes, then updates, then creates; each item independent of the others.

        An assignment moving to a new calendar is only created there once
        the event on its old calendar has been deleted; otherwise the old
        mapping is kept and the move is retried next pass.
        """
        pending_moves = {m.assignment_id for m in plan.to_delete} & {
            a.plannable_id for a in plan.to_create
        }
        blocked: dict[int, ErrorKind] = {}
        for mapping in plan.to_delete:
            if self._should_stop():
                return
            outcome = self._delete(mapping)
            if not outcome.ok and mapping.assignment_id in pending_moves:
                blocked[mapping.assignment_id] = outcome.kind

        for assignment, mapping in plan.to_update:
            if self._should_stop():
                return
            self._update(assignment, mapping, reminders, plan.fingerprints[assignment.plannable_id])

        for assignment in plan.to_create:
            if self._should_stop():
                return
            if assignment.plannable_id in blocked:
                self.result.add_error(
                    blocked[assignment.plannable_id],
                    "create postponed: the event on the previous calendar could not be removed",
                    assignment.plannable_id,
                )
                self.logger.warning(
                    f"{self.role.value}: not recreating assignment {assignment.plannable_id} "
                    f"until its old event is deleted"
                )
                continue
            self._create(
                assignment,
                calendar_id,
                reminders,
                plan.fingerprints[assignment.plannable_id],
                known_event_ids,
            )

    def _save_mapping(
        self, assignment_id: int, event_id: str, calendar_id: str, fingerprint: str
    ) -> None:
        self.mappings.upsert(
            EventMapping(
                assignment_id=assignment_id,
                student_id=self.student_id,
                role=self.role,
                external_event_id=event_id,
                external_calendar_id=calendar_id,
                content_hash=fingerprint,
                last_synced_at=self.clock(),
            )
        )

    def _delete(self, mapping: EventMapping) -> Outcome:
        outcome = self.call(
            f"delete event {mapping.external_event_id}",
            lambda token: self.gateway.delete_event(
                token, mapping.external_calendar_id, mapping.external_event_id
            ),
        )
        if not outcome.ok:
            self._record_failure("delete", outcome, mapping.assignment_id)
            return outcome
        self.mappings.delete(mapping.assignment_id, self.student_id, self.role)
        self.result.deleted += 1
        self.logger.debug(
            f"{self.role.value}: deleted event {mapping.external_event_id} "
            f"for assignment {mapping.assignment_id}"
        )
        return outcome

    def _update(
        self, assignment: Assignment, mapping: EventMapping, reminders: tuple[int, ...], fingerprint: str
    ) -> None:
        spec = build_event_spec(assignment, self.role, reminders)
        outcome = self.call(
            f"update event {mapping.external_event_id}",
            lambda token: self.gateway.update_event(
                token, mapping.external_calendar_id, mapping.external_event_id, spec
            ),
        )
        if isinstance(outcome.error, NotFound) and not self.aborted:
            self.logger.warning(
                f"{self.role.value}: event {mapping.external_event_id} vanished; recreating"
            )
            outcome = self.call(
                f"recreate assignment {assignment.plannable_id}",
                lambda token: self.gateway.create_event(
                    token, mapping.external_calendar_id, spec
                ),
            )
            if outcome.ok:
                self._save_mapping(
                    assignment.plannable_id, outcome.value, mapping.external_calendar_id, fingerprint
                )
                self.result.updated += 1
                return
        if not outcome.ok:
            self._record_failure("update", outcome, assignment.plannable_id)
            return
        self._save_mapping(
            assignment.plannable_id,
            mapping.external_event_id,
            mapping.external_calendar_id,
            fingerprint,
        )
        self.result.updated += 1
        self.logger.debug(f"{self.role.value}: updated assignment {assignment.plannable_id}")

    def orphan_index(self, calendar_id: str, known_event_ids: set[str]) -> dict[int, str]:
        """Managed events in the calendar that no mapping points at, by assignment id."""
        if self._orphans is not None:
            return self._orphans
        outcome = self.call(
            "list managed events",
            lambda token: self.gateway.list_managed_events(
                token, calendar_id, self.student_id, self.role
            ),
        )
        self._orphans = {}
        if not outcome.ok:
            self.logger.warning(
                f"{self.role.value}: could not scan calendar for unmapped events: "
                f"{outcome.error or outcome.kind.value}"
            )
            return self._orphans
        for event in outcome.value:
            if event.event_id in known_event_ids or event.assignment_id is None:
                continue
            self._orphans.setdefault(event.assignment_id, event.event_id)
        return self._orphans

    def _create(
        self,
        assignment: Assignment,
        calendar_id: str,
        reminders: tuple[int, ...],
        fingerprint: str,
        known_event_ids: set[str],
    ) -> None:
        spec = build_event_spec(assignment, self.role, reminders)

        orphan_id = self.orphan_index(calendar_id, known_event_ids).get(assignment.plannable_id)
        if self.aborted:
            return
        if orphan_id is not None:
            outcome = self.call(
                f"adopt event {orphan_id}",
                lambda token: self.gateway.update_event(token, calendar_id, orphan_id, spec),
            )
            if outcome.ok:
                self.logger.warning(
                    f"{self.role.value}: adopted unmapped event {orphan_id} "
                    f"for assignment {assignment.plannable_id}"
                )
                self._orphans.pop(assignment.plannable_id, None)
                self._save_mapping(assignment.plannable_id, orphan_id, calendar_id, fingerprint)
                self.result.created += 1
                return
            if not isinstance(outcome.error, NotFound):
                self._record_failure("create", outcome, assignment.plannable_id)
                return

        outcome = self.call(
            f"create assignment {assignment.plannable_id}",
            lambda token: self.gateway.create_event(token, calendar_id, spec),
        )
        if not outcome.ok:
            self._record_failure("create", outcome, assignment.plannable_id)
            return
        self._save_mapping(assignment.plannable_id, outcome.value, calendar_id, fingerprint)
        self.result.created += 1
        self.logger.debug(
            f"{self.role.value}: created event {outcome.value} "
            f"for assignment {assignment.plannable_id}"
        )
