"""
Rebuild and clear operations: recover lost mappings from the calendar, or
remove every event we created for a role.
"""

from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import EventMapping
from assignment_calendar_sync.models import RoleSyncResult
from assignment_calendar_sync.sync.retry import Deadline


def _applier_for(reconciler, user_id: str, student_id: int, role: AccountRole):
    token = reconciler.tokens.get_valid_token(user_id, student_id, role)
    applier = reconciler.make_applier(
        user_id, student_id, role, token, Deadline(None, reconciler.monotonic), RoleSyncResult(role)
    )
    return token, applier


def _scan(applier, reconciler, calendar_id: str, student_id: int, role: AccountRole):
    outcome = applier.call(
        "list managed events",
        lambda token: reconciler.gateway.list_managed_events(token, calendar_id, student_id, role),
    )
    if not outcome.ok:
        raise CalendarSyncError(
            f"Could not list {role.value} calendar events: {outcome.error or outcome.kind.value}"
        )
    return outcome.value


def rebuild_mappings(reconciler, user_id: str, student_id: int, role: AccountRole) -> int:
    """
    Re-create missing mapping rows from the extended properties of managed
    events. Recovered rows get an empty content hash, so the next pass
    rewrites those events with current content.

    Returns the number of mappings recovered.
    """
    logger = reconciler.logger
    token, applier = _applier_for(reconciler, user_id, student_id, role)
    if not token.calendar_id:
        logger.info(f"{role.value}: no calendar provisioned yet; nothing to rebuild")
        return 0

    existing = reconciler.mappings.get_all(student_id, role)
    known_event_ids = {m.external_event_id for m in existing.values()}
    events = _scan(applier, reconciler, token.calendar_id, student_id, role)

    recovered = 0
    for event in events:
        assignment_id = event.assignment_id
        if assignment_id is None or event.event_id in known_event_ids:
            continue
        if assignment_id in existing:
            logger.warning(
                f"{role.value}: duplicate event {event.event_id} for assignment "
                f"{assignment_id} (mapped to {existing[assignment_id].external_event_id})"
            )
            continue
        if reconciler.assignments.get(student_id, assignment_id) is None:
            logger.debug(f"{role.value}: event {event.event_id} has no cached assignment")
            continue
        mapping = EventMapping(
            assignment_id=assignment_id,
            student_id=student_id,
            role=role,
            external_event_id=event.event_id,
            external_calendar_id=token.calendar_id,
            content_hash="",
            last_synced_at=reconciler.clock(),
        )
        reconciler.mappings.upsert(mapping)
        existing[assignment_id] = mapping
        recovered += 1
        logger.debug(f"{role.value}: recovered mapping {assignment_id} -> {event.event_id}")

    logger.info(f"{role.value}: recovered {recovered} mapping(s) from {len(events)} managed event(s)")
    return recovered


def clear_role(reconciler, user_id: str, student_id: int, role: AccountRole) -> int:
    """Delete every event we created for (student, role) and drop its mappings.

    Mappings are only removed for events that were deleted successfully.
    Returns the number of events deleted.
    """
    logger = reconciler.logger
    logger.warning(f"CLEAR: removing managed {role.value} events for student {student_id}")
    token, applier = _applier_for(reconciler, user_id, student_id, role)

    targets: dict[str, tuple[str, int | None]] = {}
    for mapping in reconciler.mappings.get_all(student_id, role).values():
        targets[mapping.external_event_id] = (mapping.external_calendar_id, mapping.assignment_id)
    if token.calendar_id:
        for event in _scan(applier, reconciler, token.calendar_id, student_id, role):
            targets.setdefault(event.event_id, (token.calendar_id, event.assignment_id))

    deleted = 0
    failed = 0
    for event_id, (calendar_id, assignment_id) in targets.items():
        outcome = applier.call(
            f"delete event {event_id}",
            lambda t, c=calendar_id, e=event_id: reconciler.gateway.delete_event(t, c, e),
        )
        if applier.aborted:
            raise CalendarSyncError(f"{role.value} calendar must be reconnected before clearing")
        if not outcome.ok:
            failed += 1
            logger.error(f"{role.value}: failed to remove {event_id}: {outcome.error}")
            continue
        if assignment_id is not None:
            reconciler.mappings.delete(assignment_id, student_id, role)
        deleted += 1

    if not failed:
        reconciler.mappings.clear_role(student_id, role)
    logger.info(f"Clear complete: removed {deleted} {role.value} event(s), {failed} failure(s)")
    return deleted
