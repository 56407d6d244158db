"""
Auto-sync: passes for every student with auto-sync enabled, students in parallel.
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor

from assignment_calendar_sync.models import SyncResult

logger = logging.getLogger(__name__)


def run_auto_sync(reconciler, max_workers: int = 4) -> list[SyncResult]:
    """
    Run a pass for each (user, student) with auto-sync on.

    Different students run concurrently. Observers of the same student run
    one after another in a single worker, so they never contend for the
    student's lock.
    """
    by_student: dict[int, list[str]] = defaultdict(list)
    for settings in reconciler.settings.list_auto_sync():
        by_student[settings.student_id].append(settings.user_id)

    if not by_student:
        logger.info("Auto-sync: no students have auto-sync enabled")
        return []

    def run_student(student_id: int) -> list[SyncResult]:
        return [reconciler.trigger_sync(user_id, student_id) for user_id in by_student[student_id]]

    results: list[SyncResult] = []
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        for student_results in pool.map(run_student, sorted(by_student)):
            results.extend(student_results)

    failed = sum(1 for r in results if r.status == "failed")
    logger.info(
        f"Auto-sync finished for {len(by_student)} student(s): "
        f"{sum(r.total_operations for r in results)} operation(s), "
        f"{sum(r.error_count for r in results)} error(s), {failed} failed pass(es)"
    )
    return results
