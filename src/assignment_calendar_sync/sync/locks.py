"""
One reconciliation pass per student at a time.
"""

import threading
from contextlib import contextmanager

from assignment_calendar_sync.models import SyncInProgressError


class StudentLockRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, student_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(student_id)
            if lock is None:
                lock = self._locks[student_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, student_id: int, wait: float | None = None):
        """
        Hold the student's lock for the body of the with-block.

        With ``wait=None`` a busy lock is rejected immediately; otherwise the
        caller queues for up to ``wait`` seconds. Raises SyncInProgressError
        when the lock could not be taken.
        """
        lock = self._lock_for(student_id)
        acquired = lock.acquire(blocking=False) if wait is None else lock.acquire(timeout=wait)
        if not acquired:
            raise SyncInProgressError(f"A sync for student {student_id} is already running")
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, student_id: int) -> bool:
        return self._lock_for(student_id).locked()
