"""
Per-(lead, pipeline) mutual exclusion for pipeline-entry transitions.

Locks are created on demand and dropped once no thread holds or waits for
them, so the registry only ever holds keys that are in use.  Multi-key
acquisition (transfer, bulk enrollment) takes keys in sorted order.  Stage
capacity keys ``("stage", stage_id)`` are only taken under an entry key.
"""

import logging
import threading
import time
from contextlib import ExitStack, contextmanager

from leadflow.core.exceptions import ConcurrencyTimeout

logger = logging.getLogger(__name__)


class _KeyLock:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.RLock()
        self.refs = 0


class EntryLockRegistry:
    """In-process lock table keyed by ``(lead_id, pipeline_id)`` and stage capacity keys."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple, _KeyLock] = {}

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.refs += 1
            return entry

    def _checkin(self, key, entry):
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def _held(self, key, timeout: float | None, on_timeout):
        entry = self._checkout(key)
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
            if not acquired:
                logger.warning("Lock timeout: key=%s after %.2fs", key, timeout)
                raise on_timeout()
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def hold(self, lead_id: int, pipeline_id: int, timeout: float | None = None):
        """Hold the lock for one key.

        Raises:
            ConcurrencyTimeout: the lock was not acquired within ``timeout`` seconds.
        """
        return self._held(
            (lead_id, pipeline_id), timeout, lambda: ConcurrencyTimeout(lead_id, pipeline_id, timeout),
        )

    def hold_stage(self, stage_id: int, timeout: float | None = None, *, lead_id=None, pipeline_id=None):
        """Hold the capacity lock of one stage.

        Always taken while already holding an entry key, never the other way
        round.  ``lead_id``/``pipeline_id`` only label the timeout error.
        """
        return self._held(
            ("stage", stage_id), timeout,
            lambda: ConcurrencyTimeout(lead_id, pipeline_id, timeout, stage_id=stage_id),
        )

    @contextmanager
    def hold_many(self, keys, timeout: float | None = None):
        """Hold several keys at once; ``timeout`` is one deadline shared by all of them."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with ExitStack() as stack:
            for lead_id, pipeline_id in sorted(set(keys)):
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
                try:
                    stack.enter_context(self.hold(lead_id, pipeline_id, remaining))
                except ConcurrencyTimeout:
                    raise ConcurrencyTimeout(lead_id, pipeline_id, timeout) from None
            yield

    def active_keys(self) -> list[tuple]:
        with self._guard:
            return list(self._locks)


entry_locks = EntryLockRegistry()
