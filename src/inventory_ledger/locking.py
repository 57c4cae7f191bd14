"""Per-product mutual exclusion for stock read-modify-write sequences.

The workbook has no row locks, so the engine serialises work on a product by
holding that product's lock for the whole create/amend/void sequence. Locks
are created lazily and never removed; the registry holds one lock per product
ever touched by the process.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from . import log


class ProductLocks:
    """Registry of one :class:`threading.Lock` per product id.

    Args:
        timeout (float | None): Seconds to wait for the whole set of locks
            requested in one :meth:`acquire` call. ``None`` waits forever.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_guard = threading.Lock()

    def _lock_for(self, product_id: str) -> threading.Lock:
        with self._registry_guard:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[product_id] = lock
            return lock

    def is_locked(self, product_id: str) -> bool:
        lock = self._locks.get(product_id)
        return lock is not None and lock.locked()

    def acquire(self, *product_ids: str) -> List[threading.Lock]:
        """Acquire the locks of every product in ``product_ids``.

        Ids are deduplicated and acquired in sorted order so two callers that
        need the same pair of products can never deadlock.

        Returns:
            list[threading.Lock]: The acquired locks, to hand back to
                :meth:`release`.

        Raises:
            TimeoutError: If the locks cannot all be acquired within the
                configured timeout. Locks already taken are released first.
        """

        ordered = sorted({pid for pid in product_ids if pid is not None})
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        acquired: List[threading.Lock] = []
        for product_id in ordered:
            lock = self._lock_for(product_id)
            if deadline is None:
                lock.acquire()
            elif not lock.acquire(timeout=max(deadline - time.monotonic(), 0.0)):
                self.release(acquired)
                log.warning(
                    "Timed out after %ss waiting for the lock of product '%s'",
                    self.timeout,
                    product_id,
                )
                raise TimeoutError(f"Timed out waiting for the lock of product '{product_id}'")
            acquired.append(lock)
        log.debug("Holding product locks: %s", ", ".join(ordered))
        return acquired

    @staticmethod
    def release(locks: List[threading.Lock]) -> None:
        for lock in reversed(locks):
            lock.release()

    @contextmanager
    def hold(self, *product_ids: str) -> Iterator[None]:
        """Hold the locks of ``product_ids`` for the duration of the block."""

        acquired = self.acquire(*product_ids)
        try:
            yield
        finally:
            self.release(acquired)
