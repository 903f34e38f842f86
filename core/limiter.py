"""Concurrency cap for heavyweight job executions.

Each job launches a full browser, so the number of simultaneously running
executions is bounded by :class:`ResourceLimiter`.  ``capacity=None`` lifts
the bound entirely (one independent pipeline per key).

All methods are synchronous and run on the event-loop thread, so
``try_acquire`` and ``release`` can never interleave.
"""

import itertools
import logging
import time
from typing import Callable, List, Optional, Set

from core.models import Slot

logger = logging.getLogger(__name__)


class ResourceLimiter:
    """Counts outstanding execution slots against a fixed capacity.

    Args:
        capacity: Maximum outstanding slots, or ``None`` for unbounded.
        clock: Time source used to stamp slots.

    Raises:
        ValueError: *capacity* is not a positive integer.
    """

    def __init__(self, capacity: Optional[int], clock: Callable[[], float] = time.time) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError(f"capacity must be a positive integer or None, got {capacity!r}")
        self._capacity = capacity
        self._clock = clock
        self._outstanding: Set[int] = set()
        self._ids = itertools.count(1)
        self._release_listeners: List[Callable[[], None]] = []
        self.peak_outstanding = 0

    @property
    def capacity(self) -> Optional[int]:
        return self._capacity

    @property
    def is_unbounded(self) -> bool:
        return self._capacity is None

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    @property
    def available(self) -> Optional[int]:
        """Free slots, or ``None`` when unbounded."""
        if self._capacity is None:
            return None
        return self._capacity - len(self._outstanding)

    def add_release_listener(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run after every release."""
        self._release_listeners.append(callback)

    def try_acquire(self) -> Optional[Slot]:
        """Take a slot without waiting.

        Returns:
            A :class:`Slot`, or ``None`` when every slot is in use.
        """
        if self._capacity is not None and len(self._outstanding) >= self._capacity:
            return None
        slot = Slot(slot_id=next(self._ids), acquired_at=self._clock())
        self._outstanding.add(slot.slot_id)
        self.peak_outstanding = max(self.peak_outstanding, len(self._outstanding))
        return slot

    def release(self, slot: Slot) -> None:
        """Return *slot* and wake anything waiting for capacity.

        Raises:
            RuntimeError: *slot* is not outstanding (double release).
        """
        if slot.slot_id not in self._outstanding:
            raise RuntimeError(f"Slot {slot.slot_id} released twice or never acquired")
        self._outstanding.discard(slot.slot_id)
        for callback in list(self._release_listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Release listener failed: {e}", exc_info=True)
