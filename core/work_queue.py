"""Two-stage work queue: a delay heap feeding a FIFO of ready items.

Items wait in a min-heap ordered by ``(ready_at, seq)`` until their time
comes, then move to the ready FIFO where the dispatcher pulls them as
execution slots free up.

The queue also enforces single flight per key: from the moment a key's item
is enqueued until :meth:`WorkQueue.complete` is called for that key, no other
item for the same key is accepted.
"""

import heapq
import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Set, Tuple

from core.limiter import ResourceLimiter
from core.models import QueueItem, Slot

logger = logging.getLogger(__name__)


class DuplicateKeyError(RuntimeError):
    """A key already owns a queued or in-flight item."""


class QueueClosedError(RuntimeError):
    """The queue no longer accepts items (shutdown in progress)."""


class WorkQueue:
    """FIFO of ready items fed by a time-ordered delay heap."""

    def __init__(self) -> None:
        self._delayed: List[QueueItem] = []
        self._ready: Deque[QueueItem] = deque()
        # Keys with an item queued or dispatched and not yet completed
        self._owned: Set[str] = set()
        self._closed = False
        self._enqueue_listeners: List[Callable[[QueueItem], None]] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ready_count(self) -> int:
        return len(self._ready)

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    @property
    def depth(self) -> int:
        """Total items waiting (ready + delayed)."""
        return len(self._ready) + len(self._delayed)

    def owns(self, key: str) -> bool:
        """``True`` while *key* has a queued or in-flight item."""
        return key in self._owned

    def next_ready_at(self) -> Optional[float]:
        """Earliest ``ready_at`` among delayed items, or ``None``."""
        return self._delayed[0].ready_at if self._delayed else None

    def pending_items(self) -> List[QueueItem]:
        """All waiting items in dispatch order (ready first)."""
        return list(self._ready) + sorted(self._delayed)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def add_enqueue_listener(self, callback: Callable[[QueueItem], None]) -> None:
        self._enqueue_listeners.append(callback)

    def enqueue(self, item: QueueItem) -> None:
        """Add *item* to the delay heap.

        Raises:
            QueueClosedError: :meth:`close` was called.
            DuplicateKeyError: The key already owns an item.
        """
        if self._closed:
            raise QueueClosedError(f"Queue closed; rejected item for {item.label}")
        if item.key in self._owned:
            raise DuplicateKeyError(f"Key {item.label} already queued or running")
        self._owned.add(item.key)
        heapq.heappush(self._delayed, item)
        for callback in list(self._enqueue_listeners):
            callback(item)

    def promote_due(self, now: float) -> int:
        """Move every delayed item with ``ready_at <= now`` to the ready FIFO.

        Returns:
            Number of items promoted.
        """
        promoted = 0
        while self._delayed and self._delayed[0].ready_at <= now:
            self._ready.append(heapq.heappop(self._delayed))
            promoted += 1
        return promoted

    def peek(self) -> Optional[QueueItem]:
        """Head of the ready FIFO without removing it."""
        return self._ready[0] if self._ready else None

    def pop(self) -> Optional[QueueItem]:
        """Remove and return the ready head.  The key stays owned."""
        return self._ready.popleft() if self._ready else None

    def dequeue_if_capacity(self, limiter: ResourceLimiter) -> Optional[Tuple[QueueItem, Slot]]:
        """Pop the ready head only if a slot can be taken for it.

        Returns:
            ``(item, slot)``, or ``None`` when the FIFO is empty or the
            limiter is full (in which case the head is left in place).
        """
        if not self._ready:
            return None
        slot = limiter.try_acquire()
        if slot is None:
            return None
        return self._ready.popleft(), slot

    def complete(self, key: str) -> None:
        """Mark *key*'s attempt finished so it can be enqueued again."""
        self._owned.discard(key)

    def close(self) -> None:
        """Stop accepting items.  Already queued items are kept."""
        self._closed = True
