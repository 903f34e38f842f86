"""Scheduling data model for tapfarm.

Classes:
    AttemptKind: Why a queue item exists (first run, normal cycle, retry).
    QueueItem: A pending attempt for one key, ordered by ``(ready_at, seq)``.
    Slot: Permission token handed out by the resource limiter.
    Outcome: Result of one attempt, produced by an executor or the dispatcher.
    KeyState: Per-key bookkeeping owned by the dispatcher.
"""

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

_sequence = itertools.count()


class AttemptKind(Enum):
    """Reason a :class:`QueueItem` was created."""

    INITIAL = "initial"
    SCHEDULED = "scheduled"
    RETRY = "retry"


class KeyPhase(Enum):
    """Lifecycle position of a key inside the dispatcher."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"


@dataclass(order=True)
class QueueItem:
    """A single pending attempt for one key.

    Items are ordered by ``(ready_at, seq)``: earliest first, and in
    enqueue order when two items become ready at the same instant.

    Attributes:
        ready_at: Unix timestamp at which the item may be dispatched.
        seq: Global insertion counter used as the FIFO tie-breaker.
        key: The key this attempt belongs to.
        index: Position of the key in the loaded key list.
        kind: :class:`AttemptKind` of this attempt.
        enqueued_at: When the item was created.
    """

    ready_at: float
    seq: int = field(init=False)
    key: str = field(compare=False)
    index: int = field(compare=False, default=0)
    kind: AttemptKind = field(compare=False, default=AttemptKind.SCHEDULED)
    enqueued_at: float = field(compare=False, default=0.0)

    def __post_init__(self) -> None:
        self.seq = next(_sequence)

    @property
    def label(self) -> str:
        """Log prefix, 1-based like the operator-facing key list."""
        return f"[{self.index + 1}]"


@dataclass(frozen=True)
class Slot:
    """Permission to run one job; see :class:`core.limiter.ResourceLimiter`."""

    slot_id: int
    acquired_at: float = 0.0


@dataclass
class Outcome:
    """Outcome of a single attempt.

    Attributes:
        key: Key the attempt ran for.
        success: Whether the job reached its goal.
        metric: Numeric result reported by the executor (e.g. registered taps).
        failure_reason: Human-readable failure description.
        skipped: ``True`` for a cooldown-skip (no slot was used).
        duration: Wall-clock seconds spent in the executor.
        details: Extra executor-specific data for logging.
    """

    key: str
    success: bool
    metric: Optional[float] = None
    failure_reason: Optional[str] = None
    skipped: bool = False
    duration: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def succeeded(cls, key: str, metric: Optional[float] = None, **details: Any) -> "Outcome":
        return cls(key=key, success=True, metric=metric, details=details)

    @classmethod
    def failed(cls, key: str, reason: str, metric: Optional[float] = None, **details: Any) -> "Outcome":
        return cls(key=key, success=False, metric=metric, failure_reason=reason or "Unknown error",
                   details=details)

    @classmethod
    def cooldown_skip(cls, key: str) -> "Outcome":
        return cls(key=key, success=False, failure_reason="cooldown", skipped=True)


@dataclass
class KeyState:
    """Dispatcher-owned bookkeeping for one key."""

    key: str
    index: int
    phase: KeyPhase = KeyPhase.IDLE
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    skips: int = 0
    last_reason: Optional[str] = None
    last_metric: Optional[float] = None
    last_finished_at: Optional[float] = None
    next_run_at: Optional[float] = None
