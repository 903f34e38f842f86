"""Dispatcher: the per-key scheduling state machine for tapfarm.

The dispatcher owns the three pieces of shared mutable state (cooldown
registry, resource limiter, work queue) and is the only code that mutates
them.  Each key cycles through::

    IDLE -> QUEUED -> RUNNING -> IDLE -> QUEUED -> ...

forever.  One cycle:

1. When a key's item reaches the head of the ready FIFO, an ineligible key
   (still cooling down) is skipped without touching the limiter and re-armed
   for when its cooldown ends.
2. An eligible key waits at the head until the limiter yields a slot.
3. The executor runs in its own ``asyncio.Task``.
4. Whatever happens (outcome, exception, timeout) the slot is released in a
   ``finally`` block, which immediately drains the queue head again.
5. Success records the cooldown and re-enqueues after
   ``max(minimum_delay, remaining cooldown) + jitter``.
6. Failure re-enqueues after the fixed retry delay; the cooldown entry is
   left alone or pushed to the retry window depending on policy.

Classes:
    DispatchPolicy: Timing and failure policy knobs.
    Dispatcher: The control loop.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from core.config import FailureCooldownPolicy, FarmSettings
from core.cooldown import CooldownRegistry
from core.limiter import ResourceLimiter
from core.models import AttemptKind, KeyPhase, KeyState, Outcome, QueueItem, Slot
from core.utils import redact_key
from core.work_queue import QueueClosedError, WorkQueue
from executors.base import ExecutionFailure, JobExecutor

logger = logging.getLogger(__name__)

# Longest the loop sleeps when nothing is scheduled
MAX_IDLE_SLEEP_SECONDS = 60.0
MIN_LOOP_SLEEP_SECONDS = 0.01

OutcomeListener = Callable[[QueueItem, Outcome], None]


@dataclass
class DispatchPolicy:
    """Timing and failure policy for the dispatcher (all durations in seconds).

    Attributes:
        cooldown: Nominal per-key cooldown after a success.
        minimum_delay: Floor for the post-success delay.
        jitter_max: Upper bound of the uniform random jitter added after a success.
        retry_delay: Delay before retrying a failed attempt.
        failure_cooldown: What a failure does to the cooldown entry.
        job_timeout: Deadline handed to the executor.
        timeout_grace: Extra time before the dispatcher abandons the executor call.
    """

    cooldown: float = 14 * 60
    minimum_delay: float = 10.0
    jitter_max: float = 60.0
    retry_delay: float = 5 * 60
    failure_cooldown: FailureCooldownPolicy = FailureCooldownPolicy.PRESERVE
    job_timeout: float = 180.0
    timeout_grace: float = 30.0

    @classmethod
    def from_settings(cls, settings: FarmSettings) -> "DispatchPolicy":
        return cls(
            cooldown=settings.cooldown_seconds,
            minimum_delay=settings.minimum_delay_seconds,
            jitter_max=settings.jitter_max_seconds,
            retry_delay=settings.retry_delay_seconds,
            failure_cooldown=settings.failure_cooldown,
            job_timeout=settings.job_timeout_seconds,
            timeout_grace=settings.timeout_grace_seconds,
        )


class Dispatcher:
    """
    Control loop that moves keys from the work queue into the executor.

    Shares nothing with other components except through its own registry,
    limiter and queue.  The clock and random source are injectable so the
    state machine can be driven deterministically.
    """

    def __init__(
        self,
        executor: JobExecutor,
        contexts: Sequence[str],
        policy: Optional[DispatchPolicy] = None,
        capacity: Optional[int] = None,
        limiter: Optional[ResourceLimiter] = None,
        registry: Optional[CooldownRegistry] = None,
        queue: Optional[WorkQueue] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            executor: Performs one attempt per call.
            contexts: Execution contexts; key *i* uses ``contexts[i % len]``.
            policy: Timing / failure policy (defaults to :class:`DispatchPolicy`).
            capacity: Limiter capacity when *limiter* is not given
                (``None`` = unbounded).
            limiter: Pre-built limiter (overrides *capacity*).
            registry: Pre-built cooldown registry.
            queue: Pre-built work queue.
            clock: Time source returning Unix seconds.
            rng: Random source for jitter.
        """
        if not contexts:
            raise ValueError("at least one execution context is required")
        self.executor = executor
        self.contexts: List[str] = list(contexts)
        self.policy = policy or DispatchPolicy()
        self.clock = clock
        self.rng = rng or random.Random()
        self.registry = registry or CooldownRegistry()
        self.limiter = limiter or ResourceLimiter(capacity, clock=clock)
        self.queue = queue or WorkQueue()

        self.key_states: Dict[str, KeyState] = {}
        self.running: Dict[str, asyncio.Task] = {}  # Key: key string
        self.total_completed = 0
        self._outcome_listeners: List[OutcomeListener] = []

        self._stop_event = asyncio.Event()
        self._wake = asyncio.Event()

        self.limiter.add_release_listener(self._on_capacity_freed)
        self.queue.add_enqueue_listener(lambda _item: self._wake.set())

    # ------------------------------------------------------------------
    # Registration / scheduling
    # ------------------------------------------------------------------
    def register_key(self, key: str, index: int) -> KeyState:
        """Create (or return) the bookkeeping entry for *key*."""
        state = self.key_states.get(key)
        if state is None:
            state = KeyState(key=key, index=index)
            self.key_states[key] = state
        return state

    def context_for(self, index: int) -> str:
        """Execution context assigned to the key at *index*."""
        return self.contexts[index % len(self.contexts)]

    def add_outcome_listener(self, callback: OutcomeListener) -> None:
        """Call *callback(item, outcome)* after every attempt or skip."""
        self._outcome_listeners.append(callback)

    def schedule(self, key: str, index: int, ready_at: float, kind: AttemptKind) -> QueueItem:
        """Enqueue an attempt for *key* at *ready_at*.

        Raises:
            DuplicateKeyError: The key already has a queued or running item.
            QueueClosedError: The queue has been closed.
        """
        state = self.register_key(key, index)
        item = QueueItem(ready_at=ready_at, key=key, index=index, kind=kind, enqueued_at=self.clock())
        self.queue.enqueue(item)
        state.phase = KeyPhase.QUEUED
        state.next_run_at = ready_at
        return item

    # ------------------------------------------------------------------
    # Drain step
    # ------------------------------------------------------------------
    def pump(self) -> int:
        """Dispatch every item that can run right now.

        Promotes due items, skips heads that are still cooling down and
        launches eligible heads while the limiter has capacity.

        Returns:
            Number of attempts launched.
        """
        now = self.clock()
        self.queue.promote_due(now)
        launched = 0
        while True:
            head = self.queue.peek()
            if head is None:
                break
            if not self.registry.is_eligible(head.key, now):
                self.queue.pop()
                self._skip(head, now)
                continue
            dequeued = self.queue.dequeue_if_capacity(self.limiter)
            if dequeued is None:
                break  # Global limit reached; head waits for a release
            item, slot = dequeued
            self._launch(item, slot)
            launched += 1
        return launched

    def _on_capacity_freed(self) -> None:
        self._wake.set()
        if not self._stop_event.is_set():
            self.pump()

    def _skip(self, item: QueueItem, now: float) -> None:
        state = self.key_states[item.key]
        remaining = self.registry.remaining(item.key, now)
        state.skips += 1
        logger.info(
            f"{item.label} Key still on cooldown for {max(1, round(remaining / 60))} more minutes. Skipping."
        )
        self.queue.complete(item.key)
        self._reschedule(item, now + remaining, AttemptKind.SCHEDULED)
        self._notify(item, Outcome.cooldown_skip(item.key))

    def _launch(self, item: QueueItem, slot: Slot) -> None:
        state = self.key_states[item.key]
        state.phase = KeyPhase.RUNNING
        state.attempts += 1
        state.next_run_at = None
        task = asyncio.create_task(self._run_attempt(item, slot))
        self.running[item.key] = task

    # ------------------------------------------------------------------
    # Attempt execution
    # ------------------------------------------------------------------
    async def _run_attempt(self, item: QueueItem, slot: Slot) -> None:
        """Run one attempt, always releasing *slot*, then record the outcome."""
        try:
            outcome = await self._invoke(item)
        except asyncio.CancelledError:
            self.queue.complete(item.key)
            self.key_states[item.key].phase = KeyPhase.IDLE
            logger.warning(f"{item.label} Attempt cancelled for {redact_key(item.key)}")
            raise
        finally:
            self.running.pop(item.key, None)
            self.limiter.release(slot)
        self._handle_outcome(item, outcome)

    async def _invoke(self, item: QueueItem) -> Outcome:
        """Call the executor and funnel every way it can end into an Outcome."""
        key = item.key
        context = self.context_for(item.index)
        started = self.clock()
        deadline = started + self.policy.job_timeout
        hard_limit = self.policy.job_timeout + self.policy.timeout_grace

        logger.info(f"{item.label} 🚀 Starting {item.kind.value} attempt for {redact_key(key)}")
        try:
            result = await asyncio.wait_for(
                self.executor.execute(key, context, deadline), timeout=hard_limit
            )
            if isinstance(result, Outcome):
                outcome = result
            else:
                outcome = Outcome.failed(key, f"Executor returned {type(result).__name__}, not Outcome")
        except ExecutionFailure as e:
            outcome = Outcome.failed(key, e.reason, metric=e.metric)
        except asyncio.TimeoutError:
            outcome = Outcome.failed(key, f"Executor exceeded {hard_limit:.0f}s")
        except Exception as e:
            logger.error(f"{item.label} Unexpected executor error: {e}", exc_info=True)
            outcome = Outcome.failed(key, f"Unexpected error: {e}")
        outcome.key = key
        outcome.duration = self.clock() - started
        return outcome

    def _handle_outcome(self, item: QueueItem, outcome: Outcome) -> None:
        """Update cooldown / counters and arm the key's next attempt."""
        now = self.clock()
        key = item.key
        state = self.key_states[key]
        state.last_finished_at = now
        state.last_metric = outcome.metric
        self.total_completed += 1

        if outcome.success:
            state.successes += 1
            state.last_reason = None
            eligible_at = self.registry.record_attempt(key, now, self.policy.cooldown)
            delay = max(self.policy.minimum_delay, eligible_at - now)
            delay += self.rng.uniform(0, self.policy.jitter_max)
            kind = AttemptKind.SCHEDULED
            logger.info(
                f"✅ {item.label} Completed for {redact_key(key)} in {outcome.duration:.1f}s "
                f"(metric: {outcome.metric}). Next run in {delay / 60:.1f} minutes"
            )
        else:
            state.failures += 1
            state.last_reason = outcome.failure_reason
            if self.policy.failure_cooldown == FailureCooldownPolicy.RETRY_WINDOW:
                self.registry.record_attempt(key, now, self.policy.retry_delay)
            delay = self.policy.retry_delay
            kind = AttemptKind.RETRY
            logger.error(
                f"❌ {item.label} Failed for {redact_key(key)}: {outcome.failure_reason}. "
                f"Retrying in {delay / 60:.1f} minutes"
            )

        self.queue.complete(key)
        self._reschedule(item, now + delay, kind)
        self._notify(item, outcome)

    def _reschedule(self, item: QueueItem, ready_at: float, kind: AttemptKind) -> None:
        try:
            self.schedule(item.key, item.index, ready_at, kind)
        except QueueClosedError:
            state = self.key_states[item.key]
            state.phase = KeyPhase.IDLE
            state.next_run_at = None
            logger.debug(f"{item.label} Queue closed; not rescheduling")

    def _notify(self, item: QueueItem, outcome: Outcome) -> None:
        for callback in list(self._outcome_listeners):
            try:
                callback(item, outcome)
            except Exception as e:
                logger.warning(f"Outcome listener failed: {e}")

    # ------------------------------------------------------------------
    # Loop / lifecycle
    # ------------------------------------------------------------------
    def _sleep_time(self) -> float:
        next_ready = self.queue.next_ready_at()
        if next_ready is None:
            return MAX_IDLE_SLEEP_SECONDS
        return max(MIN_LOOP_SLEEP_SECONDS, min(next_ready - self.clock(), MAX_IDLE_SLEEP_SECONDS))

    async def run(self) -> None:
        """Main dispatch loop.

        Runs until :meth:`stop` is called.  Each iteration drains what can
        run now, then sleeps until the next delayed item is due or an
        enqueue / slot release wakes it early.
        """
        logger.info("Dispatcher loop started.")
        while not self._stop_event.is_set():
            self._wake.clear()
            self.pump()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._sleep_time())
            except asyncio.TimeoutError:
                pass  # Sleep completed
        logger.info("Dispatcher loop stopped.")

    def stop(self) -> None:
        """Signal the loop to exit.  Running attempts are not interrupted."""
        self._stop_event.set()
        self._wake.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no attempt is running.

        Attempts launched while waiting (a release drains the queue) are
        waited for too.

        Returns:
            ``True`` if idle, ``False`` if *timeout* expired first.
        """
        loop = asyncio.get_running_loop()
        end = None if timeout is None else loop.time() + timeout
        while self.running:
            remaining = None if end is None else end - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(list(self.running.values()), timeout=remaining)
        return True
