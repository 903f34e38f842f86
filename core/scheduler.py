"""Process-wide orchestrator for tapfarm.

:class:`FarmScheduler` seeds the dispatcher with one staggered initial
attempt per key and owns the lifetime of the pipeline:

* Stagger seeding: key *i* first becomes ready at ``start + i * stagger``.
* Runs the :class:`core.dispatcher.Dispatcher` loop until :meth:`stop`.
* Periodic status snapshots to the configured sinks.
* Heartbeat file for external liveness checks.
* Cooldown persistence (``config/cooldowns.json``) so a restart does not
  re-run keys that are still cooling down.  Keys are stored as SHA-256
  digests, never in clear text.
"""

import asyncio
import logging
import os
import time
from typing import Dict, List, Optional, Sequence

from core.config import ConfigurationError, FarmSettings
from core.dispatcher import DispatchPolicy, Dispatcher
from core.models import AttemptKind, QueueItem
from core.monitoring import KeyStatus, StatusSink, StatusSnapshot, emit_all, process_rss_mb
from core.utils import key_digest, redact_key, safe_json_read, safe_json_write
from executors.base import JobExecutor

logger = logging.getLogger(__name__)


class FarmScheduler:
    """
    Bootstrap and lifecycle owner for the whole pipeline.

    The scheduler never makes per-attempt decisions; those belong to the
    dispatcher.  It decides when each key *starts* and how the process
    reports, persists and stops.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        sinks: Optional[List[StatusSink]] = None,
        status_interval: float = 60.0,
        cooldown_state_file: Optional[str] = None,
        heartbeat_file: Optional[str] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            dispatcher: The dispatcher to seed and run.
            sinks: Status sinks receiving periodic snapshots.
            status_interval: Seconds between snapshots.
            cooldown_state_file: Where to persist cooldowns (``None`` disables).
            heartbeat_file: Where to write the heartbeat (``None`` disables).
        """
        self.dispatcher = dispatcher
        self.sinks: List[StatusSink] = list(sinks or [])
        self.status_interval = status_interval
        self.cooldown_state_file = cooldown_state_file
        self.heartbeat_file = heartbeat_file
        self.keys: List[str] = []
        self.started_at: Optional[float] = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: FarmSettings,
        executor: JobExecutor,
        contexts: Sequence[str],
        sinks: Optional[List[StatusSink]] = None,
    ) -> "FarmScheduler":
        """Wire a dispatcher and scheduler from :class:`FarmSettings`."""
        dispatcher = Dispatcher(
            executor,
            contexts,
            policy=DispatchPolicy.from_settings(settings),
            capacity=settings.max_concurrent_browsers,
        )
        return cls(
            dispatcher,
            sinks=sinks,
            status_interval=settings.status_interval_seconds,
            cooldown_state_file=settings.cooldown_state_file if settings.persist_cooldowns else None,
            heartbeat_file=settings.heartbeat_file,
        )

    @property
    def clock(self):
        return self.dispatcher.clock

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------
    def start(self, keys: Sequence[str], stagger: float) -> List[QueueItem]:
        """Create one initial attempt per key, offset by *stagger* seconds.

        Args:
            keys: Unique keys, in the order they were loaded.
            stagger: Seconds between consecutive keys' first runs.

        Returns:
            The seeded queue items, in key order.

        Raises:
            ConfigurationError: *keys* is empty or has duplicates.
        """
        if not keys:
            raise ConfigurationError("No keys to schedule")
        if len(set(keys)) != len(keys):
            raise ConfigurationError("Duplicate keys supplied")
        if stagger < 0:
            raise ConfigurationError("Stagger interval must be non-negative")

        self.keys = list(keys)
        self.restore_cooldowns()

        now = self.clock()
        self.started_at = now
        capacity = self.dispatcher.limiter.capacity
        logger.info(
            f"Starting processes for {len(self.keys)} keys with max "
            f"{'unbounded' if capacity is None else capacity} concurrent browsers"
        )
        items = []
        for index, key in enumerate(self.keys):
            start_delay = index * stagger
            item = self.dispatcher.schedule(key, index, now + start_delay, AttemptKind.INITIAL)
            items.append(item)
            logger.info(f"{item.label} Scheduled to start in {start_delay:g} seconds")
        return items

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def snapshot(self) -> StatusSnapshot:
        """Build a :class:`StatusSnapshot` of the current state."""
        dispatcher = self.dispatcher
        key_lines = []
        for key in self.keys:
            state = dispatcher.key_states.get(key)
            if state is None:
                continue
            key_lines.append(KeyStatus(
                label=f"[{state.index + 1}] {redact_key(key)}",
                phase=state.phase.value,
                eligible_at=dispatcher.registry.eligible_at(key),
                next_run_at=state.next_run_at,
                successes=state.successes,
                failures=state.failures,
                skips=state.skips,
                last_reason=state.last_reason,
            ))
        return StatusSnapshot(
            timestamp=self.clock(),
            outstanding_slots=dispatcher.limiter.outstanding,
            capacity=dispatcher.limiter.capacity,
            queue_depth=dispatcher.queue.depth,
            ready=dispatcher.queue.ready_count,
            completed=dispatcher.total_completed,
            rss_mb=process_rss_mb(),
            keys=key_lines,
        )

    def report_status(self) -> StatusSnapshot:
        """Emit a snapshot, write the heartbeat and persist cooldowns."""
        snapshot = self.snapshot()
        emit_all(self.sinks, snapshot)
        self._write_heartbeat(snapshot)
        self.persist_cooldowns()
        return snapshot

    def _write_heartbeat(self, snapshot: StatusSnapshot) -> None:
        """Write heartbeat file for external monitoring."""
        if not self.heartbeat_file:
            return
        try:
            dirpath = os.path.dirname(self.heartbeat_file)
            if dirpath:
                os.makedirs(dirpath, exist_ok=True)
            with open(self.heartbeat_file, "w", encoding="utf-8") as f:
                f.write(f"{time.time()}\n")
                f.write(f"{snapshot.queue_depth} queued\n")
                f.write(f"{snapshot.outstanding_slots} running\n")
        except OSError as e:
            logger.debug(f"Heartbeat write failed: {e}")

    # ------------------------------------------------------------------
    # Cooldown persistence
    # ------------------------------------------------------------------
    def persist_cooldowns(self) -> bool:
        """Save the cooldown table (keys as digests).  Returns success."""
        if not self.cooldown_state_file:
            return False
        table = self.dispatcher.registry.snapshot()
        data = {
            "eligible_at": {key_digest(k): v for k, v in table.items()},
            "timestamp": self.clock(),
        }
        return safe_json_write(self.cooldown_state_file, data)

    def restore_cooldowns(self) -> int:
        """Load persisted cooldowns for the currently loaded keys.

        Returns:
            Number of keys whose cooldown was restored.
        """
        if not self.cooldown_state_file or not os.path.exists(self.cooldown_state_file):
            return 0
        data = safe_json_read(self.cooldown_state_file)
        if not data:
            logger.warning("Cooldown state unreadable; starting fresh")
            return 0
        stored: Dict[str, float] = data.get("eligible_at", {}) or {}
        entries = {key: stored[key_digest(key)] for key in self.keys if key_digest(key) in stored}
        restored = self.dispatcher.registry.load(entries)
        if restored:
            logger.info(f"Restored cooldowns for {restored} keys")
        return restored

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _status_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.status_interval)
                break
            except asyncio.TimeoutError:
                pass
            self.report_status()

    async def run_forever(self) -> None:
        """Run dispatch and status reporting until :meth:`stop`.

        A first snapshot is emitted straight away so the health endpoint
        reports real state before the first status interval elapses.
        """
        self.report_status()
        dispatcher_task = asyncio.create_task(self.dispatcher.run())
        status_task = asyncio.create_task(self._status_loop())
        try:
            await self._stop_event.wait()
        finally:
            self.dispatcher.stop()
            for task in (dispatcher_task, status_task):
                try:
                    await asyncio.wait_for(task, timeout=5)
                except asyncio.TimeoutError:
                    task.cancel()

    def stop(self) -> None:
        """Stop accepting new items and signal the loops to exit.

        Attempts already running are left to finish on their own.
        """
        if self._stop_event.is_set():
            return
        logger.info("🛑 Stopping scheduler...")
        self.dispatcher.queue.close()
        self.dispatcher.stop()
        self.persist_cooldowns()
        self._stop_event.set()

    async def shutdown(self, grace: float = 30.0) -> bool:
        """Stop, then wait up to *grace* seconds for running attempts.

        Returns:
            ``True`` if every attempt finished within the grace period.
        """
        self.stop()
        idle = await self.dispatcher.wait_idle(timeout=grace)
        if not idle:
            logger.warning(f"{len(self.dispatcher.running)} attempts still running after {grace:.0f}s")
        self.persist_cooldowns()
        try:
            await self.dispatcher.executor.close()
        except Exception as e:
            logger.warning(f"Executor cleanup error: {e}")
        return idle
