"""Operational status reporting for tapfarm.

Every status interval the scheduler builds a :class:`StatusSnapshot`
(outstanding slots, queue depth, per-key next run) and hands it to each
configured sink:

* :class:`LoggingStatusSink` -- one summary log line plus process memory.
* :class:`RichStatusSink` -- a Rich table with one row per key.

None of this affects scheduling; sink errors are logged and ignored.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil
from rich import box
from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)

HIGH_MEMORY_WARNING_MB = 500


@dataclass
class KeyStatus:
    """Per-key line of a :class:`StatusSnapshot` (key already redacted)."""

    label: str
    phase: str
    eligible_at: Optional[float]
    next_run_at: Optional[float]
    successes: int = 0
    failures: int = 0
    skips: int = 0
    last_reason: Optional[str] = None


@dataclass
class StatusSnapshot:
    """Point-in-time view of the scheduler.

    Attributes:
        timestamp: When the snapshot was taken.
        outstanding_slots: Executions currently holding a slot.
        capacity: Limiter capacity (``None`` = unbounded).
        queue_depth: Items waiting (ready + delayed).
        ready: Items waiting only for a slot.
        completed: Attempts finished since start.
        rss_mb: Resident memory of this process in MiB.
        keys: Per-key status lines.
    """

    timestamp: float
    outstanding_slots: int
    capacity: Optional[int]
    queue_depth: int
    ready: int
    completed: int
    rss_mb: float = 0.0
    keys: List[KeyStatus] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def healthy(self) -> bool:
        """At least one key is queued or running (the pipeline is alive)."""
        return self.queue_depth > 0 or self.outstanding_slots > 0


def process_rss_mb() -> float:
    """Resident set size of the current process in MiB."""
    try:
        return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
    except psutil.Error as e:
        logger.debug("Memory check failed: %s", e)
        return 0.0


def _fmt_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%H:%M:%S")


class StatusSink:
    """Receives snapshots.  Subclasses override :meth:`emit`."""

    def emit(self, snapshot: StatusSnapshot) -> None:
        raise NotImplementedError


class LoggingStatusSink(StatusSink):
    """Writes a one-line summary (and a memory warning when high)."""

    def __init__(self, high_memory_mb: float = HIGH_MEMORY_WARNING_MB) -> None:
        self.high_memory_mb = high_memory_mb

    def emit(self, snapshot: StatusSnapshot) -> None:
        capacity = "∞" if snapshot.capacity is None else snapshot.capacity
        logger.info(
            "📊 Status: %s/%s browsers active | queue %d (%d ready) | %d attempts done | RSS %.0f MB",
            snapshot.outstanding_slots, capacity, snapshot.queue_depth,
            snapshot.ready, snapshot.completed, snapshot.rss_mb,
        )
        if snapshot.rss_mb > self.high_memory_mb:
            logger.warning("High memory usage detected: %.0f MB", snapshot.rss_mb)


class RichStatusSink(StatusSink):
    """Renders a per-key table to the terminal."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def build_table(self, snapshot: StatusSnapshot) -> Table:
        capacity = "∞" if snapshot.capacity is None else str(snapshot.capacity)
        table = Table(
            title=(
                f"tapfarm @ {_fmt_time(snapshot.timestamp)} -- "
                f"{snapshot.outstanding_slots}/{capacity} active, queue {snapshot.queue_depth}"
            ),
            box=box.SIMPLE_HEAVY,
        )
        table.add_column("Key", style="cyan")
        table.add_column("State")
        table.add_column("Eligible at")
        table.add_column("Next run")
        table.add_column("OK", justify="right", style="green")
        table.add_column("Fail", justify="right", style="red")
        table.add_column("Skip", justify="right")
        table.add_column("Last error", overflow="fold")

        for status in snapshot.keys:
            table.add_row(
                status.label,
                status.phase,
                _fmt_time(status.eligible_at),
                _fmt_time(status.next_run_at),
                str(status.successes),
                str(status.failures),
                str(status.skips),
                status.last_reason or "",
            )
        return table

    def emit(self, snapshot: StatusSnapshot) -> None:
        self.console.print(self.build_table(snapshot))


def emit_all(sinks: List[StatusSink], snapshot: StatusSnapshot) -> None:
    """Send *snapshot* to every sink, isolating sink failures."""
    for sink in sinks:
        try:
            sink.emit(snapshot)
        except Exception as e:
            logger.warning(f"Status sink {type(sink).__name__} failed: {e}")
