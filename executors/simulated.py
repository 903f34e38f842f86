"""Dry-run executor that stands in for a browser session.

Sleeps for a configurable duration and fails with a configurable
probability.  Used by ``main.py --dry-run`` to exercise scheduling without
launching browsers.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Optional

from core.config import FarmSettings
from core.models import Outcome
from executors.base import ExecutionFailure, JobExecutor

logger = logging.getLogger(__name__)


class SimulatedExecutor(JobExecutor):
    """Pretend job: wait, then succeed or fail at random."""

    name = "simulated"

    def __init__(
        self,
        duration: float = 2.0,
        failure_rate: float = 0.0,
        metric: float = 1050,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.duration = duration
        self.failure_rate = failure_rate
        self.metric = metric
        self.rng = rng or random.Random()
        self.clock = clock
        self.calls = 0

    @classmethod
    def from_settings(cls, settings: FarmSettings) -> "SimulatedExecutor":
        return cls(
            duration=settings.simulated_duration_seconds,
            failure_rate=settings.simulated_failure_rate,
            metric=settings.action_repeat,
        )

    async def execute(self, key: str, context: str, deadline: float) -> Outcome:
        self.calls += 1
        budget = deadline - self.clock()
        if budget <= 0:
            raise ExecutionFailure("Deadline already passed")
        await asyncio.sleep(min(self.duration, budget))
        if self.duration > budget:
            raise ExecutionFailure(f"Timed out after {budget:.1f}s")
        if self.rng.random() < self.failure_rate:
            return Outcome.failed(key, "Simulated failure")
        return Outcome.succeeded(key, metric=self.metric)
