"""Shared fixtures: a virtual clock and controllable executors."""

import asyncio
from typing import List, Optional

import pytest

from core.models import Outcome
from executors.base import JobExecutor


class FakeClock:
    """Manually advanced time source (Unix seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class GatedExecutor(JobExecutor):
    """Executor whose attempts block until the test opens their gate.

    Tracks how many attempts overlap so tests can assert the capacity bound.
    """

    name = "gated"

    def __init__(self, outcome: Optional[Outcome] = None):
        self.outcome = outcome
        self.gates: List[asyncio.Event] = []
        self.calls: List[tuple] = []
        self.active = 0
        self.peak = 0
        self.completed = 0

    async def execute(self, key: str, context: str, deadline: float) -> Outcome:
        self.calls.append((key, context, deadline))
        gate = asyncio.Event()
        self.gates.append(gate)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await gate.wait()
        finally:
            self.active -= 1
        self.completed += 1
        if self.outcome is not None:
            return self.outcome
        return Outcome.succeeded(key, metric=1050)

    def release_one(self) -> bool:
        for gate in self.gates:
            if not gate.is_set():
                gate.set()
                return True
        return False

    def release_all(self) -> None:
        for gate in self.gates:
            gate.set()


async def settle(rounds: int = 20) -> None:
    """Let pending tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gated_executor():
    return GatedExecutor()
