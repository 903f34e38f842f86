"""
Test suite for the dispatcher state machine.
Covers capacity bound, single flight, cooldown skips, failure retries,
slot release on every exit path, jitter and the dispatch loop.
"""

import asyncio
import logging
import random
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import GatedExecutor, settle
from core.config import FailureCooldownPolicy
from core.dispatcher import DispatchPolicy, Dispatcher
from core.models import AttemptKind, KeyPhase, Outcome
from core.work_queue import DuplicateKeyError
from executors.base import ExecutionFailure, JobExecutor

COOLDOWN = 14 * 60
RETRY = 5 * 60


class ButtonMissingExecutor(JobExecutor):
    """Every attempt fails the way a page without the tap target does."""

    def __init__(self):
        self.calls = 0

    async def execute(self, key, context, deadline):
        self.calls += 1
        raise ExecutionFailure("Button not found")


class SyncThrowingExecutor(JobExecutor):
    """Raises before returning an awaitable."""

    def execute(self, key, context, deadline):
        raise RuntimeError("sync boom")


class AsyncThrowingExecutor(JobExecutor):
    async def execute(self, key, context, deadline):
        await asyncio.sleep(0)
        raise RuntimeError("async boom")


class HangingExecutor(JobExecutor):
    async def execute(self, key, context, deadline):
        await asyncio.sleep(3600)


def make_dispatcher(executor, clock, capacity=None, contexts=("ua-0",), **policy):
    rng = MagicMock()
    rng.uniform.return_value = 0.0
    return Dispatcher(
        executor,
        list(contexts),
        policy=DispatchPolicy(**policy),
        capacity=capacity,
        clock=clock,
        rng=rng,
    )


def seed(dispatcher, count, ready_at):
    keys = [f"key-{i:03d}-abcdefgh" for i in range(count)]
    for index, key in enumerate(keys):
        dispatcher.schedule(key, index, ready_at, AttemptKind.INITIAL)
    return keys


class TestCapacityBound:
    """Outstanding executions never exceed the limiter capacity."""

    @pytest.mark.asyncio
    async def test_two_slots_five_keys(self, clock, gated_executor):
        """Capacity 2, five keys ready together: two run at a time, five finish."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=2)
        keys = seed(dispatcher, 5, clock())

        assert dispatcher.pump() == 2
        await settle()
        assert gated_executor.active == 2
        assert dispatcher.queue.ready_count == 3

        for _ in range(10):
            if gated_executor.completed == 5:
                break
            assert gated_executor.release_one()
            await settle()
            assert gated_executor.active <= 2
            assert dispatcher.limiter.outstanding <= 2

        assert gated_executor.completed == 5
        assert dispatcher.total_completed == 5
        assert sorted(call[0] for call in gated_executor.calls) == sorted(keys)
        assert gated_executor.peak == 2
        assert dispatcher.limiter.peak_outstanding == 2
        assert dispatcher.limiter.outstanding == 0

    @pytest.mark.asyncio
    async def test_release_dispatches_next_head_immediately(self, clock, gated_executor):
        """A freed slot goes to the waiting head without another loop iteration."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=1)
        keys = seed(dispatcher, 2, clock())
        dispatcher.pump()
        await settle()
        assert [call[0] for call in gated_executor.calls] == [keys[0]]

        gated_executor.release_one()
        await settle()
        assert [call[0] for call in gated_executor.calls] == keys

    @pytest.mark.asyncio
    async def test_unbounded_runs_everything(self, clock, gated_executor):
        """Without a capacity every ready key starts at once."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=None)
        seed(dispatcher, 25, clock())
        assert dispatcher.pump() == 25
        await settle()
        assert gated_executor.active == 25
        gated_executor.release_all()
        assert await dispatcher.wait_idle(timeout=1)


class TestSingleFlight:
    """A key never has two attempts at once."""

    @pytest.mark.asyncio
    async def test_running_key_cannot_be_enqueued(self, clock, gated_executor):
        """The key stays owned while its attempt runs."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=2)
        (key,) = seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()

        assert dispatcher.key_states[key].phase == KeyPhase.RUNNING
        with pytest.raises(DuplicateKeyError):
            dispatcher.schedule(key, 0, clock(), AttemptKind.SCHEDULED)

        gated_executor.release_all()
        await settle()
        assert dispatcher.key_states[key].phase == KeyPhase.QUEUED
        assert len(gated_executor.calls) == 1


class TestSuccess:
    """Post-success cooldown and re-arming."""

    @pytest.mark.asyncio
    async def test_success_records_cooldown_and_reschedules(self, clock, gated_executor):
        """Next run is ``max(minimum_delay, remaining cooldown) + jitter`` away."""
        dispatcher = make_dispatcher(gated_executor, clock, cooldown=COOLDOWN)
        dispatcher.rng.uniform.return_value = 42.0
        (key,) = seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()
        clock.advance(30)
        gated_executor.release_all()
        await settle()

        now = clock()
        assert dispatcher.registry.eligible_at(key) == now + COOLDOWN
        (item,) = dispatcher.queue.pending_items()
        assert item.kind == AttemptKind.SCHEDULED
        assert item.ready_at == now + COOLDOWN + 42.0
        dispatcher.rng.uniform.assert_called_with(0, 60.0)

        state = dispatcher.key_states[key]
        assert state.successes == 1
        assert state.last_metric == 1050
        assert state.next_run_at == item.ready_at

    @pytest.mark.asyncio
    async def test_minimum_delay_applies_without_cooldown(self, clock, gated_executor):
        """With a zero cooldown the key still waits ``minimum_delay``."""
        dispatcher = make_dispatcher(gated_executor, clock, cooldown=0, minimum_delay=10)
        seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()
        gated_executor.release_all()
        await settle()
        (item,) = dispatcher.queue.pending_items()
        assert item.ready_at == clock() + 10

    @pytest.mark.asyncio
    async def test_jitter_within_bounds(self, clock, gated_executor):
        """Real jitter stays within ``[0, jitter_max]``."""
        dispatcher = Dispatcher(
            gated_executor, ["ua"], policy=DispatchPolicy(cooldown=COOLDOWN, jitter_max=60),
            clock=clock, rng=random.Random(7),
        )
        seed(dispatcher, 20, clock())
        dispatcher.pump()
        await settle()
        gated_executor.release_all()
        await settle()

        for item in dispatcher.queue.pending_items():
            assert clock() + COOLDOWN <= item.ready_at <= clock() + COOLDOWN + 60


class TestFailure:
    """Failed attempts retry after the fixed retry delay."""

    @pytest.mark.asyncio
    async def test_button_not_found_retries_after_delay(self, clock, caplog):
        """A failure leaves the cooldown untouched and re-arms at ``now + retry_delay``."""
        caplog.set_level(logging.INFO)
        executor = ButtonMissingExecutor()
        dispatcher = make_dispatcher(executor, clock, capacity=1, retry_delay=RETRY)
        key = "secret-token-0123456789"
        dispatcher.registry.record_attempt(key, clock() - 2000, COOLDOWN)
        before = dispatcher.registry.eligible_at(key)
        outcomes = []
        dispatcher.add_outcome_listener(lambda item, outcome: outcomes.append(outcome))

        dispatcher.schedule(key, 0, clock(), AttemptKind.INITIAL)
        dispatcher.pump()
        await settle()

        assert executor.calls == 1
        assert outcomes[0].success is False
        assert outcomes[0].failure_reason == "Button not found"
        assert dispatcher.registry.eligible_at(key) == before
        assert dispatcher.limiter.outstanding == 0

        (item,) = dispatcher.queue.pending_items()
        assert item.kind == AttemptKind.RETRY
        assert item.ready_at == clock() + RETRY

        assert "Button not found" in caplog.text
        assert "secret-t..." in caplog.text
        assert key not in caplog.text

        clock.advance(RETRY - 1)
        assert dispatcher.pump() == 0
        clock.advance(1)
        assert dispatcher.pump() == 1
        await settle()
        assert executor.calls == 2

    @pytest.mark.asyncio
    async def test_retry_window_policy_pushes_cooldown(self, clock):
        """Under ``retry_window`` a failure sets ``eligible_at`` to ``now + retry_delay``."""
        dispatcher = make_dispatcher(
            ButtonMissingExecutor(), clock, retry_delay=RETRY,
            failure_cooldown=FailureCooldownPolicy.RETRY_WINDOW,
        )
        (key,) = seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()
        assert dispatcher.registry.eligible_at(key) == clock() + RETRY

    @pytest.mark.asyncio
    async def test_non_outcome_result_is_failure(self, clock):
        """An executor returning something other than an Outcome counts as failed."""
        executor = MagicMock()
        executor.execute = AsyncMock(return_value=None)
        dispatcher = make_dispatcher(executor, clock)
        (key,) = seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()

        state = dispatcher.key_states[key]
        assert state.failures == 1
        assert "not Outcome" in state.last_reason

    @pytest.mark.asyncio
    async def test_executor_reported_failure(self, clock):
        """A returned failure Outcome is treated like a raised one."""
        executor = GatedExecutor(outcome=Outcome.failed("x", "Action failed: only 12 taps", metric=12))
        dispatcher = make_dispatcher(executor, clock, retry_delay=RETRY)
        (key,) = seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()
        executor.release_all()
        await settle()

        state = dispatcher.key_states[key]
        assert state.failures == 1
        assert state.last_metric == 12
        assert dispatcher.registry.eligible_at(key) is None


class TestSlotRelease:
    """Slots come back on every exit path."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("executor_cls", [SyncThrowingExecutor, AsyncThrowingExecutor, HangingExecutor])
    async def test_hundred_bad_attempts_leave_no_slot(self, clock, executor_cls):
        """After 100 throwing or timing-out attempts the limiter is back to zero."""
        dispatcher = make_dispatcher(
            executor_cls(), clock, capacity=3, job_timeout=0.001, timeout_grace=0.001,
        )
        outcomes = []
        dispatcher.add_outcome_listener(lambda item, outcome: outcomes.append(outcome))
        seed(dispatcher, 100, clock())

        dispatcher.pump()
        assert await dispatcher.wait_idle(timeout=10)

        assert dispatcher.total_completed == 100
        assert dispatcher.limiter.outstanding == 0
        assert dispatcher.limiter.peak_outstanding <= 3
        assert all(not outcome.success for outcome in outcomes)
        assert dispatcher.queue.delayed_count == 100

    @pytest.mark.asyncio
    async def test_cancelled_attempt_releases_slot(self, clock, gated_executor):
        """Cancellation propagates but the slot and key ownership are returned."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=1)
        (key,) = seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()

        task = dispatcher.running[key]
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert dispatcher.limiter.outstanding == 0
        assert not dispatcher.queue.owns(key)
        assert dispatcher.key_states[key].phase == KeyPhase.IDLE


class TestCooldownSkip:
    """Ineligible heads are skipped without taking a slot."""

    @pytest.mark.asyncio
    async def test_skip_does_not_touch_limiter(self, clock, gated_executor):
        """A cooling key is re-armed for its eligible time; outstanding is unchanged."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=1)
        busy, cooling = seed(dispatcher, 2, clock())
        eligible_at = dispatcher.registry.record_attempt(cooling, clock(), COOLDOWN)
        outcomes = []
        dispatcher.add_outcome_listener(lambda item, outcome: outcomes.append(outcome))

        dispatcher.pump()
        await settle()

        assert dispatcher.limiter.outstanding == 1
        assert [call[0] for call in gated_executor.calls] == [busy]
        assert outcomes and outcomes[0].skipped and outcomes[0].failure_reason == "cooldown"
        (item,) = dispatcher.queue.pending_items()
        assert item.key == cooling
        assert item.ready_at == eligible_at
        assert dispatcher.key_states[cooling].skips == 1

    @pytest.mark.asyncio
    async def test_skip_at_five_minutes_run_at_fifteen(self, clock, gated_executor):
        """14 minute cooldown: a run at +5 min is skipped, the one at +15 min goes ahead."""
        dispatcher = make_dispatcher(gated_executor, clock, capacity=1, cooldown=COOLDOWN)
        key = "key-cooldown-scenario"
        t0 = clock()
        dispatcher.registry.record_attempt(key, t0, COOLDOWN)
        dispatcher.schedule(key, 0, t0 + 5 * 60, AttemptKind.SCHEDULED)

        clock.advance(5 * 60)
        assert dispatcher.pump() == 0
        assert dispatcher.limiter.outstanding == 0
        assert dispatcher.key_states[key].skips == 1

        clock.advance(10 * 60)
        assert dispatcher.pump() == 1
        await settle()
        assert len(gated_executor.calls) == 1


class TestContexts:
    """Context assignment is by key index, round-robin."""

    @pytest.mark.asyncio
    async def test_contexts_cycle(self, clock, gated_executor):
        """Key *i* gets ``contexts[i % len(contexts)]``."""
        dispatcher = make_dispatcher(gated_executor, clock, contexts=("ua-0", "ua-1", "ua-2"))
        keys = seed(dispatcher, 5, clock())
        dispatcher.pump()
        await settle()
        contexts = {call[0]: call[1] for call in gated_executor.calls}
        assert [contexts[k] for k in keys] == ["ua-0", "ua-1", "ua-2", "ua-0", "ua-1"]
        gated_executor.release_all()
        await settle()

    def test_empty_contexts_rejected(self, clock):
        """At least one context is required."""
        with pytest.raises(ValueError):
            Dispatcher(GatedExecutor(), [], clock=clock)


class TestRunLoop:
    """The ``run`` loop wakes for due items and stops on request."""

    @pytest.mark.asyncio
    async def test_loop_dispatches_delayed_item(self):
        """An item scheduled slightly in the future is picked up by the loop."""
        executor = GatedExecutor()
        dispatcher = Dispatcher(executor, ["ua"], capacity=1)
        dispatcher.schedule("key-delayed", 0, time.time() + 0.05, AttemptKind.INITIAL)

        run_task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.3)
        assert len(executor.calls) == 1

        dispatcher.stop()
        executor.release_all()
        await asyncio.wait_for(run_task, timeout=1)
        assert dispatcher.stopped
        assert await dispatcher.wait_idle(timeout=1)

    @pytest.mark.asyncio
    async def test_wait_idle_times_out(self, clock, gated_executor):
        """``wait_idle`` reports ``False`` while an attempt is still running."""
        dispatcher = make_dispatcher(gated_executor, clock)
        seed(dispatcher, 1, clock())
        dispatcher.pump()
        await settle()
        assert await dispatcher.wait_idle(timeout=0.05) is False
        gated_executor.release_all()
        assert await dispatcher.wait_idle(timeout=1) is True
