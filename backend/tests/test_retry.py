"""
Unit tests for RetryExecutor — backoff, classification, exhaustion, presets.
Sleep and jitter are injected, so nothing waits on the wall clock.
"""
import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.classifier import ErrorKind
from resilience.errors import ConfigurationError, PermanentOperationError, TransientOperationError
from resilience.retry import (
    API_POLICY,
    DATABASE_POLICY,
    DEFAULT_POLICY,
    DISCORD_POLICY,
    RetryExecutor,
    RetryPhase,
    RetryPolicy,
    retry,
    retry_api,
    retry_database,
)


def reset_error(message: str = "ECONNRESET") -> Exception:
    err = Exception(message)
    err.code = "ECONNRESET"
    return err


# ──────────────────────────── Fixtures ──────────────────────────

class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, base_delay=1, max_delay=5, jitter=False)


@pytest.fixture
def executor(policy, sleeper):
    return RetryExecutor(policy, name="test", sleep=sleeper)


# ──────────────────────────── Core Contract ──────────────────────────

class TestExecute:
    @pytest.mark.asyncio
    async def test_success_first_try(self, executor, sleeper):
        op = AsyncMock(return_value="ok")
        assert await executor.execute(op) == "ok"
        assert op.call_count == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_retry_then_success(self, executor, sleeper):
        op = AsyncMock(side_effect=[reset_error(), "ok"])
        assert await executor.execute(op) == "ok"
        assert op.call_count == 2
        assert sleeper.delays == [1]

    @pytest.mark.asyncio
    async def test_two_resets_then_ok(self, executor, sleeper):
        op = AsyncMock(side_effect=[reset_error(), reset_error(), "ok"])
        assert await executor.execute(op) == "ok"
        assert op.call_count == 3
        assert sleeper.delays == [1, 2]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, executor, sleeper):
        errors = [reset_error("first"), reset_error("second"), reset_error("third")]
        op = AsyncMock(side_effect=errors)

        with pytest.raises(Exception) as exc_info:
            await executor.execute(op)

        assert exc_info.value is errors[-1]
        assert exc_info.value.retry_attempts == 3
        assert op.call_count == 3
        assert sleeper.delays == [1, 2]

    @pytest.mark.parametrize("max_attempts", [1, 2, 5])
    @pytest.mark.asyncio
    async def test_invokes_exactly_max_attempts(self, sleeper, max_attempts):
        executor = RetryExecutor(RetryPolicy(max_attempts=max_attempts, jitter=False), sleep=sleeper)
        op = AsyncMock(side_effect=ConnectionResetError("reset"))

        with pytest.raises(ConnectionResetError):
            await executor.execute(op)

        assert op.call_count == max_attempts
        assert len(sleeper.delays) == max_attempts - 1

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, executor, sleeper):
        err = ValueError("FATAL")
        op = AsyncMock(side_effect=err)

        with pytest.raises(ValueError) as exc_info:
            await executor.execute(op)

        assert exc_info.value is err
        assert type(exc_info.value) is ValueError
        assert op.call_count == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, executor, sleeper):
        op = AsyncMock(side_effect=PermanentOperationError("bad request"))
        with pytest.raises(PermanentOperationError):
            await executor.execute(op)
        assert op.call_count == 1

    @pytest.mark.asyncio
    async def test_tagged_transient_error_retried(self, executor):
        op = AsyncMock(side_effect=[TransientOperationError("flaky", ErrorKind.TIMEOUT), "ok"])
        assert await executor.execute(op) == "ok"

    @pytest.mark.asyncio
    async def test_sync_operation(self, executor):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 2:
                raise TimeoutError("slow")
            return 42

        assert await executor.execute(op) == 42
        assert len(calls) == 2


# ──────────────────────────── Backoff ──────────────────────────

class TestBackoff:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay=1, max_delay=5, jitter=False)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]

    def test_huge_attempt_does_not_overflow(self):
        policy = RetryPolicy(base_delay=1, max_delay=30, backoff_multiplier=10)
        assert policy.delay_for(10_000) == 30

    def test_full_jitter_range(self):
        rand = MagicMock(return_value=0.25)
        executor = RetryExecutor(RetryPolicy(base_delay=2, max_delay=60, jitter=True), rand=rand)

        assert executor.backoff_delay(3) == 0.25
        rand.assert_called_once_with(0.0, 8)

    def test_jitter_stays_within_bounds(self):
        executor = RetryExecutor(RetryPolicy(base_delay=1, max_delay=4, jitter=True))
        for attempt in range(1, 8):
            delay = executor.backoff_delay(attempt)
            assert 0.0 <= delay <= 4

    @pytest.mark.asyncio
    async def test_jittered_delay_is_slept(self, sleeper):
        executor = RetryExecutor(
            RetryPolicy(max_attempts=2, base_delay=1, jitter=True),
            sleep=sleeper,
            rand=lambda low, high: high / 2,
        )
        op = AsyncMock(side_effect=[reset_error(), "ok"])
        await executor.execute(op)
        assert sleeper.delays == [0.5]


# ──────────────────────────── Policy ──────────────────────────

class TestPolicy:
    @pytest.mark.asyncio
    async def test_overrides_are_per_call(self, executor, policy, sleeper):
        op = AsyncMock(side_effect=ConnectionRefusedError("refused"))

        with pytest.raises(ConnectionRefusedError):
            await executor.execute(op, max_attempts=5)

        assert op.call_count == 5
        assert executor.policy is policy
        assert policy.max_attempts == 3

    @pytest.mark.asyncio
    async def test_unknown_override_rejected(self, executor):
        with pytest.raises(ConfigurationError):
            await executor.execute(AsyncMock(), attempts=3)

    @pytest.mark.asyncio
    async def test_custom_classifier(self, executor):
        op = AsyncMock(side_effect=[KeyError("cache miss"), "ok"])
        result = await executor.execute(op, is_retryable=lambda e: isinstance(e, KeyError))
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_custom_classifier_can_refuse_network_errors(self, executor):
        op = AsyncMock(side_effect=ConnectionResetError())
        with pytest.raises(ConnectionResetError):
            await executor.execute(op, is_retryable=lambda e: False)
        assert op.call_count == 1

    @pytest.mark.asyncio
    async def test_retryable_kinds_accept_strings(self, executor):
        err = Exception("busy")
        err.code = "SQLITE_BUSY"
        op = AsyncMock(side_effect=[err, "ok"])
        assert await executor.execute(op, retryable_kinds={"SQLITE_BUSY"}) == "ok"

    def test_default_classifier_is_is_transient(self, policy, monkeypatch):
        classifier = MagicMock(return_value=True)
        monkeypatch.setattr("resilience.retry.is_transient", classifier)
        err = ValueError("anything")

        assert policy.should_retry(err) is True
        classifier.assert_called_once_with(err, policy.retryable_kinds)

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay": -1},
        {"max_delay": -1},
        {"backoff_multiplier": 0.5},
        {"deadline_sec": 0},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ConfigurationError):
            RetryPolicy(**kwargs)

    def test_default_policy(self):
        assert DEFAULT_POLICY.max_attempts == 3
        assert DEFAULT_POLICY.retryable_kinds == {
            ErrorKind.CONNECTION_RESET,
            ErrorKind.HOST_NOT_FOUND,
            ErrorKind.TIMEOUT,
            ErrorKind.CONNECTION_REFUSED,
        }


# ──────────────────────────── Callbacks ──────────────────────────

class TestCallbacks:
    @pytest.mark.asyncio
    async def test_callbacks_on_success(self, executor):
        on_retry, on_success, on_failure = MagicMock(), MagicMock(), MagicMock()
        err = reset_error()
        op = AsyncMock(side_effect=[err, "ok"])

        await executor.execute(op, on_retry=on_retry, on_success=on_success, on_failure=on_failure)

        on_retry.assert_called_once_with(err, 1, 1)
        on_success.assert_called_once_with("ok", 2)
        on_failure.assert_not_called()

    @pytest.mark.asyncio
    async def test_on_failure_after_exhaustion(self, executor):
        on_failure = MagicMock()
        err = reset_error()
        op = AsyncMock(side_effect=err)

        with pytest.raises(Exception):
            await executor.execute(op, on_failure=on_failure)

        on_failure.assert_called_once_with(err, 3)


# ──────────────────────────── State Machine ──────────────────────────

class TestPhases:
    @pytest.mark.asyncio
    async def test_phase_sequence(self, executor, monkeypatch):
        phases = []
        original = executor._transition

        def spy(state, phase):
            phases.append(phase)
            original(state, phase)

        monkeypatch.setattr(executor, "_transition", spy)
        op = AsyncMock(side_effect=[reset_error(), "ok"])
        await executor.execute(op)

        assert phases == [RetryPhase.BACKING_OFF, RetryPhase.ATTEMPTING, RetryPhase.SUCCEEDED]


# ──────────────────────────── Cancellation / Deadline ──────────────────────────

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retrying(self):
        op = AsyncMock(side_effect=ConnectionResetError())
        executor = RetryExecutor(RetryPolicy(max_attempts=10, base_delay=10, jitter=False))

        task = asyncio.create_task(executor.execute(op))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)
        assert op.call_count == 1

    @pytest.mark.asyncio
    async def test_deadline_cuts_off_retries(self):
        op = AsyncMock(side_effect=ConnectionResetError())
        executor = RetryExecutor(RetryPolicy(max_attempts=10, base_delay=10, jitter=False))

        with pytest.raises(asyncio.TimeoutError):
            await executor.execute(op, deadline_sec=0.05)
        assert op.call_count == 1

    @pytest.mark.asyncio
    async def test_outer_timeout_leaves_no_orphan(self):
        op = AsyncMock(side_effect=ConnectionResetError())
        executor = RetryExecutor(RetryPolicy(max_attempts=10, base_delay=0.02, jitter=False))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(executor.execute(op), timeout=0.01)
        calls = op.call_count
        await asyncio.sleep(0.1)
        assert op.call_count == calls


# ──────────────────────────── Presets ──────────────────────────

class TestPresets:
    def test_preset_shapes(self):
        assert DISCORD_POLICY.max_attempts == 5
        assert ErrorKind.RATE_LIMITED in DISCORD_POLICY.retryable_kinds
        assert ErrorKind.DATABASE_BUSY in DATABASE_POLICY.retryable_kinds
        assert ErrorKind.CONNECTION_RESET not in DATABASE_POLICY.retryable_kinds
        assert ErrorKind.TOO_MANY_REQUESTS in API_POLICY.retryable_kinds

    @pytest.mark.asyncio
    async def test_retry_convenience(self):
        op = AsyncMock(side_effect=[reset_error(), "ok"])
        result = await retry(op, max_attempts=3, base_delay=0.001, max_delay=0.005, jitter=False)
        assert result == "ok"
        assert op.call_count == 2
        assert DEFAULT_POLICY.base_delay != 0.001

    @pytest.mark.asyncio
    async def test_retry_database_on_busy(self):
        err = Exception("database is locked")
        err.code = "SQLITE_BUSY"
        op = AsyncMock(side_effect=[err, ["row"]])
        assert await retry_database(op, base_delay=0.001, jitter=False) == ["row"]

    @pytest.mark.asyncio
    async def test_retry_api_gives_up_on_permanent(self):
        op = AsyncMock(side_effect=PermissionError("forbidden"))
        with pytest.raises(PermissionError):
            await retry_api(op, base_delay=0.001)
        assert op.call_count == 1
