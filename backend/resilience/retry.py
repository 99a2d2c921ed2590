"""
Bot Resilience — Retry Executor

Runs a fallible operation, retrying transient failures with capped exponential
backoff and full jitter. Permanent failures propagate on the first attempt.
The error a caller sees is always the last real failure, never a wrapper.

Usage:
    executor = RetryExecutor(API_POLICY, name="weather")
    data = await executor.execute(lambda: client.get(url), max_attempts=5)

    # or with a preset policy
    rows = await retry_database(lambda: fetch_requests(db))
"""
import asyncio
import contextlib
import inspect
import logging
import random
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import config
from resilience.classifier import DEFAULT_RETRYABLE_KINDS, ErrorKind, classify_error, is_transient
from resilience.errors import ConfigurationError

logger = logging.getLogger("bot.resilience.retry")

Operation = Callable[[], Any]
SleepFn = Callable[[float], Awaitable[None]]
RandomFn = Callable[[float, float], float]


class RetryPhase(str, Enum):
    ATTEMPTING = "ATTEMPTING"
    BACKING_OFF = "BACKING_OFF"
    SUCCEEDED = "SUCCEEDED"   # terminal
    FAILED = "FAILED"         # terminal


@dataclass
class RetryState:
    """Bookkeeping for a single execute() call."""
    attempt: int = 1
    phase: RetryPhase = RetryPhase.ATTEMPTING
    last_error: Optional[BaseException] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Static retry configuration.

    Delays are in seconds. attempt n (1-based) backs off for
    min(base_delay * backoff_multiplier ** (n - 1), max_delay), replaced by
    uniform(0, delay) when jitter is on.
    """
    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    base_delay: float = config.RETRY_BASE_DELAY
    max_delay: float = config.RETRY_MAX_DELAY
    backoff_multiplier: float = config.RETRY_BACKOFF_MULTIPLIER
    jitter: bool = config.RETRY_JITTER
    retryable_kinds: frozenset = DEFAULT_RETRYABLE_KINDS
    is_retryable: Optional[Callable[[BaseException], bool]] = None   # overrides retryable_kinds
    deadline_sec: Optional[float] = None                             # wall-clock cap over all attempts
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None
    on_success: Optional[Callable[[Any, int], None]] = None
    on_failure: Optional[Callable[[BaseException, int], None]] = None

    def __post_init__(self):
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts!r}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("base_delay and max_delay must be non-negative")
        if self.backoff_multiplier < 1:
            raise ConfigurationError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier!r}")
        if self.deadline_sec is not None and self.deadline_sec <= 0:
            raise ConfigurationError(f"deadline_sec must be positive, got {self.deadline_sec!r}")
        object.__setattr__(self, "retryable_kinds", frozenset(ErrorKind(k) for k in self.retryable_kinds))

    def should_retry(self, error: BaseException) -> bool:
        if self.is_retryable is not None:
            return bool(self.is_retryable(error))
        return is_transient(error, self.retryable_kinds)

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given failed attempt, before jitter."""
        try:
            delay = self.base_delay * self.backoff_multiplier ** (attempt - 1)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def merged(self, **overrides) -> "RetryPolicy":
        """Copy with per-call overrides. The original policy is left untouched."""
        if not overrides:
            return self
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown retry policy options: {sorted(unknown)}")
        return replace(self, **overrides)


class RetryExecutor:
    """
    Executes operations under a RetryPolicy.

    Sleep and randomness are injectable so tests run without wall-clock
    waits. Backoff suspends only the calling task and is cancellable.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, name: str = "default",
                 sleep: SleepFn = asyncio.sleep, rand: RandomFn = random.uniform):
        self.policy = policy or RetryPolicy()
        self.name = name
        self._sleep = sleep
        self._random = rand

    async def execute(self, operation: Operation, **overrides):
        """
        Run operation (a zero-argument callable, sync or async) until it
        succeeds, fails permanently, or runs out of attempts.
        """
        policy = self.policy.merged(**overrides)
        if policy.deadline_sec is not None:
            return await asyncio.wait_for(self._run(operation, policy), timeout=policy.deadline_sec)
        return await self._run(operation, policy)

    def backoff_delay(self, attempt: int, policy: Optional[RetryPolicy] = None) -> float:
        policy = policy or self.policy
        delay = policy.delay_for(attempt)
        if policy.jitter:
            delay = self._random(0.0, delay)
        return delay

    async def _run(self, operation: Operation, policy: RetryPolicy):
        state = RetryState()

        while True:
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                state.last_error = exc
                retryable = policy.should_retry(exc)

                if not retryable or state.attempt >= policy.max_attempts:
                    self._transition(state, RetryPhase.FAILED)
                    self._report_failure(exc, state.attempt, policy, retryable)
                    raise

                delay = self.backoff_delay(state.attempt, policy)
                logger.warning(
                    f"[{self.name}] attempt {state.attempt}/{policy.max_attempts} failed, "
                    f"retrying in {delay:.2f}s: {_describe(exc)}",
                    extra={"event": "retry-scheduled", "executor": self.name,
                           "attempt": state.attempt, "delay_sec": delay,
                           "error_kind": classify_error(exc).value},
                )
                if policy.on_retry:
                    policy.on_retry(exc, state.attempt, delay)

                self._transition(state, RetryPhase.BACKING_OFF)
                await self._sleep(delay)
                state.attempt += 1
                self._transition(state, RetryPhase.ATTEMPTING)
                continue

            self._transition(state, RetryPhase.SUCCEEDED)
            if state.attempt > 1:
                logger.info(
                    f"[{self.name}] succeeded after {state.attempt} attempts",
                    extra={"event": "retry-succeeded", "executor": self.name,
                           "attempt": state.attempt},
                )
            if policy.on_success:
                policy.on_success(result, state.attempt)
            return result

    def _report_failure(self, exc: BaseException, attempts: int, policy: RetryPolicy, retryable: bool):
        # Diagnostic only: the exception keeps its type and identity
        with contextlib.suppress(AttributeError, TypeError):
            exc.retry_attempts = attempts

        if retryable:
            logger.error(
                f"[{self.name}] gave up after {attempts} attempts: {_describe(exc)}",
                extra={"event": "retry-exhausted", "executor": self.name, "attempt": attempts},
            )
        else:
            logger.info(
                f"[{self.name}] not retrying {_describe(exc)} (attempt {attempts})",
                extra={"event": "retry-aborted", "executor": self.name, "attempt": attempts},
            )
        if policy.on_failure:
            policy.on_failure(exc, attempts)

    def _transition(self, state: RetryState, phase: RetryPhase):
        old = state.phase
        state.phase = phase
        logger.debug(f"[{self.name}] attempt {state.attempt}: {old.value} -> {phase.value}")


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


# ──────────────────────────── Presets ────────────────────────────

DEFAULT_POLICY = RetryPolicy()

# Chat platform API: slower, longer, and it may tell us to back off
DISCORD_POLICY = RetryPolicy(
    max_attempts=5,
    base_delay=2.0,
    max_delay=60.0,
    retryable_kinds=DEFAULT_RETRYABLE_KINDS | {ErrorKind.RATE_LIMITED},
)

DATABASE_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_kinds=frozenset({
        ErrorKind.DATABASE_BUSY,
        ErrorKind.DATABASE_LOCKED,
        ErrorKind.CONNECTION_REFUSED,
    }),
)

API_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    retryable_kinds=DEFAULT_RETRYABLE_KINDS | {ErrorKind.TOO_MANY_REQUESTS},
)


async def retry(operation: Operation, **overrides):
    """Run operation under the default policy with optional per-call overrides."""
    return await RetryExecutor(DEFAULT_POLICY).execute(operation, **overrides)


async def retry_discord(operation: Operation, **overrides):
    return await RetryExecutor(DISCORD_POLICY, name="discord").execute(operation, **overrides)


async def retry_database(operation: Operation, **overrides):
    return await RetryExecutor(DATABASE_POLICY, name="database").execute(operation, **overrides)


async def retry_api(operation: Operation, **overrides):
    return await RetryExecutor(API_POLICY, name="api").execute(operation, **overrides)
