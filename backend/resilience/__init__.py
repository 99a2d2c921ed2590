"""
Bot Resilience — Resilience Primitives

Admission-control rate limiter and retry/backoff executor. Callers check
admission before dispatching a command and wrap outbound calls in a retry.
"""
from resilience.clock import Clock, ManualClock, MonotonicClock
from resilience.classifier import DEFAULT_RETRYABLE_KINDS, ErrorKind, classify_error, is_transient
from resilience.errors import ConfigurationError, PermanentOperationError, TransientOperationError
from resilience.registry import BlockEntry, RateLimitRegistry
from resilience.rate_limiter import Decision, DenialReason, OperationClassConfig, RateLimiter
from resilience.retry import (
    API_POLICY,
    DATABASE_POLICY,
    DEFAULT_POLICY,
    DISCORD_POLICY,
    RetryExecutor,
    RetryPhase,
    RetryPolicy,
    RetryState,
    retry,
    retry_api,
    retry_database,
    retry_discord,
)

__all__ = [
    "Clock",
    "ManualClock",
    "MonotonicClock",
    "DEFAULT_RETRYABLE_KINDS",
    "ErrorKind",
    "classify_error",
    "is_transient",
    "ConfigurationError",
    "PermanentOperationError",
    "TransientOperationError",
    "BlockEntry",
    "RateLimitRegistry",
    "Decision",
    "DenialReason",
    "OperationClassConfig",
    "RateLimiter",
    "API_POLICY",
    "DATABASE_POLICY",
    "DEFAULT_POLICY",
    "DISCORD_POLICY",
    "RetryExecutor",
    "RetryPhase",
    "RetryPolicy",
    "RetryState",
    "retry",
    "retry_api",
    "retry_database",
    "retry_discord",
]
