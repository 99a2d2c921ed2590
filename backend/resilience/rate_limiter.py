"""
Bot Resilience — Sliding Window Rate Limiter

Per-(actor, operation class) admission control. Actors that exceed their
quota are blocked for the class's block duration.

Usage:
    limiter = RateLimiter({"general": {"max_requests": 5, "window_ms": 60_000,
                                       "block_duration_ms": 30_000}})
    decision = limiter.check("user-42", "general")
    if not decision.allowed:
        reply(f"Slow down, retry in {decision.retry_after_ms / 1000:.0f}s")
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

import config
from resilience.clock import Clock, MonotonicClock
from resilience.errors import ConfigurationError
from resilience.registry import BlockEntry, RateLimitRegistry

logger = logging.getLogger("bot.resilience.rate_limiter")

_CONFIG_FIELDS = {"max_requests", "window_ms", "block_duration_ms"}


class DenialReason(str, Enum):
    USER_BLOCKED = "USER_BLOCKED"                # an active block is in force
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"  # this request tripped the quota


@dataclass(frozen=True)
class OperationClassConfig:
    """Quota for one operation class. max_requests is inclusive."""
    max_requests: int
    window_ms: int
    block_duration_ms: int = 0

    def __post_init__(self):
        if not isinstance(self.max_requests, int) or isinstance(self.max_requests, bool) \
                or self.max_requests < 0:
            raise ConfigurationError(f"max_requests must be a non-negative int, got {self.max_requests!r}")
        if not isinstance(self.window_ms, (int, float)) or self.window_ms <= 0:
            raise ConfigurationError(f"window_ms must be positive, got {self.window_ms!r}")
        if not isinstance(self.block_duration_ms, (int, float)) or self.block_duration_ms < 0:
            raise ConfigurationError(
                f"block_duration_ms must be non-negative, got {self.block_duration_ms!r}"
            )


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check. Denial is data, never an exception."""
    allowed: bool
    reason: Optional[DenialReason] = None
    retry_after_ms: Optional[float] = None
    remaining: int = 0
    limit: int = 0
    reset_after_ms: Optional[float] = None   # allowed only: until the oldest request leaves the window

    def to_json(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "retry_after_ms": self.retry_after_ms,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_after_ms": self.reset_after_ms,
        }


def load_operation_classes(raw: Mapping) -> Mapping[str, OperationClassConfig]:
    """Validate a class map (dicts or OperationClassConfig) into a read-only mapping."""
    classes = {}
    for name, value in raw.items():
        if isinstance(value, OperationClassConfig):
            classes[name] = value
            continue
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"Rate limit for '{name}' must be a mapping, got {value!r}")
        unknown = set(value) - _CONFIG_FIELDS
        if unknown:
            raise ConfigurationError(f"Rate limit for '{name}' has unknown keys: {sorted(unknown)}")
        missing = {"max_requests", "window_ms"} - set(value)
        if missing:
            raise ConfigurationError(f"Rate limit for '{name}' is missing: {sorted(missing)}")
        classes[name] = OperationClassConfig(**value)
    return MappingProxyType(classes)


class RateLimiter:
    """
    Sliding window admission control with escalation to temporary blocks.

    - check(): allow and record, or deny with USER_BLOCKED / RATE_LIMIT_EXCEEDED.
    - Every key mutation happens under the registry lock, so two concurrent
      checks never both take the last free slot.
    - Expired blocks and stale timestamps are purged lazily on access;
      cleanup() (or the start() sweeper) purges eagerly.
    """

    def __init__(self, configs: Optional[Mapping] = None, clock: Optional[Clock] = None):
        self._configs = load_operation_classes(config.RATE_LIMITS if configs is None else configs)
        self._clock = clock or MonotonicClock()
        # Owned, never shared: every key in it belongs to one of self._configs
        self._registry = RateLimitRegistry()
        self._task: Optional[asyncio.Task] = None

    @property
    def configs(self) -> Mapping[str, OperationClassConfig]:
        return self._configs

    def _config(self, operation_class: str) -> OperationClassConfig:
        try:
            return self._configs[operation_class]
        except KeyError:
            raise ConfigurationError(
                f"Unknown operation class '{operation_class}' "
                f"(configured: {', '.join(sorted(self._configs))})"
            ) from None

    # ────────────────────── Admission ──────────────────────

    def check(self, actor_id: str, operation_class: str) -> Decision:
        """Decide whether actor_id may run an operation of this class now."""
        cfg = self._config(operation_class)
        key = (actor_id, operation_class)
        registry = self._registry

        with registry.lock:
            now = self._clock.now_ms()

            block = registry.get_block(key, now)
            if block is not None:
                registry.count(operation_class, allowed=False)
                retry_after = block.remaining_ms(now)
                logger.debug(
                    f"Denied {actor_id} on {operation_class}: blocked for {retry_after:.0f}ms",
                    extra={"event": "blocked", "actor_id": actor_id,
                           "operation_class": operation_class, "retry_after_ms": retry_after},
                )
                return Decision(
                    allowed=False,
                    reason=DenialReason.USER_BLOCKED,
                    retry_after_ms=retry_after,
                    limit=cfg.max_requests,
                )

            window = registry.window(key, now, cfg.window_ms)
            if len(window) >= cfg.max_requests:
                registry.set_block(key, now, cfg.block_duration_ms)
                registry.count(operation_class, allowed=False)
                logger.warning(
                    f"Rate limit exceeded: {actor_id} on {operation_class} "
                    f"({len(window)}/{cfg.max_requests} in {cfg.window_ms}ms), "
                    f"blocked for {cfg.block_duration_ms}ms",
                    extra={"event": "blocked", "actor_id": actor_id,
                           "operation_class": operation_class,
                           "requests": len(window), "limit": cfg.max_requests,
                           "block_duration_ms": cfg.block_duration_ms},
                )
                return Decision(
                    allowed=False,
                    reason=DenialReason.RATE_LIMIT_EXCEEDED,
                    retry_after_ms=float(cfg.block_duration_ms),
                    limit=cfg.max_requests,
                )

            window.append(now)
            registry.count(operation_class, allowed=True)
            remaining = cfg.max_requests - len(window)
            logger.debug(
                f"Allowed {actor_id} on {operation_class} ({remaining} left)",
                extra={"event": "allowed", "actor_id": actor_id,
                       "operation_class": operation_class, "remaining": remaining},
            )
            reset_after = max(0.0, min(window) + cfg.window_ms - now)
            return Decision(
                allowed=True,
                remaining=remaining,
                limit=cfg.max_requests,
                reset_after_ms=reset_after,
            )

    def record(self, actor_id: str, operation_class: str):
        """Count an execution against the window without making a decision."""
        cfg = self._config(operation_class)
        with self._registry.lock:
            now = self._clock.now_ms()
            self._registry.window((actor_id, operation_class), now, cfg.window_ms).append(now)

    # ────────────────────── Blocks ──────────────────────

    def is_blocked(self, actor_id: str, operation_class: str) -> bool:
        self._config(operation_class)
        with self._registry.lock:
            return self._registry.get_block((actor_id, operation_class), self._clock.now_ms()) is not None

    def block_remaining_ms(self, actor_id: str, operation_class: str) -> float:
        self._config(operation_class)
        with self._registry.lock:
            now = self._clock.now_ms()
            block = self._registry.get_block((actor_id, operation_class), now)
            return block.remaining_ms(now) if block else 0.0

    def block(self, actor_id: str, operation_class: str,
              duration_ms: Optional[float] = None) -> BlockEntry:
        """Administrative block. Defaults to the class's block duration."""
        cfg = self._config(operation_class)
        if duration_ms is None:
            duration_ms = cfg.block_duration_ms
        if duration_ms < 0:
            raise ConfigurationError(f"Block duration must be non-negative, got {duration_ms!r}")
        with self._registry.lock:
            entry = self._registry.set_block((actor_id, operation_class), self._clock.now_ms(), duration_ms)
        logger.warning(
            f"Blocked {actor_id} on {operation_class} for {duration_ms}ms",
            extra={"event": "blocked", "actor_id": actor_id,
                   "operation_class": operation_class, "block_duration_ms": duration_ms},
        )
        return entry

    def unblock(self, actor_id: str, operation_class: str) -> bool:
        """
        Lift a block. Window history is kept, so an actor still near quota
        stays near quota. Returns True if a live block was removed.
        """
        self._config(operation_class)
        with self._registry.lock:
            entry = self._registry.remove_block((actor_id, operation_class))
            was_blocked = entry is not None and not entry.expired(self._clock.now_ms())

        if was_blocked:
            logger.info(
                f"Unblocked {actor_id} on {operation_class}",
                extra={"event": "unblocked", "actor_id": actor_id,
                       "operation_class": operation_class},
            )
        return was_blocked

    # ────────────────────── Maintenance ──────────────────────

    def cleanup(self) -> tuple[int, int]:
        """Purge expired blocks and empty windows. Returns (windows, blocks) removed."""
        with self._registry.lock:
            removed = self._registry.sweep(
                self._clock.now_ms(), lambda cls: self._configs[cls].window_ms
            )
        if any(removed):
            logger.debug(f"Rate limiter sweep removed {removed[0]} windows, {removed[1]} blocks")
        return removed

    def stats(self) -> dict:
        """Live windows, active blocks and cumulative per-class counters."""
        registry = self._registry
        with registry.lock:
            now = self._clock.now_ms()
            registry.sweep(now, lambda cls: self._configs[cls].window_ms)

            per_class = {}
            for name in self._configs:
                counters = registry.counters(name)
                per_class[name] = {
                    "allowed": counters.allowed,
                    "denied": counters.denied,
                    "active_windows": 0,
                    "total_requests": 0,
                }
            for (_, operation_class), window in registry.windows().items():
                per_class[operation_class]["active_windows"] += 1
                per_class[operation_class]["total_requests"] += len(window)

            blocked = [
                {
                    "actor_id": entry.actor_id,
                    "operation_class": entry.operation_class,
                    "remaining_ms": entry.remaining_ms(now),
                }
                for entry in registry.blocks().values()
            ]

            return {
                "total_windows": len(registry.windows()),
                "total_blocked": len(blocked),
                "per_class": per_class,
                "blocked": blocked,
            }

    def reset(self):
        """Forget all windows, blocks and counters."""
        with self._registry.lock:
            self._registry.clear()
        logger.info("Rate limiter reset", extra={"event": "reset"})

    # ────────────────────── Background sweep ──────────────────────

    async def start(self, interval_sec: float = 0):
        """Run cleanup() periodically as a background task."""
        if self._task and not self._task.done():
            return
        interval = interval_sec or config.RATE_LIMIT_SWEEP_INTERVAL
        self._task = asyncio.create_task(self._sweep_loop(interval))
        logger.info(f"Rate limiter sweeper started (interval: {interval}s)")

    async def stop(self):
        """Stop the background sweeper."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Rate limiter sweeper stopped")

    async def _sweep_loop(self, interval: float):
        while True:
            try:
                self.cleanup()
            except Exception as e:
                logger.warning(f"Rate limiter sweep error: {e}")
            await asyncio.sleep(interval)
