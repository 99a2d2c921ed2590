"""
Bot Resilience — Rate Limit Registry

State owned by one RateLimiter: sliding windows and block entries keyed by
(actor_id, operation_class), plus cumulative per-class counters.

The registry does no locking of its own. Callers hold ``registry.lock`` for
the whole read-modify-write of a key.
"""
import threading
from collections import deque
from dataclasses import dataclass

Key = tuple[str, str]  # (actor_id, operation_class)


@dataclass
class BlockEntry:
    actor_id: str
    operation_class: str
    blocked_at_ms: float
    expires_at_ms: float

    def expired(self, now_ms: float) -> bool:
        return now_ms >= self.expires_at_ms

    def remaining_ms(self, now_ms: float) -> float:
        return max(0.0, self.expires_at_ms - now_ms)


@dataclass
class ClassCounters:
    allowed: int = 0
    denied: int = 0


class RateLimitRegistry:
    """Windows, blocks and counters for one limiter instance."""

    def __init__(self):
        self.lock = threading.RLock()
        self._windows: dict[Key, deque] = {}
        self._blocks: dict[Key, BlockEntry] = {}
        self._counters: dict[str, ClassCounters] = {}

    # ────────────────────── Windows ──────────────────────

    def window(self, key: Key, now_ms: float, window_ms: float) -> deque:
        """Fetch or create the window for key, evicting timestamps at or before now - window_ms."""
        window = self._windows.get(key)
        if window is None:
            window = deque()
            self._windows[key] = window
        cutoff = now_ms - window_ms
        while window and window[0] <= cutoff:
            window.popleft()
        # A clock that stepped backwards leaves the deque out of order
        if any(ts <= cutoff for ts in window):
            kept = [ts for ts in window if ts > cutoff]
            window.clear()
            window.extend(kept)
        return window

    # ────────────────────── Blocks ──────────────────────

    def get_block(self, key: Key, now_ms: float) -> BlockEntry | None:
        """Live block for key. An expired entry is purged and reported as absent."""
        entry = self._blocks.get(key)
        if entry is None:
            return None
        if entry.expired(now_ms):
            del self._blocks[key]
            return None
        return entry

    def set_block(self, key: Key, now_ms: float, duration_ms: float) -> BlockEntry:
        entry = BlockEntry(
            actor_id=key[0],
            operation_class=key[1],
            blocked_at_ms=now_ms,
            expires_at_ms=now_ms + duration_ms,
        )
        self._blocks[key] = entry
        return entry

    def remove_block(self, key: Key) -> BlockEntry | None:
        return self._blocks.pop(key, None)

    # ────────────────────── Counters ──────────────────────

    def count(self, operation_class: str, allowed: bool):
        counters = self._counters.setdefault(operation_class, ClassCounters())
        if allowed:
            counters.allowed += 1
        else:
            counters.denied += 1

    def counters(self, operation_class: str) -> ClassCounters:
        return self._counters.get(operation_class, ClassCounters())

    # ────────────────────── Maintenance ──────────────────────

    def sweep(self, now_ms: float, window_ms_for) -> tuple[int, int]:
        """
        Drop expired blocks and stale timestamps; forget windows left empty.

        window_ms_for maps an operation class to its window length.
        Returns (windows_removed, blocks_removed).
        """
        windows_removed = 0
        for key in list(self._windows):
            window = self.window(key, now_ms, window_ms_for(key[1]))
            if not window:
                del self._windows[key]
                windows_removed += 1

        blocks_removed = 0
        for key in list(self._blocks):
            if self._blocks[key].expired(now_ms):
                del self._blocks[key]
                blocks_removed += 1

        return windows_removed, blocks_removed

    def windows(self) -> dict[Key, deque]:
        return self._windows

    def blocks(self) -> dict[Key, BlockEntry]:
        return self._blocks

    def clear(self):
        self._windows.clear()
        self._blocks.clear()
        self._counters.clear()
