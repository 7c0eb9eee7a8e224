"""In-memory sliding-window store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: one lock per partition, plus a map lock held only for
  dictionary lookups, inserts and deletes.
- Memory-bounded: each partition keeps at most ``max_entries_per_key``
  timestamps, and a background sweep drops partitions that went quiet.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from admission.adapters.rate_limit.base import AbstractWindowStore, Verdict

logger = logging.getLogger(__name__)


DEFAULT_MAX_ENTRIES_PER_KEY = 100
DEFAULT_STALE_AFTER_MS = 2 * 60 * 1000


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass
class _WindowEntry:
    timestamps: deque[int]
    lock: threading.Lock = field(default_factory=threading.Lock)
    evicted: bool = False


class InMemorySlidingWindowStore(AbstractWindowStore):
    """Sliding-window store keyed by partition.

    Each partition remembers the admission times of its most recent events.
    A check prunes everything that fell out of the window, then either
    rejects (window full) or records the new event.

    Important:
        This store is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    def __init__(
        self,
        *,
        max_entries_per_key: int = DEFAULT_MAX_ENTRIES_PER_KEY,
        stale_after_ms: int = DEFAULT_STALE_AFTER_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """Initialize the store.

        Args:
            max_entries_per_key: Hard cap on timestamps retained per partition.
            stale_after_ms: Inactivity after which sweep evicts a partition.
            clock: Time source returning UNIX time in milliseconds.

        Raises:
            ValueError: If the cap or staleness threshold are invalid.
        """
        if max_entries_per_key < 1:
            raise ValueError("max_entries_per_key must be >= 1")
        if stale_after_ms < 1:
            raise ValueError("stale_after_ms must be >= 1")

        self._max_entries_per_key = max_entries_per_key
        self._stale_after_ms = stale_after_ms
        self._clock = clock
        self._partitions: dict[str, _WindowEntry] = {}
        self._partitions_lock = threading.Lock()
        self._sweeper_thread: threading.Thread | None = None
        self._sweeper_stop: threading.Event | None = None

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"InMemorySlidingWindowStore(max_entries_per_key={self._max_entries_per_key}, "
            f"stale_after_ms={self._stale_after_ms}, partitions={self.partition_count})"
        )

    @property
    def max_entries_per_key(self) -> int:
        return self._max_entries_per_key

    @property
    def stale_after_ms(self) -> int:
        return self._stale_after_ms

    @property
    def partition_count(self) -> int:
        with self._partitions_lock:
            return len(self._partitions)

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_thread is not None and self._sweeper_thread.is_alive()

    def window_length(self, key: str) -> int:
        """Return how many timestamps are currently stored for ``key``."""

        with self._partitions_lock:
            entry = self._partitions.get(key)
        if entry is None:
            return 0
        with entry.lock:
            return len(entry.timestamps)

    def _get_or_create_entry(self, key: str) -> _WindowEntry:
        with self._partitions_lock:
            entry = self._partitions.get(key)
            if entry is None:
                entry = _WindowEntry(timestamps=deque(maxlen=self._max_entries_per_key))
                self._partitions[key] = entry
            return entry

    def check(self, key: str, window_ms: int, max_count: int) -> Verdict:
        """Admit or reject one event for ``key`` under a sliding window.

        The window boundary moves with the clock, so there is no bucket edge
        where ``2 * max_count`` events can slip through.

        Args:
            key: Composite partition key.
            window_ms: Window length in milliseconds.
            max_count: Maximum admitted events per window. Must not exceed
                ``max_entries_per_key``.

        Returns:
            Verdict with the decision and quota metadata.

        Raises:
            ValueError: If key is empty, window/max are not positive, or max
                is above the per-partition cap.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        if max_count < 1:
            raise ValueError("max_count must be >= 1")
        if max_count > self._max_entries_per_key:
            raise ValueError("max_count must not exceed max_entries_per_key")

        while True:
            entry = self._get_or_create_entry(key)
            with entry.lock:
                # Lost a race with sweep; the next lookup creates a fresh entry.
                if entry.evicted:
                    continue
                return self._check_locked(entry, window_ms, max_count)

    def _check_locked(self, entry: _WindowEntry, window_ms: int, max_count: int) -> Verdict:
        timestamps = entry.timestamps
        now = self._clock()
        if timestamps and now < timestamps[-1]:
            now = timestamps[-1]

        cutoff = now - window_ms
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

        if len(timestamps) >= max_count:
            reset_at = timestamps[0] + window_ms
            return Verdict(
                admitted=False,
                limit=max_count,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=max(1, math.ceil((reset_at - now) / 1000)),
            )

        # deque(maxlen=...) drops the oldest timestamp once the cap is reached
        timestamps.append(now)
        return Verdict(
            admitted=True,
            limit=max_count,
            remaining=max(0, max_count - len(timestamps)),
            reset_at=timestamps[0] + window_ms,
            retry_after_seconds=0,
        )

    def sweep(self) -> int:
        """Evict partitions whose newest event is older than the staleness threshold.

        Only one partition lock is held at a time, so concurrent checks on
        other partitions are never stalled by a long sweep.

        Returns:
            Number of partitions removed.
        """

        cutoff = self._clock() - self._stale_after_ms
        with self._partitions_lock:
            snapshot = list(self._partitions.items())

        removed = 0
        for key, entry in snapshot:
            with entry.lock:
                if entry.evicted:
                    continue
                if entry.timestamps and entry.timestamps[-1] >= cutoff:
                    continue
                entry.evicted = True
                with self._partitions_lock:
                    if self._partitions.get(key) is entry:
                        del self._partitions[key]
                removed += 1
        return removed

    def _sweep_safely(self) -> None:
        try:
            removed = self.sweep()
        except Exception:
            logger.exception("rate_limit.sweep_failed")
            return

        logger.debug(
            "rate_limit.sweep",
            extra={
                "removed": removed,
                "partitions": self.partition_count,
            },
        )

    def start(self, interval_seconds: float) -> None:
        """Start the background sweeper thread.

        Calling ``start`` while the sweeper is already running is a no-op.

        Args:
            interval_seconds: Delay between sweeps.

        Raises:
            ValueError: If interval_seconds is not positive.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self._sweeper_thread is not None:
            return

        stop_event = threading.Event()

        def _run() -> None:
            while not stop_event.wait(interval_seconds):
                self._sweep_safely()

        thread = threading.Thread(target=_run, name="rate_limit_sweeper", daemon=True)
        self._sweeper_stop = stop_event
        self._sweeper_thread = thread
        thread.start()
        logger.info(
            "rate_limit.sweeper_started",
            extra={
                "interval_s": interval_seconds,
                "stale_after_ms": self._stale_after_ms,
            },
        )

    def stop(self, timeout: float = 1.0) -> None:
        """Stop the background sweeper and wait for it to exit."""

        thread, stop_event = self._sweeper_thread, self._sweeper_stop
        if thread is None or stop_event is None:
            return

        stop_event.set()
        thread.join(timeout=timeout)
        self._sweeper_thread = None
        self._sweeper_stop = None
        logger.info("rate_limit.sweeper_stopped")
