"""Caches of recently seen message ids that forget entries after a time to live."""

from __future__ import annotations

import enum
import threading
import time
from datetime import timedelta
from typing import Callable, Optional, Union

Duration = Union[float, int, timedelta]

DEFAULT_SWEEP_INTERVAL = 60.0


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Strategy(enum.IntEnum):
    """How a cache entry's expiry is computed."""

    FIRST_SEEN = 0
    """Entries expire a fixed time after they were first added."""
    LAST_SEEN = 1
    """Entries expire a fixed time after they were last added or looked up."""


class TimeCache:
    """A set of ids whose entries are swept away once their time to live has passed.

    Expired entries are removed by a background thread every ``sweep_interval``
    seconds, or explicitly by calling :meth:`sweep`.
    """

    strategy = Strategy.FIRST_SEEN

    def __init__(
        self,
        ttl: Duration,
        sweep_interval: Duration = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        interval = _seconds(sweep_interval)
        if interval <= 0:
            raise ValueError("sweep interval must be positive")
        self._ttl = _seconds(ttl)
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._sweeper = threading.Thread(
            target=self._background,
            args=(interval,),
            name=f"{type(self).__name__}-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    @property
    def _sliding(self) -> bool:
        return self.strategy is Strategy.LAST_SEEN

    def add(self, key: str) -> bool:
        """Add ``key``; return True if it was not already present."""
        with self._lock:
            present = key in self._entries
            if not present or self._sliding:
                self._entries[key] = self._clock() + self._ttl
            return not present

    def has(self, key: str) -> bool:
        """Return True if ``key`` is present."""
        with self._lock:
            present = key in self._entries
            if present and self._sliding:
                self._entries[key] = self._clock() + self._ttl
            return present

    def sweep(self, now: Optional[float] = None) -> None:
        """Remove every entry whose expiry lies before ``now`` (default: the clock)."""
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [key for key, expiry in self._entries.items() if expiry < now]
            for key in expired:
                del self._entries[key]

    def done(self) -> None:
        """Stop the background sweeper."""
        self._stopped.set()

    def __enter__(self) -> "TimeCache":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.done()

    def _background(self, interval: float) -> None:
        while not self._stopped.wait(interval):
            self.sweep()


class FirstSeenCache(TimeCache):
    """Time cache that fixes an entry's expiry when it is first added."""

    strategy = Strategy.FIRST_SEEN


class LastSeenCache(TimeCache):
    """Time cache that pushes an entry's expiry forward on every add or lookup."""

    strategy = Strategy.LAST_SEEN


def new_time_cache(
    ttl: Duration,
    strategy: Strategy = Strategy.FIRST_SEEN,
    sweep_interval: Duration = DEFAULT_SWEEP_INTERVAL,
) -> TimeCache:
    """Create a cache for ``strategy``; anything but LAST_SEEN yields a first-seen cache."""
    cls = LastSeenCache if strategy == Strategy.LAST_SEEN else FirstSeenCache
    return cls(ttl, sweep_interval=sweep_interval)