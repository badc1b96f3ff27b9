import time
from datetime import timedelta

import pytest

from meshsub.timecache import (
    FirstSeenCache,
    LastSeenCache,
    Strategy,
    new_time_cache,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_first_seen_cache_found():
    with FirstSeenCache(60) as tc:
        tc.add("test")
        assert tc.has("test")


def test_first_seen_add_reports_new_entries(clock):
    with FirstSeenCache(60, clock=clock) as tc:
        assert tc.add("a") is True
        assert tc.add("a") is False
        assert tc.has("b") is False


def test_first_seen_cache_expire(clock):
    with FirstSeenCache(1, clock=clock) as tc:
        for i in range(10):
            tc.add(str(i))
            clock.advance(0.1)
        clock.advance(2)
        tc.sweep()
        assert not any(tc.has(str(i)) for i in range(10))


def test_first_seen_cache_not_found_after_expire(clock):
    with FirstSeenCache(1, clock=clock) as tc:
        tc.add("0")
        clock.advance(2)
        tc.sweep()
        assert not tc.has("0")


def test_first_seen_lookup_does_not_extend(clock):
    with FirstSeenCache(1, clock=clock) as tc:
        tc.add("0")
        clock.advance(0.8)
        assert tc.has("0")
        clock.advance(0.4)
        tc.sweep()
        assert not tc.has("0")


def test_sweep_keeps_unexpired_entries(clock):
    with FirstSeenCache(1, clock=clock) as tc:
        tc.add("old")
        clock.advance(0.7)
        tc.add("new")
        clock.advance(0.5)
        tc.sweep()
        assert not tc.has("old")
        assert tc.has("new")


def test_last_seen_cache_found():
    with LastSeenCache(60) as tc:
        tc.add("test")
        assert tc.has("test")


def test_last_seen_add_reports_new_entries(clock):
    with LastSeenCache(60, clock=clock) as tc:
        assert tc.add("x") is True
        assert tc.add("x") is False


def test_last_seen_cache_expire(clock):
    with LastSeenCache(1, clock=clock) as tc:
        for i in range(11):
            tc.add(str(i))
            clock.advance(0.1)
        clock.advance(2)
        tc.sweep()
        assert not any(tc.has(str(i)) for i in range(11))


def test_last_seen_cache_not_found_after_expire(clock):
    with LastSeenCache(1, clock=clock) as tc:
        tc.add("0")
        clock.advance(2)
        tc.sweep()
        assert not tc.has("0")


def test_last_seen_cache_slide_forward(clock):
    with LastSeenCache(1, clock=clock) as tc:
        for i in range(8):
            tc.add(str(i))
            clock.advance(0.1)
        assert tc.has("0")
        clock.advance(0.4)
        tc.sweep()
        assert tc.has("0")
        assert not tc.has("1")
        clock.advance(1.1)
        tc.sweep()
        assert not tc.has("0")
        assert not tc.has("0")


def test_last_seen_add_extends_expiry(clock):
    with LastSeenCache(1, clock=clock) as tc:
        tc.add("k")
        clock.advance(0.9)
        tc.add("k")
        clock.advance(0.9)
        tc.sweep()
        assert tc.has("k")


def test_background_sweeper_removes_expired_entries():
    tc = FirstSeenCache(0.05, sweep_interval=0.05)
    try:
        tc.add("0")
        deadline = time.monotonic() + 2
        while tc.has("0") and time.monotonic() < deadline:
            time.sleep(0.02)
        assert not tc.has("0")
    finally:
        tc.done()


def test_new_time_cache_strategies():
    first = new_time_cache(timedelta(minutes=1))
    last = new_time_cache(timedelta(minutes=1), Strategy.LAST_SEEN)
    try:
        assert first.strategy is Strategy.FIRST_SEEN
        assert last.strategy is Strategy.LAST_SEEN
        assert first.add("a") and first.has("a")
        assert last.add("a") and last.has("a")
    finally:
        first.done()
        last.done()


def test_invalid_sweep_interval_rejected():
    with pytest.raises(ValueError):
        FirstSeenCache(1, sweep_interval=0)