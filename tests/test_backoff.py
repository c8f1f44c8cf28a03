"""Test suite for reconnect pacing."""

import pytest

from inbox_sync.services.backoff import ReconnectBackoff, SlidingWindow


def test_delays_grow_exponentially_and_cap():
    """Test the delay schedule without jitter."""
    backoff = ReconnectBackoff(base_delay=1.0, max_delay=10.0, jitter=0)
    assert [backoff.delay_for(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_jitter_stays_within_bounds():
    """Test jitter only ever adds up to the configured fraction."""
    backoff = ReconnectBackoff(base_delay=2.0, max_delay=30.0, jitter=0.5)
    for _ in range(100):
        assert 4.0 <= backoff.delay_for(2) <= 6.0


@pytest.mark.asyncio
async def test_sliding_window_limits_attempts():
    """Test the window admits at most max_events at once."""
    window = SlidingWindow(window_size=60.0, max_events=2)

    assert await window.try_acquire()
    assert await window.try_acquire()
    assert not await window.try_acquire()
    assert 0 < window.time_until_free() <= 60.0


@pytest.mark.asyncio
async def test_sliding_window_frees_up():
    """Test events leave the window once it has elapsed."""
    window = SlidingWindow(window_size=0.01, max_events=1)

    assert await window.try_acquire()
    backoff = ReconnectBackoff(base_delay=0, max_delay=0, jitter=0)
    backoff.window = window
    await backoff.wait(1)

    assert len(window.events) == 1
