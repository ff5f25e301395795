"""Tests for background timers."""

import threading

from vpn_session.utils.timers import BackgroundTimer, TimerFactory


class TestBackgroundTimer:
    """Tests for BackgroundTimer class."""

    def test_one_shot(self):
        fired = threading.Event()
        calls = []

        def tick():
            calls.append(1)
            fired.set()

        timer = BackgroundTimer(0.01, tick, repeats=False).start()

        assert fired.wait(5)
        timer._thread.join(timeout=5)
        assert calls == [1]
        assert not timer.is_valid

    def test_repeats_until_cancelled(self):
        ticks = threading.Semaphore(0)
        timer = TimerFactory().schedule(0.01, ticks.release, name="VPN-Test")

        assert ticks.acquire(timeout=5)
        assert ticks.acquire(timeout=5)
        timer.cancel()

        assert not timer.is_valid
        assert not timer._thread.is_alive()

    def test_errors_do_not_stop_timer(self):
        ticks = threading.Semaphore(0)
        calls = []

        def flaky():
            calls.append(1)
            ticks.release()
            if len(calls) == 1:
                raise RuntimeError("first tick fails")

        timer = BackgroundTimer(0.01, flaky).start()
        try:
            assert ticks.acquire(timeout=5)
            assert ticks.acquire(timeout=5)
        finally:
            timer.cancel()

    def test_cancel_from_callback(self):
        """Test that a timer can cancel itself from its own callback."""
        done = threading.Event()
        holder = {}

        def tick():
            holder['timer'].cancel()
            done.set()

        holder['timer'] = BackgroundTimer(0.01, tick)
        holder['timer'].start()

        assert done.wait(5)
        assert not holder['timer'].is_valid
