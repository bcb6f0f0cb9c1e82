"""Tests for retry backoff."""

from dbagent.backoff import Backoff


class TestBackoff:
    def test_exponential_then_random(self):
        backoff = Backoff(rand_func=lambda: 0.5)
        waits = [backoff.wait() for _ in range(9)]
        assert waits == [0.0, 1.0, 3.0, 7.0, 15.0, 31.0, 63.0, 135.0, 135.0]

    def test_long_success_streak_resets(self):
        now = {"t": 0.0}
        backoff = Backoff(reset_after=300, now_func=lambda: now["t"])
        for _ in range(4):
            backoff.wait()
        backoff.success()
        now["t"] = 301.0
        backoff.success()
        assert backoff.wait() == 0.0

    def test_short_success_streak_keeps_long_waits(self):
        now = {"t": 0.0}
        backoff = Backoff(reset_after=300, now_func=lambda: now["t"])
        for _ in range(3):
            backoff.wait()
        backoff.success()
        now["t"] = 10.0
        assert backoff.wait() == 7.0

    def test_reset(self):
        backoff = Backoff()
        backoff.wait()
        backoff.wait()
        backoff.reset()
        assert backoff.wait() == 0.0
