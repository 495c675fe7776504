"""Tests for the retry backoff policy."""

import random

import pytest

from fieldsync.sync.backoff import BackoffPolicy


class TestBackoffPolicy:
    @pytest.mark.parametrize("attempt", range(1, 11))
    def test_delay_within_jitter_bounds(self, attempt):
        policy = BackoffPolicy(rng=random.Random(attempt))
        base = min(30_000, 1_000 * 2 ** (attempt - 1))

        for _ in range(50):
            delay = policy.delay_ms(attempt)
            assert max(1_000, base * 0.8) <= delay <= base * 1.2

    def test_base_delay_doubles_then_caps(self):
        policy = BackoffPolicy()

        delays = [policy.base_delay_ms(n) for n in range(1, 8)]

        assert delays == [1_000, 2_000, 4_000, 8_000, 16_000, 30_000, 30_000]

    def test_huge_attempt_does_not_overflow(self):
        policy = BackoffPolicy()
        assert policy.base_delay_ms(10_000) == 30_000

    def test_floor_applies_after_jitter(self):
        """Downward jitter on the first attempt never goes below the floor."""

        class LowestJitter(random.Random):
            def uniform(self, a, b):
                return a

        policy = BackoffPolicy(rng=LowestJitter())

        assert policy.delay_ms(1) == 1_000
        assert policy.delay_ms(2) == pytest.approx(1_600)

    def test_jitter_spreads_delays(self):
        policy = BackoffPolicy(rng=random.Random(7))

        delays = {round(policy.delay_ms(4)) for _ in range(20)}

        assert len(delays) > 1

    def test_delay_seconds(self):
        class NoJitter(random.Random):
            def uniform(self, a, b):
                return 0.0

        policy = BackoffPolicy(rng=NoJitter())

        assert policy.delay_seconds(3) == pytest.approx(4.0)
