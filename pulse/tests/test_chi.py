"""Tests for the CHI engine, its TTL cache and the trend calculation."""
from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from pulse.chi import MAX_WINDOW_MINUTES, NEUTRAL_CHI, CHIEngine, TTLCache, chi_from_signals


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def chi_engine(fake_store, clock, now) -> CHIEngine:
    return CHIEngine(fake_store, TTLCache(300, clock=clock), now=lambda: now)


# ---------------------------------------------------------------------------
# chi_from_signals
# ---------------------------------------------------------------------------


class TestChiFromSignals:
    def test_empty_is_none(self):
        assert chi_from_signals([]) is None

    def test_zero_total_intensity_is_none(self, make_signal):
        assert chi_from_signals([make_signal(sentiment=-1, intensity=0)]) is None

    def test_bounds(self, make_signal):
        assert chi_from_signals([make_signal(sentiment=-1.0)]) == 0
        assert chi_from_signals([make_signal(sentiment=1.0)]) == 100
        assert chi_from_signals([make_signal(sentiment=0.0)]) == NEUTRAL_CHI

    def test_intensity_weighting(self, make_signal):
        signals = [make_signal(sentiment=1.0, intensity=3), make_signal(sentiment=-1.0, intensity=1)]
        # weighted mean 0.5 -> 75
        assert chi_from_signals(signals) == 75

    def test_halves_round_up(self, make_signal):
        # 0.25 -> 62.5 -> 63
        assert chi_from_signals([make_signal(sentiment=0.25)]) == 63

    def test_monotone_in_sentiment(self, make_signal):
        base = [make_signal(sentiment=-0.4, intensity=5), make_signal(sentiment=0.1, intensity=2)]
        raised = [make_signal(sentiment=-0.1, intensity=5), make_signal(sentiment=0.1, intensity=2)]
        assert chi_from_signals(raised) >= chi_from_signals(base)

    @pytest.mark.parametrize("sentiment", [-1.0, -0.73, -0.2, 0.0, 0.41, 0.99, 1.0])
    def test_always_in_range(self, make_signal, sentiment):
        score = chi_from_signals([make_signal(sentiment=sentiment, intensity=7)])
        assert 0 <= score <= 100


# ---------------------------------------------------------------------------
# TTLCache
# ---------------------------------------------------------------------------


class TestTTLCache:
    def test_hit_within_ttl(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("k", 42)
        clock.value += 299
        assert cache.get("k") == 42

    def test_expires_at_ttl(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("k", 42)
        clock.value += 300
        assert cache.get("k") is None

    def test_clear(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert len(cache) == 2
        cache.clear()
        assert len(cache) == 0
        assert cache.get("a") is None

    def test_concurrent_writers_and_readers(self, clock):
        cache: TTLCache[int] = TTLCache(300, clock=clock)
        errors: list[BaseException] = []

        def worker(n: int) -> None:
            try:
                for i in range(200):
                    cache.set((n, i), i)
                    assert cache.get((n, i)) == i
                    cache.set("shared", n)
                    assert cache.get("shared") in range(8)
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert len(cache) == 8 * 200 + 1


# ---------------------------------------------------------------------------
# CHIEngine.compute_chi
# ---------------------------------------------------------------------------


class TestComputeChi:
    def test_no_data_returns_none_and_is_not_cached(self, chi_engine, fake_store):
        assert chi_engine.compute_chi(60) is None
        assert len(chi_engine.cache) == 0

    def test_window_excludes_old_signals(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [
            make_signal(sentiment=1.0, minutes_ago=30),
            make_signal(sentiment=-1.0, minutes_ago=90),
        ]
        assert chi_engine.compute_chi(60) == 100

    def test_product_area_filter(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [
            make_signal(sentiment=1.0, product_area_id=1),
            make_signal(sentiment=-1.0, product_area_id=2),
        ]
        assert chi_engine.compute_chi(60, product_area_id=1) == 100
        assert chi_engine.compute_chi(60, product_area_id=2) == 0
        assert chi_engine.compute_chi(60) == 50

    def test_cached_value_served_within_ttl(self, chi_engine, fake_store, make_signal, clock):
        fake_store.signals = [make_signal(sentiment=1.0)]
        assert chi_engine.compute_chi(60) == 100
        calls = fake_store.calls

        fake_store.signals = [make_signal(sentiment=-1.0)]
        clock.value += 120
        assert chi_engine.compute_chi(60) == 100
        assert fake_store.calls == calls

    def test_cache_expires(self, chi_engine, fake_store, make_signal, clock):
        fake_store.signals = [make_signal(sentiment=1.0)]
        chi_engine.compute_chi(60)
        fake_store.signals = [make_signal(sentiment=-1.0)]
        clock.value += 301
        assert chi_engine.compute_chi(60) == 0

    def test_bypass_cache(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [make_signal(sentiment=1.0)]
        chi_engine.compute_chi(60)
        fake_store.signals = [make_signal(sentiment=-1.0)]
        assert chi_engine.compute_chi(60, use_cache=False) == 0

    def test_keys_are_per_window_and_area(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [make_signal(sentiment=1.0)]
        chi_engine.compute_chi(60)
        chi_engine.compute_chi(120)
        chi_engine.compute_chi(60, product_area_id=1)
        assert len(chi_engine.cache) == 3

    def test_store_failure_returns_none(self, chi_engine, fake_store):
        fake_store.fail = True
        assert chi_engine.compute_chi(60) is None

    def test_out_of_range_window_is_none(self, chi_engine, fake_store):
        assert chi_engine.compute_chi(10**10) is None
        assert fake_store.calls == 0


# ---------------------------------------------------------------------------
# CHIEngine.compute_trend
# ---------------------------------------------------------------------------


class TestComputeTrend:
    def test_difference_between_windows(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [
            make_signal(sentiment=0.5, minutes_ago=30),   # current -> 75
            make_signal(sentiment=0.0, minutes_ago=90),   # previous -> 50
        ]
        assert chi_engine.compute_trend(60) == 25

    def test_negative_trend(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [
            make_signal(sentiment=-1.0, minutes_ago=10),
            make_signal(sentiment=1.0, minutes_ago=70),
        ]
        assert chi_engine.compute_trend(60) == -100

    def test_empty_previous_window_is_zero(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [make_signal(sentiment=0.5, minutes_ago=30)]
        assert chi_engine.compute_trend(60) == 0

    def test_empty_current_window_is_zero(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [make_signal(sentiment=0.5, minutes_ago=90)]
        assert chi_engine.compute_trend(60) == 0

    def test_ignores_stale_cache(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [make_signal(sentiment=1.0, minutes_ago=30)]
        chi_engine.compute_chi(60)
        fake_store.signals = [
            make_signal(sentiment=0.0, minutes_ago=30),
            make_signal(sentiment=0.0, minutes_ago=90),
        ]
        assert chi_engine.compute_trend(60) == 0

    def test_store_failure_is_zero(self, chi_engine, fake_store):
        fake_store.fail = True
        assert chi_engine.compute_trend(60) == 0

    def test_out_of_range_window_is_zero(self, chi_engine, fake_store, make_signal):
        fake_store.signals = [make_signal(sentiment=0.5, minutes_ago=30)]
        assert chi_engine.compute_trend(10**10) == 0
        assert chi_engine.compute_trend(MAX_WINDOW_MINUTES) == 0

    def test_windows_share_one_clock_reading(self, fake_store, make_signal, now):
        readings = iter([now, now + timedelta(minutes=30)])
        engine = CHIEngine(fake_store, now=lambda: next(readings))
        fake_store.signals = [
            make_signal(sentiment=0.5, minutes_ago=45),
            make_signal(sentiment=0.0, minutes_ago=90),
        ]
        assert engine.compute_trend(60) == 25
