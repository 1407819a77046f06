"""Customer Happiness Index (CHI) engine.

CHI is the intensity-weighted mean sentiment of a time window, rescaled from
[-1, 1] to [0, 100]: -1 maps to 0, 0 to 50 and +1 to 100.

Results are cached per ``(window_minutes, product_area_id)`` for a fixed TTL.
Entries are never invalidated early, so a dashboard may show a value up to
one TTL old.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Generic, Hashable, TypeVar

from pulse.errors import StoreUnavailable
from pulse.signals import SignalRecord, weighted_sentiment
from pulse.store import SignalStore
from pulse.utils import round_half_up, utc_now

log = logging.getLogger(__name__)

T = TypeVar("T")

NEUTRAL_CHI = 50
DEFAULT_TTL_SECONDS = 300.0
MAX_WINDOW_MINUTES = 60 * 24 * 366


class TTLCache(Generic[T]):
    """Thread-safe in-process map whose entries expire after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, T]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                return None
            return value

    def set(self, key: Hashable, value: T) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def chi_from_signals(signals: list[SignalRecord]) -> int | None:
    """Scale the weighted mean sentiment of *signals* to 0-100. None without data."""
    avg = weighted_sentiment(signals)
    if avg is None:
        return None
    score = int(round_half_up(((avg + 1) / 2) * 100))
    return max(0, min(100, score))


class CHIEngine:
    """Computes CHI and CHI trend against a :class:`SignalStore`."""

    def __init__(
        self,
        store: SignalStore,
        cache: TTLCache[int] | None = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.cache = cache if cache is not None else TTLCache()
        self._now = now

    def compute_chi(
        self, window_minutes: int = 60, product_area_id: int | None = None, use_cache: bool = True,
    ) -> int | None:
        """CHI for the last *window_minutes*, or None when the window has no signals."""
        return self._chi_at(self._now(), window_minutes, product_area_id, use_cache)

    def _chi_at(
        self, now: datetime, window_minutes: int, product_area_id: int | None, use_cache: bool,
    ) -> int | None:
        key = (window_minutes, product_area_id)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        start = _window_start(now, window_minutes)
        if start is None:
            return None
        try:
            signals = self.store.fetch_window(start, product_area_id=product_area_id)
        except StoreUnavailable as exc:
            log.warning("CHI unavailable for window=%s area=%s: %s", window_minutes, product_area_id, exc)
            return None

        score = chi_from_signals(signals)
        if score is not None:
            self.cache.set(key, score)
        return score

    def compute_trend(self, window_minutes: int = 60, product_area_id: int | None = None) -> int:
        """Current CHI minus the CHI of the preceding window of equal length.

        Returns 0 when either window is empty.
        """
        now = self._now()
        current = self._chi_at(now, window_minutes, product_area_id, use_cache=False)
        if current is None:
            return 0

        current_start = _window_start(now, window_minutes)
        previous_start = _window_start(current_start, window_minutes) if current_start else None
        if previous_start is None:
            return 0
        try:
            previous_signals = self.store.fetch_window(
                previous_start, end=current_start, product_area_id=product_area_id,
            )
        except StoreUnavailable as exc:
            log.warning("CHI trend unavailable: %s", exc)
            return 0

        previous = chi_from_signals(previous_signals)
        if previous is None:
            return 0
        return current - previous


def _window_start(end: datetime, window_minutes: int) -> datetime | None:
    try:
        return end - timedelta(minutes=window_minutes)
    except OverflowError:
        log.warning("CHI window of %s minutes is out of range", window_minutes)
        return None
