"""Shared fixtures: a fixed clock, an in-memory signal store and a file-backed SQLite database."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pulse.config import Settings
from pulse.errors import StoreUnavailable
from pulse.models import Base
from pulse.signals import SignalRecord
from pulse.store import SqlSignalStore

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


class FakeStore:
    """In-memory SignalStore with call counting and an on/off failure switch."""

    def __init__(self, signals: list[SignalRecord] | None = None):
        self.signals = list(signals or [])
        self.calls = 0
        self.fail = False

    def _check(self) -> None:
        self.calls += 1
        if self.fail:
            raise StoreUnavailable("store down")

    def fetch_window(self, start, end=None, product_area_id=None):
        self._check()
        out = [
            s for s in self.signals
            if s.detected_at >= start
            and (end is None or s.detected_at < end)
            and (product_area_id is None or s.product_area_id == product_area_id)
        ]
        return sorted(out, key=lambda s: s.detected_at)

    def fetch_by_ids(self, signal_ids):
        self._check()
        wanted = set(signal_ids)
        return [s for s in self.signals if s.id in wanted]

    def fetch_topic_since(self, topic, product_area_id, since):
        self._check()
        out = [
            s for s in self.signals
            if topic.casefold() in s.topic.casefold()
            and s.detected_at >= since
            and (product_area_id is None or s.product_area_id == product_area_id)
        ]
        return sorted(out, key=lambda s: s.detected_at, reverse=True)


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def make_signal():
    """Factory for SignalRecord values relative to NOW."""
    counter = {"id": 0}

    def _make(
        topic: str = "Network outage",
        sentiment: float = -0.5,
        intensity: float = 1.0,
        minutes_ago: float = 10,
        product_area_id: int | None = 1,
        source: str = "reddit",
        signal_id: int | None = None,
    ) -> SignalRecord:
        counter["id"] += 1
        return SignalRecord(
            id=signal_id if signal_id is not None else counter["id"],
            topic=topic,
            sentiment=sentiment,
            intensity=intensity,
            source=source,
            product_area_id=product_area_id,
            detected_at=NOW - timedelta(minutes=minutes_ago),
        )

    return _make


@pytest.fixture()
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        database_path=tmp_path / "pulse-test.db",
        page_size=2,
        page_backoff_seconds=0.0,
        monitor_workers=2,
        cron_secret="",
    )


@pytest.fixture()
def engine(settings):
    """File-backed SQLite so worker threads and the store each get their own connection."""
    eng = create_engine(
        f"sqlite:///{settings.database_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def sql_store(session_factory, settings) -> SqlSignalStore:
    return SqlSignalStore(session_factory, settings, sleep=lambda _: None)
