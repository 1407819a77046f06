"""Signal store: the query surface the engine reads signals through.

The engine only depends on the :class:`SignalStore` protocol. The shipped
implementation reads from the SQLAlchemy ``signals`` table, opening one short
session per query so a store instance can be shared across worker threads.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Iterator, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pulse.config import Settings, get_settings
from pulse.errors import StoreUnavailable
from pulse.models import Signal
from pulse.signals import SignalRecord

log = logging.getLogger(__name__)


class SignalStore(Protocol):
    def fetch_window(
        self, start: datetime, end: datetime | None = None, product_area_id: int | None = None,
    ) -> list[SignalRecord]: ...

    def fetch_by_ids(self, signal_ids: list[int]) -> list[SignalRecord]: ...

    def fetch_topic_since(
        self, topic: str, product_area_id: int | None, since: datetime,
    ) -> list[SignalRecord]: ...


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlSignalStore:
    """SignalStore backed by the ``signals`` table."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self._sleep = sleep

    def _run(self, label: str, stmt) -> list[Signal]:
        try:
            with self._session_factory() as session:
                return list(session.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            log.error("Signal store query failed (%s): %s", label, exc)
            raise StoreUnavailable(f"Signal store query failed ({label}): {exc}") from exc

    def fetch_window(
        self, start: datetime, end: datetime | None = None, product_area_id: int | None = None,
    ) -> list[SignalRecord]:
        """Signals with ``start <= detected_at`` (and ``< end`` when given), oldest first."""
        stmt = select(Signal).where(Signal.detected_at >= start)
        if end is not None:
            stmt = stmt.where(Signal.detected_at < end)
        if product_area_id is not None:
            stmt = stmt.where(Signal.product_area_id == product_area_id)
        stmt = stmt.order_by(Signal.detected_at.asc(), Signal.id.asc())
        return [SignalRecord.from_row(r) for r in self._run("window", stmt)]

    def fetch_by_ids(self, signal_ids: list[int]) -> list[SignalRecord]:
        if not signal_ids:
            return []
        stmt = select(Signal).where(Signal.id.in_(signal_ids)).order_by(Signal.id)
        return [SignalRecord.from_row(r) for r in self._run("by_ids", stmt)]

    def fetch_topic_since(
        self, topic: str, product_area_id: int | None, since: datetime,
    ) -> list[SignalRecord]:
        """Signals whose topic contains *topic* (case-insensitive), newest first."""
        stmt = select(Signal).where(
            Signal.topic.ilike(f"%{_escape_like(topic)}%", escape="\\"),
            Signal.detected_at >= since,
        )
        if product_area_id is not None:
            stmt = stmt.where(Signal.product_area_id == product_area_id)
        stmt = stmt.order_by(Signal.detected_at.desc(), Signal.id.desc())
        return [SignalRecord.from_row(r) for r in self._run("topic_since", stmt)]

    def fetch_recent(self, limit: int = 20) -> list[SignalRecord]:
        """The *limit* most recently detected signals, newest first."""
        stmt = select(Signal).order_by(Signal.detected_at.desc(), Signal.id.desc()).limit(limit)
        return [SignalRecord.from_row(r) for r in self._run("recent", stmt)]

    def count_window(self, start: datetime, product_area_id: int | None = None) -> int:
        stmt = select(func.count(Signal.id)).where(Signal.detected_at >= start)
        if product_area_id is not None:
            stmt = stmt.where(Signal.product_area_id == product_area_id)
        try:
            with self._session_factory() as session:
                return int(session.execute(stmt).scalar() or 0)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Signal store count failed: {exc}") from exc

    def iter_pages(self, start: datetime | None = None) -> Iterator[list[SignalRecord]]:
        """Yield the (optionally windowed) signal table in pages of ``page_size``.

        A page that keeps failing after ``page_retries`` attempts is logged and
        skipped; callers get a partial but usable aggregate.
        """
        count_stmt = select(func.count(Signal.id))
        if start is not None:
            count_stmt = count_stmt.where(Signal.detected_at >= start)
        try:
            with self._session_factory() as session:
                total = int(session.execute(count_stmt).scalar() or 0)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Signal store count failed: {exc}") from exc

        page_size = max(1, self.settings.page_size)
        retries = max(1, self.settings.page_retries)
        pages = (total + page_size - 1) // page_size
        for page in range(pages):
            stmt = select(Signal)
            if start is not None:
                stmt = stmt.where(Signal.detected_at >= start)
            stmt = stmt.order_by(Signal.id).offset(page * page_size).limit(page_size)
            rows = None
            for attempt in range(1, retries + 1):
                try:
                    rows = self._run(f"page {page}", stmt)
                    break
                except StoreUnavailable as exc:
                    log.warning("Page %d fetch failed (%d/%d): %s", page, attempt, retries, exc)
                    if attempt < retries:
                        self._sleep(self.settings.page_backoff_seconds * attempt)
            if rows is None:
                log.warning("Skipping page %d after %d attempts", page, retries)
                continue
            yield [SignalRecord.from_row(r) for r in rows]
