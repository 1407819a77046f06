"""Close-the-loop monitoring: did a shipped fix actually move customer sentiment?

Lifecycle per opportunity::

    (none) --marked done, evidence non-empty--> monitoring
    monitoring --pass--> recovered | monitoring | not-recovered

When a card is marked done, a baseline (mean sentiment, summed intensity and
count of its evidence signals) is captured once. Each monitor pass then
re-reads the signals matching the card's topic and product area since
``marked_done_at`` and compares them with that baseline. A card counts as
recovered when sentiment rose by at least 0.2 or intensity fell by at least
50%. Without recovery it stays ``monitoring`` for three days and then becomes
``not-recovered``.

The periodic pass only selects cards marked done within the last 72 hours, so
a card simply stops being re-evaluated once it ages out; a manual
re-evaluation is still possible through :func:`evaluate_opportunity`.
"""
from __future__ import annotations

import logging
import math
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pulse.config import Settings, get_settings
from pulse.errors import StoreUnavailable
from pulse.models import OpportunityCard
from pulse.signals import SignalRecord
from pulse.store import SignalStore
from pulse.utils import as_utc, json_parse, mean, utc_now

log = logging.getLogger(__name__)

SENTIMENT_RECOVERY_DELTA = 0.2
INTENSITY_RECOVERY_PERCENT = 50.0
MONITORING_DAYS = 3
MONITOR_WINDOW_HOURS = 72
TIMELINE_LIMIT = 10


class RecoveryStatus(str, Enum):
    MONITORING = "monitoring"
    RECOVERED = "recovered"
    NOT_RECOVERED = "not-recovered"


class RecoveryMetrics(BaseModel):
    before_sentiment: float
    before_intensity: float
    signal_count_before: int
    after_sentiment: float | None = None
    sentiment_change: float | None = None
    after_intensity: float | None = None
    intensity_change: float | None = None
    signal_count_after: int | None = None


class TimelineSample(BaseModel):
    timestamp: datetime
    sentiment: float
    intensity: float


class CloseLoopData(BaseModel):
    status: RecoveryStatus
    monitored_at: datetime
    recovery_metrics: RecoveryMetrics
    timeline: list[TimelineSample] = []


class CloseLoopPassResult(BaseModel):
    monitored: int
    total: int
    status_breakdown: dict[str, int]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def days_since_done(marked_done_at: datetime, now: datetime) -> int:
    """Whole days elapsed since the card was marked done (floored)."""
    elapsed = as_utc(now) - as_utc(marked_done_at)
    return math.floor(elapsed.total_seconds() / 86400)


def hours_remaining(marked_done_at: datetime, now: datetime, window_hours: int = MONITOR_WINDOW_HOURS) -> int:
    elapsed_hours = (as_utc(now) - as_utc(marked_done_at)).total_seconds() / 3600
    return math.floor(max(0.0, window_hours - elapsed_hours))


def intensity_drop_percent(baseline_intensity: float, current_intensity: float) -> float:
    if baseline_intensity <= 0:
        return 0.0
    return (baseline_intensity - current_intensity) / baseline_intensity * 100


def classify_recovery(
    now: datetime,
    marked_done_at: datetime,
    baseline_sentiment: float,
    current_sentiment: float,
    baseline_intensity: float,
    current_intensity: float,
) -> RecoveryStatus:
    sentiment_change = current_sentiment - baseline_sentiment
    if (sentiment_change >= SENTIMENT_RECOVERY_DELTA
            or intensity_drop_percent(baseline_intensity, current_intensity) >= INTENSITY_RECOVERY_PERCENT):
        return RecoveryStatus.RECOVERED
    if days_since_done(marked_done_at, now) <= MONITORING_DAYS:
        return RecoveryStatus.MONITORING
    return RecoveryStatus.NOT_RECOVERED


def extract_topic_from_title(title: str) -> str:
    """``"[Topic] ..."`` -> Topic, ``"Topic: ..."`` -> Topic, else the first three words."""
    m = re.search(r"\[(.*?)\]", title)
    if m:
        return m.group(1).strip()
    head, sep, _ = title.partition(":")
    if sep and head.strip():
        return head.strip()
    return " ".join(title.split()[:3])


def opportunity_topic(card: OpportunityCard) -> str:
    return (card.topic or "").strip() or extract_topic_from_title(card.title or "")


def load_close_loop(card: OpportunityCard) -> CloseLoopData | None:
    raw = json_parse(card.close_loop_json, None)
    if not raw:
        return None
    try:
        return CloseLoopData.model_validate(raw)
    except ValidationError as exc:
        log.warning("Discarding malformed close-loop data on opportunity %s: %s", card.id, exc)
        return None


def store_close_loop(card: OpportunityCard, data: CloseLoopData) -> None:
    card.close_loop_json = data.model_dump_json()


# ---------------------------------------------------------------------------
# Baseline capture: (none) -> monitoring
# ---------------------------------------------------------------------------


def capture_baseline(
    card: OpportunityCard, evidence: list[SignalRecord], now: datetime,
) -> CloseLoopData | None:
    """Record the baseline on *card* and start monitoring. Caller must commit.

    Does nothing when a baseline already exists or the evidence set is empty.
    """
    if card.marked_done_at is not None:
        return load_close_loop(card)
    if not evidence:
        log.warning("No evidence signals for opportunity %s, cannot capture baseline", card.id)
        return None

    baseline_sentiment = mean([s.sentiment for s in evidence])
    baseline_intensity = sum(s.intensity for s in evidence)

    card.marked_done_at = now
    card.baseline_sentiment = baseline_sentiment
    card.baseline_intensity = baseline_intensity
    card.baseline_signal_count = len(evidence)

    data = CloseLoopData(
        status=RecoveryStatus.MONITORING,
        monitored_at=now,
        recovery_metrics=RecoveryMetrics(
            before_sentiment=baseline_sentiment,
            before_intensity=baseline_intensity,
            signal_count_before=len(evidence),
        ),
    )
    store_close_loop(card, data)
    log.info(
        "Baseline captured for opportunity %s: sentiment=%.2f intensity=%s signals=%d",
        card.id, baseline_sentiment, baseline_intensity, len(evidence),
    )
    return data


# ---------------------------------------------------------------------------
# Re-evaluation: monitoring -> recovered | monitoring | not-recovered
# ---------------------------------------------------------------------------


def evaluate(
    card: OpportunityCard,
    recent: list[SignalRecord],
    now: datetime,
    timeline_limit: int = TIMELINE_LIMIT,
) -> CloseLoopData:
    """Build the close-loop document for *card* from *recent* signals (newest first)."""
    if card.marked_done_at is None or card.baseline_sentiment is None:
        raise ValueError(f"Opportunity {card.id} has no baseline")

    baseline_sentiment = card.baseline_sentiment
    baseline_intensity = card.baseline_intensity or 0.0

    if recent:
        current_sentiment = mean([s.sentiment for s in recent])
        current_intensity = sum(s.intensity for s in recent)
    else:
        current_sentiment = baseline_sentiment
        current_intensity = 0.0

    status = classify_recovery(
        now, card.marked_done_at, baseline_sentiment, current_sentiment,
        baseline_intensity, current_intensity,
    )
    previous = load_close_loop(card)
    if previous is not None and previous.status is RecoveryStatus.RECOVERED:
        status = RecoveryStatus.RECOVERED

    return CloseLoopData(
        status=status,
        monitored_at=now,
        recovery_metrics=RecoveryMetrics(
            before_sentiment=baseline_sentiment,
            after_sentiment=current_sentiment,
            sentiment_change=current_sentiment - baseline_sentiment,
            before_intensity=baseline_intensity,
            after_intensity=current_intensity,
            intensity_change=baseline_intensity - current_intensity,
            signal_count_before=card.baseline_signal_count or 0,
            signal_count_after=len(recent),
        ),
        timeline=[
            TimelineSample(timestamp=s.detected_at, sentiment=s.sentiment, intensity=s.intensity)
            for s in recent[:timeline_limit]
        ],
    )


def evaluate_opportunity(
    card: OpportunityCard,
    store: SignalStore,
    now: datetime | None = None,
    timeline_limit: int = TIMELINE_LIMIT,
) -> CloseLoopData:
    """Fetch matching signals, re-evaluate and overwrite the card's close-loop data.

    Raises :class:`StoreUnavailable` if the signals cannot be read and
    ValueError when the card has no baseline or no topic to match; the card is
    left untouched in both cases. Caller must commit.
    """
    now = now or utc_now()
    if card.marked_done_at is None:
        raise ValueError(f"Opportunity {card.id} has no baseline")
    topic = opportunity_topic(card)
    if not topic:
        raise ValueError(f"Opportunity {card.id} has no topic")
    recent = store.fetch_topic_since(topic, card.product_area_id, as_utc(card.marked_done_at))
    data = evaluate(card, recent, now, timeline_limit)
    store_close_loop(card, data)
    return data


# ---------------------------------------------------------------------------
# Periodic pass
# ---------------------------------------------------------------------------


def due_opportunity_ids(session: Session, now: datetime, window_hours: int = MONITOR_WINDOW_HOURS) -> list[int]:
    """Done cards with a baseline captured within the monitoring window, newest first."""
    cutoff = as_utc(now) - timedelta(hours=window_hours)
    stmt = (
        select(OpportunityCard.id)
        .where(
            OpportunityCard.status == "done",
            OpportunityCard.marked_done_at.is_not(None),
            OpportunityCard.marked_done_at >= cutoff,
        )
        .order_by(OpportunityCard.marked_done_at.desc())
    )
    return list(session.execute(stmt).scalars().all())


def _monitor_one(
    session_factory: sessionmaker[Session],
    store: SignalStore,
    card_id: int,
    now: datetime,
    timeline_limit: int,
) -> RecoveryStatus | None:
    with session_factory() as session:
        card = session.get(OpportunityCard, card_id)
        if card is None:
            return None
        try:
            data = evaluate_opportunity(card, store, now, timeline_limit)
            session.commit()
        except Exception:
            session.rollback()
            raise
        log.info(
            "Processed opportunity %s: %s (sentiment: %.2f -> %.2f)",
            card_id, data.status.value, data.recovery_metrics.before_sentiment,
            data.recovery_metrics.after_sentiment,
        )
        return data.status


def run_close_loop_pass(
    session_factory: sessionmaker[Session],
    store: SignalStore,
    now: datetime | None = None,
    max_workers: int | None = None,
    stop_event: threading.Event | None = None,
    settings: Settings | None = None,
) -> CloseLoopPassResult:
    """Re-evaluate every card in the monitoring window.

    Cards are processed independently on a bounded thread pool, each in its
    own session and transaction. A card whose signals cannot be read is
    skipped and logged; the rest of the batch continues. Setting
    *stop_event* stops the pass before the next card starts.
    """
    settings = settings or get_settings()
    now = now or utc_now()
    workers = max(1, max_workers or settings.monitor_workers)

    with session_factory() as session:
        card_ids = due_opportunity_ids(session, now, settings.monitor_window_hours)

    breakdown = {s.value: 0 for s in RecoveryStatus}
    if not card_ids:
        log.info("No opportunities to monitor")
        return CloseLoopPassResult(monitored=0, total=0, status_breakdown=breakdown)

    log.info("Found %d opportunities to monitor", len(card_ids))

    def task(card_id: int) -> RecoveryStatus | None:
        if stop_event is not None and stop_event.is_set():
            return None
        return _monitor_one(session_factory, store, card_id, now, settings.timeline_limit)

    monitored = 0
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="closeloop") as pool:
        futures = {pool.submit(task, card_id): card_id for card_id in card_ids}
        for future in as_completed(futures):
            card_id = futures[future]
            try:
                status = future.result()
            except StoreUnavailable as exc:
                log.warning("Skipping opportunity %s, signal store unavailable: %s", card_id, exc)
                continue
            except ValueError as exc:
                log.warning("Skipping opportunity %s: %s", card_id, exc)
                continue
            except Exception as exc:
                log.error("Close-loop evaluation failed for opportunity %s: %s", card_id, exc)
                continue
            if status is None:
                continue
            monitored += 1
            breakdown[status.value] += 1

    return CloseLoopPassResult(monitored=monitored, total=len(card_ids), status_breakdown=breakdown)


def close_loop_summary(card: OpportunityCard, now: datetime | None = None) -> dict[str, Any] | None:
    """Serializable close-loop view with the time left in the monitoring window."""
    data = load_close_loop(card)
    if data is None:
        return None
    out = data.model_dump(mode="json")
    if card.marked_done_at is not None:
        out["hours_remaining"] = hours_remaining(card.marked_done_at, now or utc_now())
    return out
