"""Dashboard aggregates built on top of the CHI engine and the signal store."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.chi import NEUTRAL_CHI, CHIEngine
from pulse.config import FALLBACK_AREA_COLOR
from pulse.errors import StoreUnavailable
from pulse.models import ProductArea
from pulse.signals import SignalRecord, TopicKey
from pulse.store import SqlSignalStore
from pulse.utils import mean

log = logging.getLogger(__name__)

# Lower-cased word -> display form
_SPECIAL_CASES: dict[str, str] = {
    "tmobile": "T-Mobile", "t-mobile": "T-Mobile", "5g": "5G", "lte": "LTE",
    "wifi": "WiFi", "wi-fi": "Wi-Fi", "app": "App", "api": "API", "sms": "SMS",
    "mms": "MMS", "sim": "SIM", "esim": "eSIM", "voip": "VoIP", "vpn": "VPN",
    "tv": "TV", "hbo": "HBO", "netflix": "Netflix", "iphone": "iPhone",
    "ipad": "iPad", "android": "Android", "ios": "iOS", "ok": "OK",
}

SOURCE_NAMES: dict[str, str] = {
    "google-news": "Google News",
    "reddit": "Reddit",
    "downdetector": "DownDetector",
    "outage-report": "Outage.report",
    "tmobile-community": "T-Mobile Community",
    "customer-feedback": "Customer Feedback",
    "istheservicedown": "IsTheServiceDown",
}

FEED_FALLBACK_AREA = "Other"
FEED_FALLBACK_COLOR = "#E8258E"

POSITIVE_THRESHOLD = 0.15
NEGATIVE_THRESHOLD = -0.15

TIMELINE_RANGES: dict[str, tuple[int, int]] = {
    # range -> (bucket hours, bucket count)
    "24h": (1, 24),
    "7d": (24, 7),
    "30d": (24, 30),
}


def normalize_topic_text(topic: str) -> str:
    """Title-case a topic, keeping brand and acronym spellings."""
    words = []
    for word in topic.lower().split(" "):
        if word in _SPECIAL_CASES:
            words.append(_SPECIAL_CASES[word])
            continue
        for key, value in _SPECIAL_CASES.items():
            if word.startswith(key):
                words.append(word.replace(key, value, 1))
                break
        else:
            words.append(word[:1].upper() + word[1:])
    return " ".join(words)


def list_product_areas(session: Session) -> list[ProductArea]:
    return list(session.execute(select(ProductArea).order_by(ProductArea.name)).scalars().all())


def _safe_window(store: SqlSignalStore, start: datetime, **kwargs) -> list[SignalRecord]:
    try:
        return store.fetch_window(start, **kwargs)
    except StoreUnavailable as exc:
        log.warning("Dashboard query degraded to empty result: %s", exc)
        return []


def product_area_metrics(
    session: Session, engine: CHIEngine, store: SqlSignalStore, now: datetime, window_hours: int = 24,
) -> list[dict[str, Any]]:
    """CHI (neutral 50 when empty), trend and signal count for every product area."""
    window_minutes = window_hours * 60
    start = now - timedelta(hours=window_hours)
    metrics = []
    for area in list_product_areas(session):
        chi = engine.compute_chi(window_minutes, area.id)
        try:
            count = store.count_window(start, area.id)
        except StoreUnavailable as exc:
            log.warning("Signal count unavailable for %s: %s", area.name, exc)
            count = 0
        metrics.append({
            "id": area.id,
            "name": area.name,
            "color": area.color or FALLBACK_AREA_COLOR,
            "chi": chi if chi is not None else NEUTRAL_CHI,
            "trend": engine.compute_trend(window_minutes, area.id),
            "signal_count": count,
        })
    return metrics


def _group_issues(signals: list[SignalRecord], area_names: dict[int, str]) -> list[dict[str, Any]]:
    groups: dict[str, dict[str, Any]] = {}
    for s in signals:
        key = TopicKey.of(s.topic, None).topic
        issue = groups.get(key)
        if issue is None:
            issue = groups[key] = {
                "id": key,
                "topic": normalize_topic_text(s.topic.strip() or "Unknown"),
                "intensity": 0.0,
                "sentiments": [],
                "sources": set(),
                "product_area": area_names.get(s.product_area_id, "Other"),
            }
        issue["intensity"] += s.intensity
        issue["sentiments"].append(s.sentiment)
        issue["sources"].add(s.source)
    return [
        {
            "id": i["id"], "topic": i["topic"], "intensity": i["intensity"],
            "sentiment": mean(i["sentiments"]), "source_count": len(i["sources"]),
            "product_area": i["product_area"],
        }
        for i in groups.values()
    ]


def emerging_issues(
    session: Session, store: SqlSignalStore, now: datetime, limit: int = 10, window_hours: int = 24,
) -> list[dict[str, Any]]:
    """Topics in the window ranked by summed intensity."""
    area_names = {a.id: a.name for a in list_product_areas(session)}
    signals = _safe_window(store, now - timedelta(hours=window_hours))
    issues = _group_issues(signals, area_names)
    issues.sort(key=lambda i: i["intensity"], reverse=True)
    return issues[:limit]


def count_resolved_topics(signals: list[SignalRecord]) -> int:
    """Topics whose sentiment started negative and later rose by more than 0.2."""
    by_topic: dict[str, list[float]] = {}
    for s in sorted(signals, key=lambda s: s.detected_at):
        by_topic.setdefault(TopicKey.of(s.topic, None).topic, []).append(s.sentiment)
    resolved = 0
    for sentiments in by_topic.values():
        if len(sentiments) >= 2:
            first, last = sentiments[0], sentiments[-1]
            if first < 0 and last > first + 0.2:
                resolved += 1
    return resolved


def product_area_detail(
    session: Session,
    area: ProductArea,
    engine: CHIEngine,
    store: SqlSignalStore,
    now: datetime,
    window_hours: int = 24,
    top: int = 5,
) -> dict[str, Any]:
    window_minutes = window_hours * 60
    signals = _safe_window(store, now - timedelta(hours=window_hours), product_area_id=area.id)
    chi = engine.compute_chi(window_minutes, area.id)
    issues = _group_issues(signals, {area.id: area.name})
    issues.sort(key=lambda i: i["intensity"], reverse=True)
    return {
        "id": area.id,
        "name": area.name,
        "color": area.color or FALLBACK_AREA_COLOR,
        "chi": chi if chi is not None else NEUTRAL_CHI,
        "trend": engine.compute_trend(window_minutes, area.id),
        "signal_count": len(signals),
        "resolved_count": count_resolved_topics(signals),
        "sentiment_timeline": [
            {"timestamp": p["timestamp"], "sentiment": p["areas"].get(area.name, 0.0)}
            for p in _bucket_timeline(signals, {area.id: area.name}, now, 1, window_hours)
        ],
        "top_issues": [{k: v for k, v in i.items() if k != "product_area"} for i in issues[:top]],
    }


def _bucket_start(ts: datetime, bucket_hours: int) -> datetime:
    if bucket_hours >= 24:
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    return ts.replace(minute=0, second=0, microsecond=0)


def _bucket_timeline(
    signals: list[SignalRecord],
    area_names: dict[int, str],
    now: datetime,
    bucket_hours: int,
    bucket_count: int,
) -> list[dict[str, Any]]:
    buckets: dict[datetime, dict[str, list[float]]] = {}
    for s in signals:
        name = area_names.get(s.product_area_id)
        if name is None:
            continue
        start = _bucket_start(s.detected_at, bucket_hours)
        buckets.setdefault(start, {}).setdefault(name, []).append(s.sentiment)

    timeline = []
    for i in range(bucket_count - 1, -1, -1):
        start = _bucket_start(now - timedelta(hours=i * bucket_hours), bucket_hours)
        values = buckets.get(start, {})
        timeline.append({
            "timestamp": start.isoformat(),
            "areas": {name: mean(values.get(name, [])) for name in area_names.values()},
        })
    return timeline


def sentiment_timeline(
    session: Session, store: SqlSignalStore, now: datetime, range_key: str = "24h",
) -> list[dict[str, Any]]:
    """Mean sentiment per product area per bucket; empty buckets read 0."""
    bucket_hours, bucket_count = TIMELINE_RANGES.get(range_key, TIMELINE_RANGES["24h"])
    area_names = {a.id: a.name for a in list_product_areas(session)}
    signals = _safe_window(store, now - timedelta(hours=bucket_hours * bucket_count))
    return _bucket_timeline(signals, area_names, now, bucket_hours, bucket_count)


def sentiment_distribution(store: SqlSignalStore, now: datetime, window_hours: int | None = None) -> dict[str, int]:
    """Positive/neutral/negative counts over all signals (or the last *window_hours*)."""
    start = now - timedelta(hours=window_hours) if window_hours is not None else None
    out = {"positive": 0, "neutral": 0, "negative": 0}
    try:
        for page in store.iter_pages(start):
            for s in page:
                if s.sentiment > POSITIVE_THRESHOLD:
                    out["positive"] += 1
                elif s.sentiment < NEGATIVE_THRESHOLD:
                    out["negative"] += 1
                else:
                    out["neutral"] += 1
    except StoreUnavailable as exc:
        log.warning("Sentiment distribution unavailable: %s", exc)
    return out


def source_breakdown(store: SqlSignalStore) -> list[dict[str, Any]]:
    """Signal counts per source with display names, largest first."""
    counts: Counter[str] = Counter()
    try:
        for page in store.iter_pages():
            counts.update(s.source for s in page)
    except StoreUnavailable as exc:
        log.warning("Source breakdown unavailable: %s", exc)
    return [
        {"name": SOURCE_NAMES.get(source, source), "value": value}
        for source, value in counts.most_common()
    ]


def recent_signals(session: Session, store: SqlSignalStore, limit: int = 20) -> list[dict[str, Any]]:
    """Activity feed: the newest *limit* signals with display topic and area colour."""
    areas = {a.id: a for a in list_product_areas(session)}
    try:
        signals = store.fetch_recent(limit)
    except StoreUnavailable as exc:
        log.warning("Realtime signal feed unavailable: %s", exc)
        return []
    out = []
    for s in signals:
        area = areas.get(s.product_area_id)
        out.append({
            "id": s.id,
            "topic": normalize_topic_text(s.topic),
            "sentiment": s.sentiment,
            "source": s.source,
            "timestamp": s.detected_at.isoformat(),
            "product_area": area.name if area else FEED_FALLBACK_AREA,
            "color": (area.color if area else "") or FEED_FALLBACK_COLOR,
        })
    return out


def dashboard_metrics(
    session: Session, engine: CHIEngine, store: SqlSignalStore, now: datetime, window_hours: int = 24,
) -> dict[str, Any]:
    overall = engine.compute_chi(window_hours * 60)
    return {
        "overall_chi": overall if overall is not None else NEUTRAL_CHI,
        "product_areas": product_area_metrics(session, engine, store, now, window_hours),
        "emerging_issues": emerging_issues(session, store, now, 10, window_hours),
        "sentiment_timeline": sentiment_timeline(session, store, now, "24h"),
        "source_data": source_breakdown(store),
        "last_updated": now.isoformat(),
    }
