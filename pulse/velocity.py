"""Early-warning velocity detection.

The lookback (24h by default) is split at its midpoint. For every
``(topic, product area)`` group, the mean intensity of the recent half is
compared with the earlier half:

- both halves populated: change > 2 is *growing*, < -2 *declining*, else *stable*
- only the recent half: a new issue, *growing*
- only the earlier half: the issue went quiet, *declining*
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable

from pulse.config import FALLBACK_AREA_COLOR
from pulse.errors import StoreUnavailable
from pulse.models import ProductArea
from pulse.signals import SignalRecord, TopicKey
from pulse.store import SignalStore
from pulse.utils import mean

log = logging.getLogger(__name__)

VELOCITY_THRESHOLD = 2.0


class Trajectory(str, Enum):
    GROWING = "growing"
    STABLE = "stable"
    DECLINING = "declining"


@dataclass
class VelocityBucket:
    key: TopicKey
    display_topic: str
    earlier: list[float] = field(default_factory=list)
    recent: list[float] = field(default_factory=list)

    @property
    def velocity_change(self) -> float:
        """Change in mean intensity between halves; a brand-new issue counts its full mean."""
        if self.earlier and self.recent:
            return mean(self.recent) - mean(self.earlier)
        if self.recent:
            return mean(self.recent)
        if self.earlier:
            return -mean(self.earlier)
        return 0.0


def group_signals(
    signals: Iterable[SignalRecord], midpoint: datetime,
) -> dict[TopicKey, VelocityBucket]:
    """Partition intensities per topic key into before/after *midpoint*."""
    buckets: dict[TopicKey, VelocityBucket] = {}
    for signal in signals:
        key = signal.key
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = VelocityBucket(key=key, display_topic=signal.topic.strip() or key.topic)
        if signal.detected_at < midpoint:
            bucket.earlier.append(signal.intensity)
        else:
            bucket.recent.append(signal.intensity)
    return buckets


def classify_trajectory(earlier: list[float], recent: list[float]) -> Trajectory | None:
    """Classify one bucket; None when both halves are empty."""
    if earlier and recent:
        change = mean(recent) - mean(earlier)
        if change > VELOCITY_THRESHOLD:
            return Trajectory.GROWING
        if change < -VELOCITY_THRESHOLD:
            return Trajectory.DECLINING
        return Trajectory.STABLE
    if recent:
        return Trajectory.GROWING
    if earlier:
        return Trajectory.DECLINING
    return None


def _fetch_lookback(store: SignalStore, now: datetime, lookback_hours: float) -> list[SignalRecord]:
    return store.fetch_window(now - timedelta(hours=lookback_hours))


def velocity_by_product_area(
    store: SignalStore,
    areas: list[ProductArea],
    now: datetime,
    lookback_hours: float = 24,
) -> list[dict[str, Any]]:
    """Growing/stable/declining topic counts per product area.

    Every area in *areas* is listed, with zero counts when it has no signals.
    Signals without a product area are not attributed anywhere.
    """
    counts: dict[int, dict[str, int]] = {
        a.id: {t.value: 0 for t in Trajectory} for a in areas
    }
    try:
        signals = _fetch_lookback(store, now, lookback_hours)
    except StoreUnavailable as exc:
        log.warning("Velocity unavailable: %s", exc)
        signals = []

    midpoint = now - timedelta(hours=lookback_hours / 2)
    for key, bucket in group_signals(signals, midpoint).items():
        if key.product_area_id is None or key.product_area_id not in counts:
            continue
        trajectory = classify_trajectory(bucket.earlier, bucket.recent)
        if trajectory is not None:
            counts[key.product_area_id][trajectory.value] += 1

    return [
        {
            "product_area_id": a.id,
            "product_area_name": a.name,
            **counts[a.id],
            "color": a.color or FALLBACK_AREA_COLOR,
        }
        for a in areas
    ]


def velocity_severity(velocity_per_hour: float) -> str:
    if velocity_per_hour > 50:
        return "critical"
    if velocity_per_hour > 25:
        return "high"
    if velocity_per_hour > 10:
        return "medium"
    return "low"


@dataclass
class EarlyWarning:
    topic: str
    product_area_id: int | None
    product_area_name: str
    velocity_per_hour: float
    current_intensity: float
    projected_intensity: float
    time_to_spread_hours: float | None
    affected_users: int
    severity: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "product_area_id": self.product_area_id,
            "product_area_name": self.product_area_name,
            "velocity_per_hour": self.velocity_per_hour,
            "current_intensity": self.current_intensity,
            "projected_intensity": self.projected_intensity,
            "time_to_spread_hours": self.time_to_spread_hours,
            "affected_users": self.affected_users,
            "severity": self.severity,
        }


def project_warning(
    bucket: VelocityBucket,
    half_window_hours: float,
    horizon_hours: float,
    critical_threshold: float,
    users_per_intensity: int,
) -> tuple[float, float, float, float | None, int]:
    """Return ``(velocity/h, current, projected, hours to critical, affected users)`` for a bucket."""
    velocity_per_hour = bucket.velocity_change / half_window_hours if half_window_hours > 0 else 0.0
    current = sum(bucket.recent)
    projected = current + velocity_per_hour * horizon_hours
    if velocity_per_hour > 0:
        time_to_spread = max(0.0, (critical_threshold - current) / velocity_per_hour)
    else:
        time_to_spread = None
    affected = int(math.floor(max(0.0, projected) * users_per_intensity + 0.5))
    return velocity_per_hour, current, projected, time_to_spread, affected


def early_warnings(
    store: SignalStore,
    areas: list[ProductArea],
    now: datetime,
    lookback_hours: float = 24,
    horizon_hours: float = 6,
    critical_threshold: float = 100.0,
    users_per_intensity: int = 10,
    limit: int = 10,
) -> list[EarlyWarning]:
    """Per-topic projections for growing issues, fastest first."""
    names = {a.id: a.name for a in areas}
    try:
        signals = _fetch_lookback(store, now, lookback_hours)
    except StoreUnavailable as exc:
        log.warning("Early warnings unavailable: %s", exc)
        return []

    half = lookback_hours / 2
    warnings: list[EarlyWarning] = []
    for key, bucket in group_signals(signals, now - timedelta(hours=half)).items():
        if classify_trajectory(bucket.earlier, bucket.recent) is not Trajectory.GROWING:
            continue
        velocity, current, projected, time_to_spread, affected = project_warning(
            bucket, half, horizon_hours, critical_threshold, users_per_intensity,
        )
        warnings.append(EarlyWarning(
            topic=bucket.display_topic,
            product_area_id=key.product_area_id,
            product_area_name=names.get(key.product_area_id, "Other"),
            velocity_per_hour=round(velocity, 2),
            current_intensity=current,
            projected_intensity=round(projected, 1),
            time_to_spread_hours=round(time_to_spread, 1) if time_to_spread is not None else None,
            affected_users=affected,
            severity=velocity_severity(velocity),
        ))
    warnings.sort(key=lambda w: w.velocity_per_hour, reverse=True)
    return warnings[:limit]
