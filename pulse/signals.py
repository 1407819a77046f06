"""Signal value types and the ingestion policy.

Every signal passes through :func:`normalize_signal` before it is stored, so
the engine can rely on ``sentiment`` in [-1, 1] and ``intensity >= 0``
without re-checking. Rows read back from the store go through
:meth:`SignalRecord.from_row`, which applies the same intensity default for
legacy rows written before the policy existed.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pulse.errors import InvariantViolation
from pulse.utils import as_utc

log = logging.getLogger(__name__)

DEFAULT_INTENSITY = 1.0


def normalize_topic(topic: str | None) -> str:
    return (topic or "").strip().lower()


@dataclass(frozen=True)
class TopicKey:
    """Grouping key for per-topic aggregation."""
    topic: str
    product_area_id: int | None

    @classmethod
    def of(cls, topic: str | None, product_area_id: int | None) -> TopicKey:
        return cls(normalize_topic(topic) or "unknown", product_area_id)


@dataclass(frozen=True)
class SignalRecord:
    """Immutable engine-side view of a stored signal."""
    id: int | None
    topic: str
    sentiment: float
    intensity: float
    source: str
    product_area_id: int | None
    detected_at: datetime

    @property
    def key(self) -> TopicKey:
        return TopicKey.of(self.topic, self.product_area_id)

    @classmethod
    def from_row(cls, row: Any) -> SignalRecord:
        intensity = row.intensity
        if intensity is None or intensity < 0:
            intensity = DEFAULT_INTENSITY if intensity is None else 0.0
        sentiment = row.sentiment or 0.0
        return cls(
            id=row.id,
            topic=row.topic or "",
            sentiment=max(-1.0, min(1.0, float(sentiment))),
            intensity=float(intensity),
            source=row.source or "",
            product_area_id=row.product_area_id,
            detected_at=as_utc(row.detected_at),
        )


def _finite(value: Any) -> float | None:
    if value is None:
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def normalize_signal(data: dict[str, Any], *, strict: bool = False) -> dict[str, Any]:
    """Apply the ingestion policy to a raw signal dict.

    - ``sentiment`` missing or non-numeric becomes 0.0; out-of-range values
      are clamped to [-1, 1].
    - ``intensity`` missing becomes 1; negative values become 0.
    - ``topic`` and ``source`` are stripped.

    With ``strict=True`` out-of-domain values raise :class:`InvariantViolation`
    instead of being repaired.
    """
    out = dict(data)
    sentiment = _finite(data.get("sentiment"))
    if sentiment is None:
        if strict and data.get("sentiment") is not None:
            raise InvariantViolation(f"Non-numeric sentiment: {data.get('sentiment')!r}")
        sentiment = 0.0
    if not -1.0 <= sentiment <= 1.0:
        if strict:
            raise InvariantViolation(f"Sentiment {sentiment} outside [-1, 1]")
        log.warning("Clamping sentiment %s for topic %r", sentiment, data.get("topic"))
        sentiment = max(-1.0, min(1.0, sentiment))
    out["sentiment"] = sentiment

    intensity = _finite(data.get("intensity"))
    if intensity is None:
        intensity = DEFAULT_INTENSITY
    elif intensity < 0:
        if strict:
            raise InvariantViolation(f"Negative intensity {intensity}")
        log.warning("Negative intensity %s for topic %r, using 0", intensity, data.get("topic"))
        intensity = 0.0
    out["intensity"] = intensity

    out["topic"] = str(data.get("topic") or "").strip()
    out["source"] = str(data.get("source") or "").strip()
    return out


def weighted_sentiment(signals: list[SignalRecord]) -> float | None:
    """Intensity-weighted mean sentiment, None when there is no weight."""
    total_intensity = sum(s.intensity for s in signals)
    if not signals or total_intensity == 0:
        return None
    return sum(s.sentiment * s.intensity for s in signals) / total_intensity
