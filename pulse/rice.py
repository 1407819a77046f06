"""Severity tiers and RICE prioritisation for opportunities.

RICE = (Reach x Impact x Confidence) / Effort

- **Reach**: summed intensity of the signals backing the opportunity.
- **Impact**: 1-10, a per-product-area base raised by sentiment severity.
- **Confidence**: 0-1, supplied by the PM (default 0.7).
- **Effort**: supplied by the PM (default 5); zero effort scores 0.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable

from pulse.config import DEFAULT_IMPACT_WEIGHTS
from pulse.signals import SignalRecord
from pulse.utils import mean, round_half_up

DEFAULT_EFFORT = 5.0
DEFAULT_CONFIDENCE = 0.7
DEFAULT_BASE_IMPACT = 5
MAX_IMPACT = 10


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def classify_severity(avg_sentiment: float, total_intensity: float) -> Severity:
    """Map average sentiment and total intensity to a severity tier (first match wins)."""
    if avg_sentiment <= -0.7 and total_intensity >= 100:
        return Severity.CRITICAL
    if (avg_sentiment <= -0.5 and total_intensity >= 75) or (avg_sentiment <= -0.7 and total_intensity >= 50):
        return Severity.HIGH
    if (avg_sentiment <= -0.3 and total_intensity >= 30) or (avg_sentiment <= -0.5 and total_intensity >= 20):
        return Severity.MEDIUM
    return Severity.LOW


def compute_rice(reach: float, impact: float, confidence: float, effort: float) -> float:
    if effort == 0:
        return 0.0
    return round_half_up((reach * impact * confidence) / effort, 1)


def compute_reach(signals: Iterable[SignalRecord]) -> float:
    return sum(s.intensity for s in signals)


def compute_impact(
    product_area_name: str, avg_sentiment: float, weights: dict[str, int] | None = None,
) -> int:
    base = (weights or DEFAULT_IMPACT_WEIGHTS).get(product_area_name, DEFAULT_BASE_IMPACT)
    if avg_sentiment <= -0.7:
        return min(MAX_IMPACT, base + 2)
    if avg_sentiment <= -0.4:
        return min(MAX_IMPACT, base + 1)
    return min(MAX_IMPACT, base)


@dataclass
class OpportunityClassification:
    severity: Severity
    reach: float
    impact: int
    confidence: float
    effort: float
    rice_score: float
    avg_sentiment: float
    signal_count: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


def classify_opportunity(
    signals: list[SignalRecord],
    product_area_name: str,
    effort: float = DEFAULT_EFFORT,
    confidence: float = DEFAULT_CONFIDENCE,
    weights: dict[str, int] | None = None,
) -> OpportunityClassification:
    """Severity, reach, impact and RICE score for the signals backing an opportunity.

    An empty signal set yields reach 0, a neutral sentiment and a RICE of 0.
    """
    reach = compute_reach(signals)
    avg_sentiment = mean([s.sentiment for s in signals])
    impact = compute_impact(product_area_name, avg_sentiment, weights)
    return OpportunityClassification(
        severity=classify_severity(avg_sentiment, reach),
        reach=reach,
        impact=impact,
        confidence=confidence,
        effort=effort,
        rice_score=compute_rice(reach, impact, confidence, effort),
        avg_sentiment=avg_sentiment,
        signal_count=len(signals),
    )
