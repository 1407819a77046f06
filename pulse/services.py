"""Shared business logic for the Pulse API, MCP server and CLI."""
from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from pulse import closeloop, velocity
from pulse.chi import CHIEngine, TTLCache
from pulse.config import Settings, get_settings
from pulse.models import OpportunityCard, ProductArea, Signal
from pulse.rice import DEFAULT_CONFIDENCE, DEFAULT_EFFORT, classify_opportunity, compute_rice
from pulse.signals import SignalRecord, normalize_signal
from pulse.store import SqlSignalStore
from pulse.utils import as_utc, json_parse, utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

VALID_STATUSES = ("new", "in-progress", "done")

UPDATABLE_FIELDS = (
    "title", "description", "topic", "status", "severity", "effort", "confidence",
)

OPPORTUNITY_FIELDS = (
    "id", "title", "description", "topic", "product_area_id", "status", "severity",
    "reach", "impact", "confidence", "effort",
    "baseline_sentiment", "baseline_intensity", "baseline_signal_count",
)


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


@dataclass
class PulseContext:
    """One store + one CHI cache per host process."""
    settings: Settings
    session_factory: sessionmaker[Session]
    store: SqlSignalStore
    chi: CHIEngine


def build_context(session_factory: sessionmaker[Session], settings: Settings | None = None) -> PulseContext:
    settings = settings or get_settings()
    store = SqlSignalStore(session_factory, settings)
    return PulseContext(
        settings=settings,
        session_factory=session_factory,
        store=store,
        chi=CHIEngine(store, TTLCache(settings.chi_cache_ttl_seconds)),
    )


# ---------------------------------------------------------------------------
# Engine operations
# ---------------------------------------------------------------------------


def get_chi(ctx: PulseContext, window_minutes: int = 60, product_area_id: int | None = None,
            use_cache: bool = True) -> dict[str, int | None]:
    return {"score": ctx.chi.compute_chi(window_minutes, product_area_id, use_cache)}


def get_trend(ctx: PulseContext, window_minutes: int = 60, product_area_id: int | None = None) -> dict[str, int]:
    return {"trend": ctx.chi.compute_trend(window_minutes, product_area_id)}


def get_velocity(ctx: PulseContext, session: Session, lookback_hours: float = 24,
                 now: datetime | None = None) -> list[dict[str, Any]]:
    areas = list(session.execute(select(ProductArea).order_by(ProductArea.name)).scalars().all())
    return velocity.velocity_by_product_area(ctx.store, areas, now or utc_now(), lookback_hours)


def get_early_warnings(ctx: PulseContext, session: Session, lookback_hours: float = 24,
                       horizon_hours: float = 6, limit: int = 10,
                       now: datetime | None = None) -> list[dict[str, Any]]:
    areas = list(session.execute(select(ProductArea)).scalars().all())
    warnings = velocity.early_warnings(
        ctx.store, areas, now or utc_now(), lookback_hours, horizon_hours,
        ctx.settings.critical_threshold, ctx.settings.users_per_intensity, limit,
    )
    return [w.to_dict() for w in warnings]


def run_close_loop(ctx: PulseContext, now: datetime | None = None) -> dict[str, Any]:
    result = closeloop.run_close_loop_pass(ctx.session_factory, ctx.store, now=now, settings=ctx.settings)
    return result.model_dump()


def classify_signals(
    ctx: PulseContext,
    signals: list[SignalRecord],
    product_area_name: str,
    effort: float = DEFAULT_EFFORT,
    confidence: float = DEFAULT_CONFIDENCE,
) -> dict[str, Any]:
    result = classify_opportunity(signals, product_area_name, effort, confidence, ctx.settings.impact_weights)
    return result.to_dict()


def records_from_payload(items: list[dict[str, Any]], now: datetime | None = None) -> list[SignalRecord]:
    """Turn inline signal dicts into records via the ingestion policy."""
    now = now or utc_now()
    out = []
    for item in items:
        data = normalize_signal(item)
        detected = data.get("detected_at")
        if isinstance(detected, str):
            detected = datetime.fromisoformat(detected.replace("Z", "+00:00"))
        out.append(SignalRecord(
            id=data.get("id"), topic=data["topic"], sentiment=data["sentiment"],
            intensity=data["intensity"], source=data["source"],
            product_area_id=data.get("product_area_id"),
            detected_at=as_utc(detected) if isinstance(detected, datetime) else now,
        ))
    return out


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def evidence_ids(card: OpportunityCard) -> list[int]:
    ids = json_parse(card.derived_from_signal_ids_json, [])
    return [int(i) for i in ids if isinstance(i, (int, str)) and str(i).isdigit()]


def opportunity_summary(card: OpportunityCard, now: datetime | None = None) -> dict[str, Any]:
    out = {f: getattr(card, f) for f in OPPORTUNITY_FIELDS}
    out["product_area"] = card.product_area.name if card.product_area else None
    out["rice_score"] = compute_rice(card.reach or 0, card.impact or 0, card.confidence or 0, card.effort or 0)
    out["derived_from_signal_ids"] = evidence_ids(card)
    out["marked_done_at"] = as_utc(card.marked_done_at).isoformat() if card.marked_done_at else None
    out["close_loop"] = closeloop.close_loop_summary(card, now)
    return out


def product_area_dict(area: ProductArea) -> dict[str, Any]:
    return {"id": area.id, "name": area.name, "color": area.color, "description": area.description}


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def get_product_area(session: Session, *, area_id: int | None = None, name: str | None = None) -> ProductArea | None:
    if area_id is not None:
        return session.get(ProductArea, area_id)
    if name:
        return session.execute(select(ProductArea).where(ProductArea.name == name)).scalars().first()
    return None


def ingest_signals(session: Session, items: list[dict[str, Any]], now: datetime | None = None) -> list[Signal]:
    """Store raw signals after the ingestion policy. Caller must commit."""
    now = now or utc_now()
    area_ids = {a.name: a.id for a in session.execute(select(ProductArea)).scalars().all()}
    rows = []
    for item in items:
        data = normalize_signal(item)
        area_id = data.get("product_area_id")
        if area_id is None and data.get("product_area"):
            area_id = area_ids.get(str(data["product_area"]))
        detected = data.get("detected_at") or now
        if isinstance(detected, str):
            detected = datetime.fromisoformat(detected.replace("Z", "+00:00"))
        row = Signal(
            topic=data["topic"], sentiment=data["sentiment"], intensity=data["intensity"],
            source=data["source"], url=str(data.get("url") or ""),
            product_area_id=area_id, detected_at=as_utc(detected),
            meta_json=json.dumps(data.get("meta") or {}),
        )
        session.add(row)
        rows.append(row)
    session.flush()
    return rows


def create_opportunity(ctx: PulseContext, session: Session, data: dict[str, Any]) -> OpportunityCard:
    """Create a card and derive reach/impact/severity from its evidence. Caller must commit."""
    ids = [int(i) for i in data.get("derived_from_signal_ids") or []]
    area = get_product_area(session, area_id=data.get("product_area_id"))
    evidence = ctx.store.fetch_by_ids(ids)
    effort = data.get("effort") if data.get("effort") is not None else DEFAULT_EFFORT
    confidence = data.get("confidence") if data.get("confidence") is not None else DEFAULT_CONFIDENCE
    scored = classify_opportunity(
        evidence, area.name if area else "General", effort, confidence, ctx.settings.impact_weights,
    )
    card = OpportunityCard(
        title=data["title"],
        description=data.get("description") or "",
        topic=(data.get("topic") or "").strip(),
        product_area_id=area.id if area else None,
        status="new",
        severity=scored.severity.value,
        reach=scored.reach,
        impact=scored.impact,
        confidence=confidence,
        effort=effort,
        derived_from_signal_ids_json=json.dumps(ids),
    )
    session.add(card)
    session.flush()
    return card


def update_opportunity(
    ctx: PulseContext, session: Session, card: OpportunityCard, updates: dict[str, Any],
    now: datetime | None = None,
) -> OpportunityCard:
    """Partial update; moving a card to ``done`` captures the close-loop baseline.

    Raises ValueError for an unknown status and StoreUnavailable when the
    evidence cannot be read for the baseline. Caller must commit.
    """
    status = updates.get("status")
    if status is not None and status not in VALID_STATUSES:
        raise ValueError(f"Invalid status {status!r}")

    becoming_done = status == "done" and card.status != "done"
    apply_updates(card, updates, UPDATABLE_FIELDS)

    if becoming_done:
        log.info("Capturing baseline metrics for opportunity %s", card.id)
        evidence = ctx.store.fetch_by_ids(evidence_ids(card))
        closeloop.capture_baseline(card, evidence, now or utc_now())
    return card


def reevaluate_opportunity(ctx: PulseContext, card: OpportunityCard, now: datetime | None = None) -> dict[str, Any]:
    """On-demand close-loop evaluation, also for cards past the 72h window. Caller must commit."""
    data = closeloop.evaluate_opportunity(card, ctx.store, now, ctx.settings.timeline_limit)
    return data.model_dump(mode="json")


def monitoring_count(ctx: PulseContext, session: Session, now: datetime | None = None) -> int:
    return len(closeloop.due_opportunity_ids(session, now or utc_now(), ctx.settings.monitor_window_hours))


def compute_stats(session: Session) -> dict[str, Any]:
    cards = session.execute(select(OpportunityCard)).scalars().all()
    by_status: Counter[str] = Counter()
    by_severity: Counter[str] = Counter()
    by_recovery: Counter[str] = Counter()
    for card in cards:
        by_status[card.status] += 1
        by_severity[card.severity] += 1
        data = closeloop.load_close_loop(card)
        if data is not None:
            by_recovery[data.status.value] += 1
    signal_count = session.execute(select(func.count(Signal.id))).scalar() or 0
    return {
        "signals": signal_count,
        "opportunities": len(cards),
        "by_status": dict(by_status),
        "by_severity": dict(by_severity),
        "by_recovery_status": dict(by_recovery),
    }
