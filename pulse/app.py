from __future__ import annotations

import asyncio
import hmac
import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse import dashboard, services
from pulse.chi import MAX_WINDOW_MINUTES
from pulse.db import get_session_factory, init_db, session_generator
from pulse.errors import StoreUnavailable
from pulse.importer import import_xlsx
from pulse.models import OpportunityCard, ProductArea
from pulse.schemas import (
    ClassifyOut,
    ClassifyRequest,
    CloseLoopPassOut,
    EarlyWarningOut,
    ImportResult,
    IngestResult,
    OpportunityCreate,
    OpportunityOut,
    OpportunityUpdate,
    ProductAreaCreate,
    ProductAreaOut,
    ScoreOut,
    SignalBatch,
    StatsOut,
    TrendOut,
    VelocityOut,
)
from pulse.services import PulseContext
from pulse.utils import utc_now

log = logging.getLogger(__name__)

_ctx: PulseContext | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _ctx
    init_db()
    _ctx = services.build_context(get_session_factory())
    yield
    _ctx = None


app = FastAPI(
    title="Pulse",
    version="0.1.0",
    description=(
        "Signal intelligence API. Computes the Customer Happiness Index from "
        "customer signals, scores opportunities with RICE, detects fast-growing "
        "issues and monitors whether shipped fixes recovered sentiment."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "Customer Happiness Index and trend."},
        {"name": "Velocity", "description": "Per-topic velocity and early warnings."},
        {"name": "Opportunities", "description": "Opportunity cards, severity and RICE scoring."},
        {"name": "Close Loop", "description": "Post-fix recovery monitoring."},
        {"name": "Dashboard", "description": "Aggregated views for the dashboard."},
        {"name": "Signals", "description": "Signal ingestion and XLSX import."},
        {"name": "Stats", "description": "Aggregate statistics and breakdowns."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def get_ctx() -> PulseContext:
    global _ctx
    if _ctx is None:
        _ctx = services.build_context(get_session_factory())
    return _ctx


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Health (CHI + trend)
# ---------------------------------------------------------------------------


@app.get("/api/chi", response_model=ScoreOut, tags=["Health"],
         summary="Customer Happiness Index over the trailing window (null when no data)")
async def chi_score(
    window_minutes: int = Query(60, ge=1, le=MAX_WINDOW_MINUTES),
    product_area_id: int | None = Query(None),
    use_cache: bool = Query(True),
    ctx: PulseContext = Depends(get_ctx),
):
    return services.get_chi(ctx, window_minutes, product_area_id, use_cache)


@app.get("/api/trend", response_model=TrendOut, tags=["Health"],
         summary="CHI change versus the preceding window of equal length")
async def chi_trend(
    window_minutes: int = Query(60, ge=1, le=MAX_WINDOW_MINUTES),
    product_area_id: int | None = Query(None),
    ctx: PulseContext = Depends(get_ctx),
):
    return services.get_trend(ctx, window_minutes, product_area_id)


# ---------------------------------------------------------------------------
# Routes: Velocity
# ---------------------------------------------------------------------------


@app.get("/api/velocity", response_model=list[VelocityOut], tags=["Velocity"],
         summary="Growing / stable / declining topic counts per product area")
async def velocity_counts(
    lookback_hours: float = Query(24, gt=0, le=MAX_WINDOW_MINUTES / 60),
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    return services.get_velocity(ctx, session, lookback_hours)


@app.get("/api/early-warnings", response_model=list[EarlyWarningOut], tags=["Velocity"],
         summary="Growing topics with projected intensity and time to spread")
async def early_warnings(
    lookback_hours: float = Query(24, gt=0, le=MAX_WINDOW_MINUTES / 60),
    horizon_hours: float = Query(6, gt=0),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    return services.get_early_warnings(ctx, session, lookback_hours, horizon_hours, limit)


# ---------------------------------------------------------------------------
# Routes: Opportunities (classify before parameterized routes)
# ---------------------------------------------------------------------------


@app.post("/api/opportunities/classify", response_model=ClassifyOut, tags=["Opportunities"],
          summary="Severity and RICE for a set of evidence signals")
async def classify(body: ClassifyRequest, ctx: PulseContext = Depends(get_ctx)):
    if body.signal_ids:
        try:
            evidence = ctx.store.fetch_by_ids(body.signal_ids)
        except StoreUnavailable as exc:
            raise HTTPException(503, str(exc)) from exc
    elif body.signals:
        evidence = services.records_from_payload([s.model_dump() for s in body.signals])
    else:
        raise HTTPException(400, "Provide signal_ids or signals")
    return services.classify_signals(ctx, evidence, body.product_area_name, body.effort, body.confidence)


@app.get("/api/opportunities", response_model=list[OpportunityOut], tags=["Opportunities"],
         summary="List opportunity cards ordered by RICE score")
async def list_opportunities(
    status: str | None = Query(None, description="Comma-separated: new, in-progress, done"),
    product_area_id: int | None = Query(None),
    session: Session = Depends(db_session),
):
    query = select(OpportunityCard)
    if status:
        query = query.where(OpportunityCard.status.in_([s.strip() for s in status.split(",") if s.strip()]))
    if product_area_id is not None:
        query = query.where(OpportunityCard.product_area_id == product_area_id)
    now = utc_now()
    items = [services.opportunity_summary(c, now) for c in session.execute(query).scalars().all()]
    items.sort(key=lambda o: o["rice_score"], reverse=True)
    return items


@app.post("/api/opportunities", response_model=OpportunityOut, status_code=201, tags=["Opportunities"],
          summary="Create an opportunity card from evidence signals")
async def create_opportunity(
    body: OpportunityCreate,
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    if body.product_area_id is not None:
        _get_or_404(session, ProductArea, body.product_area_id, "Product area")
    try:
        card = services.create_opportunity(ctx, session, body.model_dump())
    except StoreUnavailable as exc:
        raise HTTPException(503, str(exc)) from exc
    session.commit()
    session.refresh(card)
    return services.opportunity_summary(card)


@app.get("/api/opportunities/{opportunity_id}", response_model=OpportunityOut, tags=["Opportunities"],
         summary="Get a single opportunity card")
async def get_opportunity(opportunity_id: int, session: Session = Depends(db_session)):
    return services.opportunity_summary(_get_or_404(session, OpportunityCard, opportunity_id, "Opportunity"))


@app.patch("/api/opportunities/{opportunity_id}", response_model=OpportunityOut, tags=["Opportunities"],
           summary="Partial update; moving to done captures the close-loop baseline")
async def update_opportunity(
    opportunity_id: int,
    body: OpportunityUpdate,
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    card = _get_or_404(session, OpportunityCard, opportunity_id, "Opportunity")
    try:
        services.update_opportunity(ctx, session, card, body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except StoreUnavailable as exc:
        session.rollback()
        raise HTTPException(503, str(exc)) from exc
    session.commit()
    return services.opportunity_summary(card)


@app.delete("/api/opportunities/{opportunity_id}", tags=["Opportunities"], summary="Delete an opportunity card")
async def delete_opportunity(opportunity_id: int, session: Session = Depends(db_session)):
    card = _get_or_404(session, OpportunityCard, opportunity_id, "Opportunity")
    session.delete(card)
    session.commit()
    return {"ok": True}


@app.post("/api/opportunities/{opportunity_id}/close-loop", tags=["Close Loop"],
          summary="Re-evaluate one done card now, also after its monitoring window")
async def reevaluate_opportunity(
    opportunity_id: int,
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    card = _get_or_404(session, OpportunityCard, opportunity_id, "Opportunity")
    if card.marked_done_at is None:
        raise HTTPException(400, "Opportunity has no close-loop baseline")
    try:
        data = services.reevaluate_opportunity(ctx, card)
    except StoreUnavailable as exc:
        session.rollback()
        raise HTTPException(503, str(exc)) from exc
    except ValueError as exc:
        session.rollback()
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return data


# ---------------------------------------------------------------------------
# Routes: Close Loop
# ---------------------------------------------------------------------------


@app.post("/api/process/close-loop", response_model=CloseLoopPassOut, tags=["Close Loop"],
          summary="Run one close-loop monitoring pass")
async def process_close_loop(ctx: PulseContext = Depends(get_ctx)):
    return await asyncio.to_thread(services.run_close_loop, ctx)


@app.get("/api/process/close-loop", tags=["Close Loop"],
         summary="Number of cards currently inside the monitoring window")
async def close_loop_status(session: Session = Depends(db_session), ctx: PulseContext = Depends(get_ctx)):
    return {
        "opportunities_monitoring": services.monitoring_count(ctx, session),
        "monitoring_window": f"{ctx.settings.monitor_window_hours} hours",
    }


@app.post("/api/cron/close-loop", response_model=CloseLoopPassOut, tags=["Close Loop"],
          summary="Scheduler entry point for the close-loop pass (bearer CRON_SECRET)")
async def cron_close_loop(
    authorization: str | None = Header(None),
    ctx: PulseContext = Depends(get_ctx),
):
    secret = ctx.settings.cron_secret
    if not secret:
        log.error("CRON_SECRET is not configured")
        raise HTTPException(500, "Cron secret not configured")
    if not hmac.compare_digest(authorization or "", f"Bearer {secret}"):
        raise HTTPException(401, "Unauthorized")
    log.info("Cron triggered close-loop pass")
    return await asyncio.to_thread(services.run_close_loop, ctx)


# ---------------------------------------------------------------------------
# Routes: Dashboard
# ---------------------------------------------------------------------------


@app.get("/api/dashboard/metrics", tags=["Dashboard"],
         summary="Overall CHI, per-area metrics, emerging issues, timeline and sources")
async def dashboard_metrics(session: Session = Depends(db_session), ctx: PulseContext = Depends(get_ctx)):
    return dashboard.dashboard_metrics(session, ctx.chi, ctx.store, utc_now())


@app.get("/api/dashboard/product-area/{area_id}", tags=["Dashboard"],
         summary="Detail view for one product area")
async def dashboard_product_area(
    area_id: int, session: Session = Depends(db_session), ctx: PulseContext = Depends(get_ctx),
):
    area = _get_or_404(session, ProductArea, area_id, "Product area")
    return dashboard.product_area_detail(session, area, ctx.chi, ctx.store, utc_now())


@app.get("/api/dashboard/sentiment-timeline", tags=["Dashboard"],
         summary="Mean sentiment per product area per time bucket")
async def dashboard_sentiment_timeline(
    range_key: str = Query("24h", alias="range", pattern="^(24h|7d|30d)$"),
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    return dashboard.sentiment_timeline(session, ctx.store, utc_now(), range_key)


@app.get("/api/dashboard/sentiment-distribution", tags=["Dashboard"],
         summary="Positive / neutral / negative signal counts")
async def dashboard_sentiment_distribution(
    window_hours: int | None = Query(None, ge=1),
    ctx: PulseContext = Depends(get_ctx),
):
    return dashboard.sentiment_distribution(ctx.store, utc_now(), window_hours)


@app.get("/api/dashboard/realtime-signals", tags=["Dashboard"],
         summary="Newest signals for the live activity feed")
async def dashboard_realtime_signals(
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(db_session),
    ctx: PulseContext = Depends(get_ctx),
):
    return dashboard.recent_signals(session, ctx.store, limit)


# ---------------------------------------------------------------------------
# Routes: Product areas & signals
# ---------------------------------------------------------------------------


@app.get("/api/product-areas", response_model=list[ProductAreaOut], tags=["Signals"],
         summary="List product areas")
async def list_product_areas(session: Session = Depends(db_session)):
    return [services.product_area_dict(a) for a in dashboard.list_product_areas(session)]


@app.post("/api/product-areas", response_model=ProductAreaOut, status_code=201, tags=["Signals"],
          summary="Create a product area")
async def create_product_area(
    body: ProductAreaCreate, session: Session = Depends(db_session), ctx: PulseContext = Depends(get_ctx),
):
    if services.get_product_area(session, name=body.name) is not None:
        raise HTTPException(409, f"Product area '{body.name}' already exists")
    area = ProductArea(
        name=body.name, color=body.color or ctx.settings.area_color(body.name), description=body.description,
    )
    session.add(area)
    session.commit()
    session.refresh(area)
    return services.product_area_dict(area)


@app.post("/api/signals", response_model=IngestResult, status_code=201, tags=["Signals"],
          summary="Ingest signals (sentiment clamped, intensity defaulted)")
async def ingest(body: SignalBatch, session: Session = Depends(db_session)):
    rows = services.ingest_signals(session, [s.model_dump() for s in body.signals])
    session.commit()
    return {"ingested": len(rows), "ids": [r.id for r in rows]}


@app.post("/api/import", response_model=ImportResult, tags=["Signals"],
          summary="Import signals from an XLSX spreadsheet")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"],
         summary="Signal and opportunity counts with status breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("pulse.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
