from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from pulse import dashboard, services
from pulse.db import get_session, get_session_factory, init_db
from pulse.errors import StoreUnavailable
from pulse.services import PulseContext
from pulse.utils import utc_now

log = logging.getLogger(__name__)

_ctx: PulseContext | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def pulse_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _ctx
    init_db()
    _ctx = services.build_context(get_session_factory())
    yield


mcp = FastMCP(
    "Pulse",
    instructions=(
        "Pulse tracks customer sentiment signals per product area. "
        "Start with get_chi() for the overall Customer Happiness Index, "
        "get_velocity() to see which topics are growing, and "
        "get_dashboard_metrics() for the full picture."
    ),
    lifespan=pulse_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _context() -> PulseContext:
    global _ctx
    if _ctx is None:
        _ctx = services.build_context(get_session_factory())
    return _ctx


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("pulse://overview")
def pulse_overview() -> str:
    """Overview of Pulse: data model, scores and the close-loop lifecycle."""
    return json.dumps({
        "system": "Pulse - Signal Intelligence & Opportunity Lifecycle Engine",
        "data_model": {
            "signal": "One customer observation: topic, sentiment in [-1, 1], intensity >= 0, source, product area.",
            "product_area": "A slice of the business (Network, Billing, Mobile App, ...).",
            "opportunity": "A card derived from evidence signals, scored with RICE and tracked through new -> in-progress -> done.",
        },
        "scores": {
            "chi": "Customer Happiness Index 0-100 over a trailing window, intensity weighted. Null when no data.",
            "trend": "CHI now minus CHI of the preceding window of equal length.",
            "rice": "reach * impact * confidence / effort, one decimal. Zero when effort is zero.",
            "severity": "critical/high/medium/low from average sentiment and total intensity.",
        },
        "close_loop": (
            "Marking a card done captures a baseline. For 72 hours the monitor compares new matching "
            "signals against it: recovered when sentiment rose by 0.2 or intensity fell by 50%, "
            "not-recovered after 3 days without that."
        ),
        "workflow": [
            "1. get_chi() / get_trend() - overall health.",
            "2. get_velocity() - growing topics per product area.",
            "3. classify_opportunity(signal_ids, product_area_name) - severity and RICE for evidence.",
            "4. run_close_loop_pass() - re-evaluate cards in the monitoring window.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Scores
# ---------------------------------------------------------------------------


@mcp.tool()
def get_chi(window_minutes: int = 60, product_area_id: int | None = None, use_cache: bool = True) -> dict:
    """Customer Happiness Index (0-100) over the trailing window.

    Args:
        window_minutes: Window length in minutes (default 60).
        product_area_id: Restrict to one product area.
        use_cache: Allow a cached value up to five minutes old.
    """
    return services.get_chi(_context(), window_minutes, product_area_id, use_cache)


@mcp.tool()
def get_trend(window_minutes: int = 60, product_area_id: int | None = None) -> dict:
    """CHI change versus the preceding window of the same length (0 if either window is empty)."""
    return services.get_trend(_context(), window_minutes, product_area_id)


@mcp.tool()
def get_velocity(lookback_hours: float = 24) -> list[dict]:
    """Count growing, stable and declining topics per product area."""
    with _session() as session:
        return services.get_velocity(_context(), session, lookback_hours)


@mcp.tool()
def classify_opportunity(
    signal_ids: list[int], product_area_name: str = "General",
    effort: float = 5.0, confidence: float = 0.7,
) -> dict:
    """Severity and RICE score for a set of evidence signals.

    Args:
        signal_ids: Ids of the evidence signals.
        product_area_name: Product area used for the impact weight.
        effort: Effort estimate; zero yields a RICE score of 0.
        confidence: Confidence in [0, 1].
    """
    ctx = _context()
    try:
        evidence = ctx.store.fetch_by_ids(signal_ids)
    except StoreUnavailable as exc:
        return {"error": str(exc)}
    return services.classify_signals(ctx, evidence, product_area_name, effort, confidence)


# ---------------------------------------------------------------------------
# Tools: Close loop & dashboard
# ---------------------------------------------------------------------------


@mcp.tool()
def run_close_loop_pass() -> dict:
    """Re-evaluate every opportunity marked done within the monitoring window."""
    return services.run_close_loop(_context())


@mcp.tool()
def get_dashboard_metrics() -> dict:
    """Overall CHI, per-area metrics, emerging issues, sentiment timeline and source breakdown."""
    ctx = _context()
    with _session() as session:
        return dashboard.dashboard_metrics(session, ctx.chi, ctx.store, utc_now())


@mcp.tool()
def get_stats() -> dict:
    """Signal and opportunity counts with status, severity and recovery breakdowns."""
    with _session() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Pulse MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
