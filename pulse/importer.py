from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.models import ProductArea
from pulse.schemas import ImportResult
from pulse.services import ingest_signals

log = logging.getLogger(__name__)

# Accepted header spellings -> signal field
_HEADER_ALIASES = {
    "topic": "topic", "issue": "topic",
    "sentiment": "sentiment", "score": "sentiment",
    "intensity": "intensity", "mentions": "intensity", "volume": "intensity",
    "source": "source", "channel": "source",
    "product_area": "product_area", "product area": "product_area", "area": "product_area",
    "detected_at": "detected_at", "detected at": "detected_at", "timestamp": "detected_at", "date": "detected_at",
    "url": "url", "link": "url",
}


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if missing."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _dt(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    text = _s(value)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def _header_map(header: tuple) -> dict[str, int]:
    out: dict[str, int] = {}
    for idx, cell in enumerate(header):
        field = _HEADER_ALIASES.get(_s(cell).casefold())
        if field and field not in out:
            out[field] = idx
    return out


def _parse_sheet(ws) -> tuple[list[dict], int]:
    rows = ws.iter_rows(values_only=True)
    header = next(rows, None)
    if not header:
        return [], 0
    cols = _header_map(header)
    if "topic" not in cols:
        log.warning("Sheet %r has no topic column, skipping", ws.title)
        return [], 0

    out: list[dict] = []
    skipped = 0
    for row in rows:
        def col(field: str) -> object:
            idx = cols.get(field)
            return row[idx] if idx is not None and idx < len(row) else None

        topic = _s(col("topic"))
        if not topic:
            skipped += 1
            continue
        out.append({
            "topic": topic,
            "sentiment": _f(col("sentiment")),
            "intensity": _f(col("intensity")),
            "source": _s(col("source")) or "import",
            "product_area": _s(col("product_area")),
            "detected_at": _dt(col("detected_at")),
            "url": _s(col("url")),
        })
    return out, skipped


def import_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import signals from every sheet of a workbook with a header row."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    parsed: list[dict] = []
    skipped = 0
    try:
        for sheet_name in wb.sheetnames:
            rows, sheet_skipped = _parse_sheet(wb[sheet_name])
            parsed.extend(rows)
            skipped += sheet_skipped
    finally:
        wb.close()

    known = set(session.execute(select(ProductArea.name)).scalars().all())
    unknown = sorted({r["product_area"] for r in parsed if r["product_area"] and r["product_area"] not in known})
    if unknown:
        log.warning("Unknown product areas in import (signals left unassigned): %s", ", ".join(unknown))

    ingest_signals(session, parsed)
    session.commit()
    log.info("Imported %d signals from %s (%d rows skipped)", len(parsed), file_path.name, skipped)
    return ImportResult(total_imported=len(parsed), skipped_rows=skipped, unknown_product_areas=unknown)
