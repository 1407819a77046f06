"""Pydantic request/response schemas for the Pulse API."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ScoreOut(BaseModel):
    score: int | None


class TrendOut(BaseModel):
    trend: int


class VelocityOut(BaseModel):
    product_area_id: int
    product_area_name: str
    growing: int
    stable: int
    declining: int
    color: str


class EarlyWarningOut(BaseModel):
    topic: str
    product_area_id: int | None
    product_area_name: str
    velocity_per_hour: float
    current_intensity: float
    projected_intensity: float
    time_to_spread_hours: float | None
    affected_users: int
    severity: str


class SignalIn(BaseModel):
    topic: str
    sentiment: float | None = None
    intensity: float | None = None
    source: str = ""
    url: str = ""
    product_area_id: int | None = None
    product_area: str | None = None
    detected_at: datetime | None = None
    meta: dict[str, Any] = {}


class SignalBatch(BaseModel):
    signals: list[SignalIn]


class IngestResult(BaseModel):
    ingested: int
    ids: list[int]


class ClassifyRequest(BaseModel):
    signal_ids: list[int] = []
    signals: list[SignalIn] = []
    product_area_name: str = "General"
    effort: float = Field(5.0, ge=0)
    confidence: float = Field(0.7, ge=0, le=1)


class ClassifyOut(BaseModel):
    severity: str
    reach: float
    impact: int
    confidence: float
    effort: float
    rice_score: float
    avg_sentiment: float
    signal_count: int


class OpportunityCreate(BaseModel):
    title: str
    description: str = ""
    topic: str = ""
    product_area_id: int | None = None
    derived_from_signal_ids: list[int] = []
    effort: float | None = Field(None, ge=0)
    confidence: float | None = Field(None, ge=0, le=1)


class OpportunityUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    topic: str | None = None
    status: str | None = None
    severity: str | None = None
    effort: float | None = Field(None, ge=0)
    confidence: float | None = Field(None, ge=0, le=1)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in ("new", "in-progress", "done"):
            raise ValueError("status must be one of: new, in-progress, done")
        return v


class OpportunityOut(BaseModel):
    id: int
    title: str
    description: str
    topic: str
    product_area_id: int | None
    product_area: str | None
    status: str
    severity: str
    reach: float
    impact: int
    confidence: float
    effort: float
    rice_score: float
    derived_from_signal_ids: list[int] = []
    baseline_sentiment: float | None = None
    baseline_intensity: float | None = None
    baseline_signal_count: int | None = None
    marked_done_at: str | None = None
    close_loop: dict[str, Any] | None = None


class CloseLoopPassOut(BaseModel):
    monitored: int
    total: int
    status_breakdown: dict[str, int]


class ProductAreaCreate(BaseModel):
    name: str
    color: str = ""
    description: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v


class ProductAreaOut(BaseModel):
    id: int
    name: str
    color: str
    description: str


class ImportResult(BaseModel):
    total_imported: int
    skipped_rows: int
    unknown_product_areas: list[str] = []


class StatsOut(BaseModel):
    signals: int
    opportunities: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    by_recovery_status: dict[str, int]
