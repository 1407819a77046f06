from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class ProductArea(Base):
    __tablename__ = "product_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    color: Mapped[str] = mapped_column(String(20), default="")
    description: Mapped[str] = mapped_column(Text, default="")

    signals: Mapped[list[Signal]] = relationship("Signal", back_populates="product_area")
    opportunities: Mapped[list[OpportunityCard]] = relationship("OpportunityCard", back_populates="product_area")


class Signal(Base):
    __tablename__ = "signals"
    __table_args__ = (
        Index("ix_signals_area_detected", "product_area_id", "detected_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    topic: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    sentiment: Mapped[float] = mapped_column(Float, default=0.0)
    intensity: Mapped[float | None] = mapped_column(Float, nullable=True, default=1.0)
    source: Mapped[str] = mapped_column(String(100), default="")  # reddit | google-news | downdetector | ...
    url: Mapped[str] = mapped_column(String(1000), default="")
    product_area_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("product_areas.id"), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    meta_json: Mapped[str] = mapped_column(Text, default="{}")
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    product_area: Mapped[ProductArea | None] = relationship("ProductArea", back_populates="signals")


class OpportunityCard(Base):
    __tablename__ = "opportunity_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    topic: Mapped[str] = mapped_column(String(300), default="")
    product_area_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("product_areas.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="new")  # new | in-progress | done
    severity: Mapped[str] = mapped_column(String(20), default="low")  # low | medium | high | critical

    reach: Mapped[float] = mapped_column(Float, default=0.0)
    impact: Mapped[int] = mapped_column(Integer, default=5)
    confidence: Mapped[float] = mapped_column(Float, default=0.7)
    effort: Mapped[float] = mapped_column(Float, default=5.0)

    derived_from_signal_ids_json: Mapped[str] = mapped_column(Text, default="[]")

    # Captured together at the -> done transition, never rewritten afterwards.
    baseline_sentiment: Mapped[float | None] = mapped_column(Float, nullable=True)
    baseline_intensity: Mapped[float | None] = mapped_column(Float, nullable=True)
    baseline_signal_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    marked_done_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Monitor-owned CloseLoopData document
    close_loop_json: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
    )

    product_area: Mapped[ProductArea | None] = relationship("ProductArea", back_populates="opportunities")
