from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from hie_sync.models.base import Base

QUEUE_STATUSES = ("pending", "processing", "failed", "expired")


class Watermark(Base):
    __tablename__ = "_watermarks"
    key: Mapped[str] = mapped_column(String(191), primary_key=True)  # stream key
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ObservationQueueEntry(Base):
    __tablename__ = "observation_queue"
    id: Mapped[str] = mapped_column(String(255), primary_key=True)  # source observation id
    patient_id: Mapped[str] = mapped_column(String(255), index=True)  # source patient id
    observation_payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)


class SyncRun(Base):
    __tablename__ = "sync_runs"
    id: Mapped[int] = mapped_column(primary_key=True)
    stream: Mapped[str] = mapped_column(String(64), index=True)
    started_at: Mapped[str] = mapped_column(String(40), index=True)
    finished_at: Mapped[str | None] = mapped_column(String(40), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="RUNNING")  # RUNNING/SUCCESS/PARTIAL/FAILED
    details: Mapped[dict] = mapped_column(JSON, default=dict)
