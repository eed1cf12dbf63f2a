from __future__ import annotations

import datetime as dt
import uuid
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from labeleval.core.db import Base
from labeleval.core.enums import EvaluationStatus


class Evaluation(Base):
    __tablename__ = "evaluations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prompt_id: Mapped[str] = mapped_column(ForeignKey("prompts.id"), nullable=False, index=True)
    dataset_id: Mapped[str] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    status: Mapped[EvaluationStatus] = mapped_column(
        Enum(EvaluationStatus), nullable=False, default=EvaluationStatus.PENDING, index=True
    )
    total_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    correct_predictions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    incorrect_predictions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stop_sequences_json: Mapped[str] = mapped_column(Text, nullable=False, default="")
    started_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    last_heartbeat: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    timeout_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    process_started_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    can_resume: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, default=dt.datetime.utcnow)
