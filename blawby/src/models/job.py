"""
Job model - durable, database-backed work queue.
Jobs are claimed by exactly one worker at a time via locked_at/locked_by,
deleted on success, and re-armed with exponential backoff on failure
until attempts reaches max_attempts (permanently failed, kept for inspection).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    task_identifier: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # process-stripe-webhook, process-onboarding-webhook, process-event-handler, process-outbox-event

    payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Dedup key: at most one unconsumed job per key
    job_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True)

    priority: Mapped[int] = mapped_column(Integer, default=0)  # Higher runs first

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=25)

    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[Optional[str]] = mapped_column(String(100))
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_jobs_claim", "task_identifier", "run_at", "priority"),
    )

    @property
    def permanently_failed(self) -> bool:
        return self.attempts >= self.max_attempts and self.locked_at is None

    def __repr__(self) -> str:
        return f"<Job {self.task_identifier} attempts={self.attempts}/{self.max_attempts}>"
